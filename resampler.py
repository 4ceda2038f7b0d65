"""Float32 capture buffers to provider PCM16 frames.

Resampling is plain linear interpolation between the floor/ceil neighbours of
each source position. There is no anti-aliasing filter and no state carried
between calls, so every buffer is encoded independently.
"""

from __future__ import annotations

import base64
from typing import Sequence, Union

import numpy as np

from errors import EncodingInvariantViolation

TARGET_SAMPLE_RATE = 24000
BASE64_CHUNK_BYTES = 8192

SampleBuffer = Union[Sequence[float], np.ndarray]


def output_length(input_length: int, input_rate: int, target_rate: int = TARGET_SAMPLE_RATE) -> int:
    """Number of samples ``encode`` produces for a buffer of ``input_length``."""
    return int(round(input_length * (target_rate / input_rate)))


def resample_linear(
    samples: SampleBuffer,
    input_rate: int,
    target_rate: int = TARGET_SAMPLE_RATE,
) -> np.ndarray:
    if input_rate <= 0 or target_rate <= 0:
        raise ValueError(f"sample rates must be positive: {input_rate} -> {target_rate}")
    source = np.asarray(samples, dtype=np.float32).reshape(-1)
    n = source.shape[0]
    if n == 0:
        return np.zeros(0, dtype=np.float32)

    ratio = target_rate / input_rate
    count = output_length(n, input_rate, target_rate)
    src_idx = np.arange(count, dtype=np.float64) / ratio
    floor_idx = np.floor(src_idx).astype(np.int64)
    floor_idx = np.minimum(floor_idx, n - 1)
    ceil_idx = np.minimum(floor_idx + 1, n - 1)
    t = src_idx - floor_idx
    return (source[floor_idx] * (1.0 - t) + source[ceil_idx] * t).astype(np.float32)


def float_to_pcm16(samples: np.ndarray) -> bytes:
    """Scale [-1, 1] floats to little-endian int16 bytes.

    Negative values scale by 32768 and non-negative by 32767 so both ends of
    the int16 range are reachable without overflow.
    """
    clipped = np.clip(np.asarray(samples, dtype=np.float64), -1.0, 1.0)
    scaled = np.where(clipped < 0, clipped * 32768.0, clipped * 32767.0)
    ints = np.clip(np.round(scaled), -32768, 32767).astype("<i2")
    return ints.tobytes()


def encode(
    samples: SampleBuffer,
    input_rate: int,
    target_rate: int = TARGET_SAMPLE_RATE,
) -> bytes:
    """Resample one capture buffer and return PCM16 little-endian bytes."""
    source = np.asarray(samples, dtype=np.float32).reshape(-1)
    resampled = resample_linear(source, input_rate, target_rate)
    payload = float_to_pcm16(resampled)

    expected = output_length(source.shape[0], input_rate, target_rate)
    if resampled.shape[0] != expected or len(payload) != expected * 2:
        raise EncodingInvariantViolation(
            f"expected {expected} samples ({expected * 2} bytes), "
            f"got {resampled.shape[0]} samples ({len(payload)} bytes)"
        )
    return payload


def decode_pcm16(payload: bytes) -> np.ndarray:
    if len(payload) % 2:
        raise EncodingInvariantViolation(f"odd PCM16 byte length: {len(payload)}")
    return np.frombuffer(payload, dtype="<i2")


def to_base64(payload: bytes, chunk_size: int = BASE64_CHUNK_BYTES) -> str:
    """Base64 text for a binary frame, built chunk by chunk.

    ``chunk_size`` is rounded down to a multiple of 3 so chunk encodings
    concatenate without inner padding.
    """
    step = max(3, chunk_size - chunk_size % 3)
    view = memoryview(payload)
    parts = [
        base64.b64encode(view[start : start + step]).decode("ascii")
        for start in range(0, len(view), step)
    ]
    return "".join(parts)
