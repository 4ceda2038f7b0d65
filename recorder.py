"""Microphone input adapter."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from typing import Any, Optional

import numpy as np

from interfaces import FrameCallback
from models import AudioFrame

try:
    import sounddevice as sd
except Exception:  # pragma: no cover - PortAudio missing on headless hosts
    sd = None  # type: ignore

logger = logging.getLogger(__name__)


class SoundDeviceRecorder:
    """One microphone acquisition, delivering float32 mono buffers.

    sounddevice invokes ``_on_audio`` on its own thread; frames are handed to
    the event loop that called ``open`` so consumers stay single-threaded.
    """

    def __init__(
        self,
        sample_rate: Optional[int] = None,
        blocksize: int = 4096,
        device: Any = None,
    ) -> None:
        self.sample_rate = int(sample_rate) if sample_rate else 0
        self.blocksize = blocksize
        self.device = device
        self._stream: Any = None
        self._running = False
        self._lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._on_frame: Optional[FrameCallback] = None
        self.dropped_chunks = 0

    @property
    def is_open(self) -> bool:
        return self._running

    def open(self, on_frame: FrameCallback) -> None:
        with self._lock:
            if self._running:
                return
            if sd is None:
                raise RuntimeError("sounddevice is not installed")
            try:
                self._loop = asyncio.get_running_loop()
            except RuntimeError:
                self._loop = None
            self._on_frame = on_frame
            if not self.sample_rate:
                info = sd.query_devices(self.device, "input")
                self.sample_rate = int(info["default_samplerate"])
            self._stream = sd.InputStream(
                samplerate=self.sample_rate,
                channels=1,
                dtype="float32",
                blocksize=self.blocksize,
                device=self.device,
                callback=self._on_audio,
            )
            self._stream.start()
            self._running = True
            logger.info(
                "Microphone opened: %d Hz, blocksize %d", self.sample_rate, self.blocksize
            )

    def close(self) -> None:
        with self._lock:
            if not self._running:
                return
            self._running = False
            stream, self._stream = self._stream, None
            self._on_frame = None
            if stream is not None:
                stream.stop()
                stream.close()
            logger.info("Microphone released")

    def _on_audio(self, indata: Any, frames: int, time_info: Any, status: Any) -> None:
        if status:
            logger.debug("Input stream status: %s", status)
        callback = self._on_frame
        if not self._running or callback is None:
            return
        samples = np.array(indata, dtype=np.float32).reshape(-1)
        frame = AudioFrame(
            samples=samples,
            sample_rate=self.sample_rate,
            timestamp_ms=int(time.time() * 1000),
        )
        loop = self._loop
        if loop is None:
            callback(frame)
            return
        try:
            loop.call_soon_threadsafe(callback, frame)
        except RuntimeError:
            self.dropped_chunks += 1
