"""Transcript normalization and fluency estimates for scoring requests."""

from __future__ import annotations

import re

from models import FluencyMetrics

NUMBER_WORDS = {
    "zero": "0", "one": "1", "two": "2", "three": "3", "four": "4",
    "five": "5", "six": "6", "seven": "7", "eight": "8", "nine": "9",
    "ten": "10", "eleven": "11", "twelve": "12", "thirteen": "13",
    "fourteen": "14", "fifteen": "15", "sixteen": "16", "seventeen": "17",
    "eighteen": "18", "nineteen": "19", "twenty": "20", "thirty": "30",
    "forty": "40", "fifty": "50", "sixty": "60", "seventy": "70",
    "eighty": "80", "ninety": "90", "hundred": "100", "thousand": "1000",
}  # fmt: skip

FILLER_WORDS = (
    "um", "uh", "er", "ah", "like", "you know", "basically",
    "actually", "so", "well", "right", "okay", "hmm",
)  # fmt: skip

_PUNCTUATION = re.compile(r"[.,!?;:'\"()\[\]{}]")
_WHITESPACE = re.compile(r"\s+")
_NUMBER_PATTERN = re.compile(r"\b(" + "|".join(NUMBER_WORDS) + r")\b", re.IGNORECASE)
_FILLER_PATTERNS = {f: re.compile(rf"\b{re.escape(f)}\b", re.IGNORECASE) for f in FILLER_WORDS}

AVERAGE_WPM = 150
TRANSCRIPTION_COST_PER_MINUTE = 0.006
EVALUATOR_COST_PER_RUN = 0.001


def _squash(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip()


def strip_fillers(text: str) -> str:
    for pattern in _FILLER_PATTERNS.values():
        text = pattern.sub("", text)
    return _squash(text)


def normalize_text(
    text: str,
    convert_numbers_to_digits: bool = True,
    remove_fillers: bool = False,
) -> str:
    normalized = _squash(_PUNCTUATION.sub("", text.lower()))
    if convert_numbers_to_digits:
        normalized = _NUMBER_PATTERN.sub(lambda m: NUMBER_WORDS[m.group(1).lower()], normalized)
    if remove_fillers:
        normalized = strip_fillers(normalized)
    return normalized


def count_words(text: str, exclude_fillers: bool = False) -> int:
    text = text.lower()
    if exclude_fillers:
        text = strip_fillers(text)
    return len(text.split())


def count_fillers(text: str) -> tuple[int, dict[str, int]]:
    lower = text.lower()
    breakdown: dict[str, int] = {}
    for filler, pattern in _FILLER_PATTERNS.items():
        hits = len(pattern.findall(lower))
        if hits:
            breakdown[filler] = hits
    return sum(breakdown.values()), breakdown


def estimate_fluency_metrics(transcript: str, duration_ms: int) -> FluencyMetrics:
    """Rough pause estimates from duration versus an average speaking rate.

    There is no per-word timing, so any time beyond what ``AVERAGE_WPM``
    would need counts as pausing: one pause per 500 ms, one long pause per
    1500 ms, longest pause capped at 3 s.
    """
    words = count_words(transcript, exclude_fillers=True)
    minutes = duration_ms / 60000
    wpm = round(words / minutes) if minutes > 0 else 0
    filler_count, breakdown = count_fillers(transcript)

    expected_ms = (words / AVERAGE_WPM) * 60000
    excess = max(0.0, duration_ms - expected_ms)
    return FluencyMetrics(
        duration_ms=int(duration_ms),
        wpm=int(wpm),
        pause_count=int(excess // 500),
        long_pause_count=int(excess // 1500),
        longest_pause_ms=int(min(excess, 3000)) if excess > 0 else 0,
        filler_count=filler_count,
        filler_breakdown=breakdown,
    )


def estimate_cost(audio_duration_ms: int) -> float:
    return (audio_duration_ms / 60000) * TRANSCRIPTION_COST_PER_MINUTE + EVALUATOR_COST_PER_RUN
