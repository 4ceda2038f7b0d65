"""Provider message parsing into ProviderEvent values."""

from __future__ import annotations

import json
import logging
from typing import Any, Union

from models import EventKind, ProviderEvent

logger = logging.getLogger(__name__)

READY_TYPES = frozenset({"transcription_session.created", "session.created"})
VAD_TYPES = frozenset(
    {
        "input_audio_buffer.speech_started",
        "input_audio_buffer.speech_stopped",
        "input_audio_buffer.committed",
        "input_audio_buffer.cleared",
    }
)
DELTA_TYPE = "conversation.item.input_audio_transcription.delta"
COMPLETED_TYPE = "conversation.item.input_audio_transcription.completed"
FAILED_TYPE = "conversation.item.input_audio_transcription.failed"
ERROR_TYPE = "error"

APPEND_TYPE = "input_audio_buffer.append"
COMMIT_TYPE = "input_audio_buffer.commit"


def append_message(audio_b64: str) -> str:
    return json.dumps({"type": APPEND_TYPE, "audio": audio_b64})


def commit_message() -> str:
    return json.dumps({"type": COMMIT_TYPE})


def parse_event(raw: Union[str, bytes, dict]) -> ProviderEvent:
    """Map one inbound provider message to a ProviderEvent.

    Unparseable payloads and unknown types come back as ``EventKind.OTHER``
    so the caller can log them without treating them as failures.
    """
    if isinstance(raw, (str, bytes)):
        try:
            data: Any = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.warning("Failed to parse provider event: %.200r", raw)
            return ProviderEvent(kind=EventKind.OTHER, type="<unparseable>")
    else:
        data = raw
    if not isinstance(data, dict):
        return ProviderEvent(kind=EventKind.OTHER, type="<unparseable>")

    event_type = str(data.get("type", ""))
    item_id = str(data.get("item_id", "") or "")

    if event_type in READY_TYPES:
        session = data.get("session") or {}
        return ProviderEvent(kind=EventKind.READY, type=event_type, item_id=str(session.get("id", "")))
    if event_type == DELTA_TYPE:
        return ProviderEvent(
            kind=EventKind.DELTA, type=event_type, text=str(data.get("delta") or ""), item_id=item_id
        )
    if event_type == COMPLETED_TYPE:
        return ProviderEvent(
            kind=EventKind.TURN_COMPLETE,
            type=event_type,
            text=str(data.get("transcript") or ""),
            item_id=item_id,
        )
    if event_type in VAD_TYPES:
        return ProviderEvent(kind=EventKind.VAD_BOUNDARY, type=event_type, item_id=item_id)
    if event_type in (ERROR_TYPE, FAILED_TYPE):
        error = data.get("error") or {}
        return ProviderEvent(
            kind=EventKind.ERROR,
            type=event_type,
            item_id=item_id,
            code=str(error.get("code") or ""),
            message=str(error.get("message") or "Unknown error"),
        )
    return ProviderEvent(kind=EventKind.OTHER, type=event_type, item_id=item_id)
