"""Protocol interfaces used by SessionController and its collaborators."""

from __future__ import annotations

from typing import Any, Callable, Optional, Protocol

from models import AudioFrame, ProviderEvent, RunRecord, TokenGrant, VadConfig

FrameCallback = Callable[[AudioFrame], None]
EventCallback = Callable[[ProviderEvent], None]


class AudioInput(Protocol):
    sample_rate: int

    def open(self, on_frame: FrameCallback) -> None: ...

    def close(self) -> None: ...

    @property
    def is_open(self) -> bool: ...


class TokenSource(Protocol):
    async def mint(self, vad: Optional[VadConfig] = None) -> TokenGrant: ...


class Connection(Protocol):
    ready: bool
    audio_input: Optional[AudioInput]

    @property
    def is_open(self) -> bool: ...

    def on_event(self, handler: EventCallback) -> None: ...

    def on_frame(self, handler: Optional[FrameCallback]) -> None: ...

    def send(self, frame_bytes: bytes) -> bool: ...

    def commit(self) -> bool: ...

    async def close(self) -> None: ...


class Transport(Protocol):
    async def connect(self, credential: str) -> Connection: ...


class Scorer(Protocol):
    async def score(self, request: dict[str, Any]) -> dict[str, Any]: ...


class RunStore(Protocol):
    def append(self, record: RunRecord) -> None: ...


class ConfigStore(Protocol):
    def get_api_key(self) -> str: ...

    def set_api_key(self, key: str) -> None: ...

    def get(self, name: str) -> Any: ...

    def set(self, name: str, value: Any) -> None: ...


