"""Duplex streaming connection to the realtime transcription provider.

A connection is created by ``RealtimeTransport.connect``. That call acquires
the microphone, opens the websocket with the short-lived credential, and
waits for the provider's session-created event before returning. Inbound
messages are parsed into ``ProviderEvent`` values and handed, in arrival
order, to one registered handler. Outbound audio goes through a queue drained
by a single writer task, so frames leave in capture order.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake

from errors import AuthRejected, ConnectTimeout, ConsoleError, ProviderError
from events import append_message, commit_message, parse_event
from interfaces import AudioInput, EventCallback, FrameCallback
from models import AudioFrame, EventKind, ProviderEvent
from resampler import to_base64

logger = logging.getLogger(__name__)

DEFAULT_REALTIME_URL = "wss://api.openai.com/v1/realtime?intent=transcription"
DEFAULT_CONNECT_TIMEOUT_S = 15.0
AUTH_ERROR_CODES = frozenset({"invalid_api_key", "invalid_client_secret", "unauthorized", "expired_token"})
CONNECTION_CLOSED_CODE = "connection_closed"

WsConnect = Callable[[str, str], Awaitable[Any]]
AudioInputFactory = Callable[[], AudioInput]


async def default_ws_connect(url: str, credential: str) -> Any:
    return await websockets.connect(
        url,
        additional_headers={"Authorization": f"Bearer {credential}"},
        max_size=None,
    )


def _handshake_status(exc: Exception) -> Optional[int]:
    response = getattr(exc, "response", None)
    status = getattr(response, "status_code", None)
    if status is None:
        status = getattr(exc, "status_code", None)
    return int(status) if status is not None else None


class RealtimeConnection:
    def __init__(self, audio_input: Optional[AudioInput] = None) -> None:
        self.ready = False
        self.audio_input = audio_input
        self.frames_sent = 0
        self.frames_dropped = 0
        self._ws: Any = None
        self._closed = False
        self._remote_closed = False
        self._closing = False
        self._handler: Optional[EventCallback] = None
        self._frame_handler: Optional[FrameCallback] = None
        self._ready_future: Optional[asyncio.Future] = None
        self._reader: Optional[asyncio.Task] = None
        self._writer: Optional[asyncio.Task] = None
        self._outbox: asyncio.Queue[Optional[str]] = asyncio.Queue()

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._closed and not self._remote_closed

    def on_event(self, handler: EventCallback) -> None:
        self._handler = handler

    def on_frame(self, handler: Optional[FrameCallback]) -> None:
        self._frame_handler = handler

    async def open(self, ws_connect: WsConnect, url: str, credential: str) -> None:
        loop = asyncio.get_running_loop()
        self._ready_future = loop.create_future()
        if self.audio_input is not None:
            self.audio_input.open(self._deliver_frame)
        self._ws = await ws_connect(url, credential)
        logger.info("WebSocket connected, waiting for session readiness")
        self._reader = asyncio.create_task(self._read_loop())
        await self._ready_future

    def send(self, frame_bytes: bytes) -> bool:
        """Queue one audio-append message. Returns False if dropped."""
        if not self.ready or not self.is_open:
            self.frames_dropped += 1
            logger.debug("Dropping frame: connection not ready or closed")
            return False
        self._outbox.put_nowait(append_message(to_base64(frame_bytes)))
        self.frames_sent += 1
        return True

    def commit(self) -> bool:
        if not self.ready or not self.is_open:
            logger.debug("Skipping commit: connection not ready or closed")
            return False
        self._outbox.put_nowait(commit_message())
        logger.info("Sent input_audio_buffer.commit (server VAD may have committed already)")
        return True

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._closing = True
        self.ready = False
        self._frame_handler = None
        if self.audio_input is not None:
            try:
                self.audio_input.close()
            except Exception:
                logger.exception("Failed to release audio input")
        if self._ready_future is not None and not self._ready_future.done():
            self._ready_future.cancel()
        if self._writer is not None:
            self._outbox.put_nowait(None)
            try:
                await asyncio.wait_for(self._writer, timeout=1.0)
            except asyncio.TimeoutError:
                self._writer.cancel()
            except ConnectionClosed:
                logger.debug("Writer stopped: connection already closed")
        if self._reader is not None and self._reader is not asyncio.current_task():
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.exception("Reader task failed")
        if self._ws is not None:
            try:
                await self._ws.close()
            except Exception:
                logger.exception("Failed to close websocket")
        logger.info(
            "Connection closed (%d frames sent, %d dropped)", self.frames_sent, self.frames_dropped
        )

    def _deliver_frame(self, frame: AudioFrame) -> None:
        handler = self._frame_handler
        if handler is not None:
            handler(frame)

    async def _write_loop(self) -> None:
        while True:
            message = await self._outbox.get()
            if message is None:
                return
            await self._ws.send(message)

    async def _read_loop(self) -> None:
        try:
            async for message in self._ws:
                self._dispatch(parse_event(message))
        except ConnectionClosed as exc:
            logger.info("WebSocket closed by remote: %s", exc)
        finally:
            self._remote_closed = True
            self.ready = False
            self._fail_pending_ready(ProviderError("WebSocket closed before the session was ready"))
            if not self._closing:
                self._dispatch(
                    ProviderEvent(
                        kind=EventKind.ERROR,
                        type="connection.closed",
                        code=CONNECTION_CLOSED_CODE,
                        message="Transcription connection closed unexpectedly",
                    )
                )

    def _dispatch(self, event: ProviderEvent) -> None:
        if event.kind is EventKind.READY and not self.ready:
            self.ready = True
            self._writer = asyncio.create_task(self._write_loop())
            if self._ready_future is not None and not self._ready_future.done():
                self._ready_future.set_result(None)
            logger.info("Session ready: %s", event.item_id or event.type)
        elif event.kind is EventKind.ERROR and not self.ready:
            if event.code in AUTH_ERROR_CODES:
                self._fail_pending_ready(AuthRejected(event.message))
            else:
                self._fail_pending_ready(ProviderError(event.message, provider_code=event.code))

        handler = self._handler
        if handler is None:
            return
        try:
            handler(event)
        except Exception:
            logger.exception("Event handler failed for %s", event.type)

    def _fail_pending_ready(self, exc: Exception) -> None:
        future = self._ready_future
        if future is not None and not future.done():
            future.set_exception(exc)


class RealtimeTransport:
    def __init__(
        self,
        url: str = DEFAULT_REALTIME_URL,
        connect_timeout_s: float = DEFAULT_CONNECT_TIMEOUT_S,
        audio_input_factory: Optional[AudioInputFactory] = None,
        ws_connect: Optional[WsConnect] = None,
    ) -> None:
        self.url = url
        self.connect_timeout_s = connect_timeout_s
        self._audio_input_factory = audio_input_factory
        self._ws_connect = ws_connect or default_ws_connect

    async def connect(self, credential: str) -> RealtimeConnection:
        if not credential:
            raise AuthRejected("No client secret supplied")
        audio_input = self._audio_input_factory() if self._audio_input_factory else None
        connection = RealtimeConnection(audio_input=audio_input)
        logger.info("Connecting to transcription endpoint %s", self.url)
        try:
            await asyncio.wait_for(
                connection.open(self._ws_connect, self.url, credential),
                timeout=self.connect_timeout_s,
            )
        except asyncio.TimeoutError:
            await connection.close()
            raise ConnectTimeout(
                f"Session not ready after {self.connect_timeout_s:.1f}s"
            ) from None
        except ConsoleError:
            await connection.close()
            raise
        except InvalidHandshake as exc:
            await connection.close()
            status = _handshake_status(exc)
            if status in (401, 403):
                raise AuthRejected(f"Handshake rejected with HTTP {status}") from exc
            raise ProviderError(f"WebSocket handshake failed: {exc}") from exc
        except OSError as exc:
            await connection.close()
            raise ProviderError(f"WebSocket connection failed: {exc}") from exc
        except BaseException:
            await connection.close()
            raise
        return connection
