"""State-machine based session orchestration.

One controller owns one recording attempt at a time:

    idle -> connecting -> connected -> recording -> processing -> idle
    connecting | connected | recording | processing -> error -> idle

A ready standby connection from the pre-connection pool skips the
``connecting`` state. Provider events from the active connection arrive at a
single handler and are dispatched on ``ProviderEvent.kind``.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from errors import (
    ConsoleError,
    EncodingInvariantViolation,
    PROVIDER_ERROR,
    ProviderError,
    SCORING_FAILED,
    STOPPED_BEFORE_READY,
    ScoringFailed,
    is_benign_provider_code,
)
from interfaces import Connection, RunStore, Scorer, TokenSource, Transport
from models import (
    AudioFrame,
    EventKind,
    Profile,
    ProviderEvent,
    Question,
    RunRecord,
    RunStatus,
    ScoreResult,
    Session,
    SessionState,
    VadConfig,
)
from preconnect import PreconnectPool
from resampler import TARGET_SAMPLE_RATE, encode
from scoring import build_score_request, parse_score_response
from text_utils import estimate_cost

logger = logging.getLogger(__name__)

StateCallback = Callable[[SessionState, SessionState], None]
TextCallback = Callable[[str], None]
ErrorCallback = Callable[[str, str], None]
RunCallback = Callable[[RunRecord], None]
TimerFactory = Callable[[float, Callable[[], None]], Any]

STOPPABLE_STATES = (SessionState.CONNECTING, SessionState.CONNECTED, SessionState.RECORDING)


def _default_timer(delay_s: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
    return asyncio.get_running_loop().call_later(delay_s, callback)


class SessionController:
    def __init__(
        self,
        token_source: TokenSource,
        transport: Transport,
        scorer: Scorer,
        run_store: Optional[RunStore] = None,
        pool: Optional[PreconnectPool] = None,
        vad: Optional[VadConfig] = None,
        settle_interval_s: float = 2.0,
        rewarm_delay_s: float = 0.1,
        target_sample_rate: int = TARGET_SAMPLE_RATE,
        strict_encoding: bool = False,
        clock: Callable[[], float] = time.monotonic,
        timer_factory: TimerFactory = _default_timer,
        on_state_change: Optional[StateCallback] = None,
        on_partial: Optional[TextCallback] = None,
        on_final: Optional[TextCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        on_run_complete: Optional[RunCallback] = None,
    ) -> None:
        self._token_source = token_source
        self._transport = transport
        self._scorer = scorer
        self._run_store = run_store
        self._vad = vad
        self._settle_interval_s = settle_interval_s
        self._rewarm_delay_s = rewarm_delay_s
        self._target_sample_rate = target_sample_rate
        self._strict_encoding = strict_encoding
        self._clock = clock
        self._timer_factory = timer_factory
        self._on_state_change = on_state_change
        self._on_partial = on_partial
        self._on_final = on_final
        self._on_error = on_error
        self._on_run_complete = on_run_complete

        self.pool = pool or PreconnectPool(self._open_connection)

        self._state = SessionState.IDLE
        self._session = Session(id="")
        self._question: Optional[Question] = None
        self._profile: Optional[Profile] = None
        self._connection: Optional[Connection] = None
        self._capturing = False
        self._frame_count = 0
        self._connect_task: Optional[asyncio.Task] = None
        self._abort_requested = False
        self._settle_future: Optional[asyncio.Future] = None
        self._settle_timer: Any = None
        self._reset_task: Optional[asyncio.Task] = None
        self._rewarm_task: Optional[asyncio.Task] = None

        self._event_handlers = {
            EventKind.READY: self._on_ready_event,
            EventKind.DELTA: self._on_delta_event,
            EventKind.TURN_COMPLETE: self._on_turn_complete_event,
            EventKind.VAD_BOUNDARY: self._on_vad_event,
            EventKind.ERROR: self._on_error_event,
            EventKind.OTHER: self._on_other_event,
        }
        missing = set(EventKind) - set(self._event_handlers)
        if missing:
            raise RuntimeError(f"no handler for event kinds: {sorted(k.value for k in missing)}")

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def session(self) -> Session:
        return self._session

    @property
    def connection(self) -> Optional[Connection]:
        return self._connection

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def set_profile(self, profile: Profile) -> Optional[asyncio.Task]:
        """Remember the active profile and warm a standby connection."""
        self._profile = profile
        if self._state != SessionState.IDLE:
            return None
        return self._schedule_rewarm(0.0)

    async def start(self, question: Question, profile: Profile) -> None:
        if self._state != SessionState.IDLE:
            logger.info("Start ignored in state %s", self._state.value)
            return
        self._cancel_rewarm()
        self._question = question
        self._profile = profile
        self._abort_requested = False
        self._frame_count = 0
        self._session = Session(id=uuid.uuid4().hex[:12], started_at=self._clock())

        connection = self.pool.take()
        if connection is not None:
            logger.info("Using pre-connected session for instant start")
            self._attach(connection)
            self._session.telemetry.connect_time_ms = self._elapsed_ms(self._session.started_at)
            self._transition(SessionState.CONNECTED)
        else:
            logger.info("No pre-connection available, establishing new session")
            await self.pool.discard()
            self._transition(SessionState.CONNECTING)
            self._connect_task = asyncio.create_task(self._open_connection())
            try:
                connection = await self._connect_task
            except asyncio.CancelledError:
                if self._abort_requested:
                    return
                raise
            except Exception as exc:
                self._enter_error(exc)
                await self._reset()
                return
            finally:
                self._connect_task = None
            if self._abort_requested:
                await connection.close()
                return
            self._attach(connection)
            self._session.telemetry.connect_time_ms = self._elapsed_ms(self._session.started_at)
            self._transition(SessionState.CONNECTED)

        self._begin_capture()

    async def stop(self) -> Optional[RunRecord]:
        if self._state not in STOPPABLE_STATES:
            logger.info("Stop ignored in state %s", self._state.value)
            return None

        connection = self._connection
        if connection is None or not connection.ready:
            await self._abort_before_ready()
            return None

        self._capturing = False
        logger.info("Recording stopped")
        self._transition(SessionState.PROCESSING)
        recording_started = self._session.recording_started_at
        audio_duration_ms = self._elapsed_ms(recording_started) if recording_started else 0

        if not connection.commit():
            logger.info("Commit not sent, connection no longer open")
        await self._settle()
        await self._release_connection()

        if self._state != SessionState.PROCESSING:
            # A provider error during settle already moved the session on.
            return None
        return await self._finish(audio_duration_ms)

    async def teardown(self) -> None:
        self._cancel_rewarm()
        self._capturing = False
        if self._connect_task is not None and not self._connect_task.done():
            self._abort_requested = True
            self._connect_task.cancel()
        self._resolve_settle()
        await self._release_connection()
        await self.pool.discard()
        self._transition(SessionState.IDLE)

    # ------------------------------------------------------------------
    # Lifecycle internals
    # ------------------------------------------------------------------

    async def _open_connection(self) -> Connection:
        grant = await self._token_source.mint(self._vad)
        return await self._transport.connect(grant.client_secret)

    def _attach(self, connection: Connection) -> None:
        self._connection = connection
        connection.on_event(self._handle_event)
        connection.on_frame(self._on_frame)

    def _begin_capture(self) -> None:
        self._session.recording_started_at = self._clock()
        self._capturing = True
        self._transition(SessionState.RECORDING)
        logger.info("Recording started")

    async def _abort_before_ready(self) -> None:
        self._abort_requested = True
        task = self._connect_task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except (asyncio.CancelledError, Exception):
                logger.debug("Connect attempt ended after stop request")
        self._enter_error(ConsoleError(code=STOPPED_BEFORE_READY))
        await self._reset()

    def _settle(self) -> asyncio.Future:
        loop = asyncio.get_running_loop()
        self._settle_future = loop.create_future()
        self._settle_timer = self._timer_factory(self._settle_interval_s, self._on_settle_elapsed)
        logger.info("Waiting %.1fs for trailing transcription events", self._settle_interval_s)
        return self._settle_future

    def _on_settle_elapsed(self) -> None:
        self._resolve_settle()

    def _resolve_settle(self) -> None:
        timer, self._settle_timer = self._settle_timer, None
        if timer is not None:
            timer.cancel()
        future = self._settle_future
        if future is not None and not future.done():
            future.set_result(None)

    async def _finish(self, audio_duration_ms: int) -> RunRecord:
        session = self._session
        telemetry = session.telemetry
        telemetry.audio_duration_ms = audio_duration_ms
        telemetry.estimated_cost = estimate_cost(audio_duration_ms)
        transcript = session.transcript

        score: Optional[ScoreResult] = None
        error_message = ""
        if not transcript:
            logger.info("No transcript produced, skipping scoring")
            status = RunStatus.EMPTY_TRANSCRIPT
        else:
            try:
                score = await self._score(transcript, audio_duration_ms)
                status = RunStatus.SUCCESS
            except ScoringFailed as exc:
                status = RunStatus.SCORING_FAILED
                error_message = exc.message
                session.last_error = exc.message
                self._emit_error(SCORING_FAILED, exc.message)

        telemetry.total_latency_ms = self._elapsed_ms(session.started_at)
        record = RunRecord(
            id=f"run-{uuid.uuid4().hex[:12]}",
            question_id=self._question.id if self._question else "",
            profile_id=self._profile.id if self._profile else "",
            timestamp=datetime.now(timezone.utc).isoformat(),
            transcript=transcript,
            audio_duration_ms=audio_duration_ms,
            telemetry=telemetry,
            status=status,
            score=score,
            error_message=error_message,
        )
        self._store(record)
        self._transition(SessionState.IDLE)
        self._schedule_rewarm(self._rewarm_delay_s)
        return record

    async def _score(self, transcript: str, audio_duration_ms: int) -> ScoreResult:
        if self._question is None or self._profile is None:
            raise ScoringFailed("No question or profile for scoring")
        started = self._clock()
        request = build_score_request(self._question, self._profile, transcript, audio_duration_ms)
        try:
            data = await self._scorer.score(request)
        except ScoringFailed:
            raise
        except Exception as exc:
            raise ScoringFailed(f"Scoring failed: {exc}") from exc
        self._session.telemetry.evaluator_latency_ms = self._elapsed_ms(started)
        try:
            result = parse_score_response(data, self._profile.pass_mark_overall)
        except ScoringFailed:
            raise
        except Exception as exc:
            raise ScoringFailed(f"Unreadable scoring response: {exc}") from exc
        logger.info("Scoring complete: overall=%d passed=%s", result.overall_score, result.passed)
        return result

    def _store(self, record: RunRecord) -> None:
        if self._run_store is not None:
            try:
                self._run_store.append(record)
            except OSError:
                logger.exception("Failed to store run record %s", record.id)
        if self._on_run_complete:
            self._on_run_complete(record)

    def _enter_error(self, exc: BaseException) -> None:
        if isinstance(exc, ConsoleError):
            code, message = exc.code, exc.message
        else:
            code, message = PROVIDER_ERROR, str(exc) or type(exc).__name__
        logger.error("Session error %s: %s", code, message)
        self._capturing = False
        self._session.last_error = message
        self._transition(SessionState.ERROR)
        self._emit_error(code, message)
        self._resolve_settle()

    async def _reset(self) -> None:
        await self._release_connection()
        if self._state == SessionState.ERROR:
            self._transition(SessionState.IDLE)

    async def _release_connection(self) -> None:
        connection, self._connection = self._connection, None
        if connection is None:
            return
        connection.on_frame(None)
        try:
            await connection.close()
        except Exception:
            logger.exception("Failed to close connection")

    def _schedule_rewarm(self, delay_s: float) -> asyncio.Task:
        self._cancel_rewarm()
        self._rewarm_task = self.pool.schedule_warm(
            delay_s, condition=lambda: self._state == SessionState.IDLE
        )
        return self._rewarm_task

    def _cancel_rewarm(self) -> None:
        task, self._rewarm_task = self._rewarm_task, None
        if task is not None and not task.done():
            task.cancel()

    # ------------------------------------------------------------------
    # Audio frames
    # ------------------------------------------------------------------

    def _on_frame(self, frame: AudioFrame) -> None:
        connection = self._connection
        if not self._capturing or connection is None:
            return
        if not connection.ready:
            logger.debug("Skipping audio, session not ready yet")
            return
        try:
            payload = encode(frame.samples, frame.sample_rate, self._target_sample_rate)
        except EncodingInvariantViolation:
            if self._strict_encoding:
                raise
            logger.warning("Dropping malformed audio frame", exc_info=True)
            return

        self._frame_count += 1
        if self._frame_count == 1:
            logger.info(
                "First audio frame: %d samples at %d Hz -> %d samples at %d Hz (%d bytes)",
                len(frame.samples),
                frame.sample_rate,
                len(payload) // 2,
                self._target_sample_rate,
                len(payload),
            )
        elif self._frame_count <= 5 or self._frame_count % 30 == 0:
            logger.debug("Sent frame #%d: %d bytes", self._frame_count, len(payload))
        connection.send(payload)

    # ------------------------------------------------------------------
    # Provider events
    # ------------------------------------------------------------------

    def _handle_event(self, event: ProviderEvent) -> None:
        if self._state in (SessionState.IDLE, SessionState.ERROR):
            logger.debug("Ignoring %s in state %s", event.type, self._state.value)
            return
        logger.debug("Event: %s", event.type)
        self._event_handlers[event.kind](event)

    def _on_ready_event(self, event: ProviderEvent) -> None:
        logger.info("Transcription session ready: %s", event.item_id or event.type)

    def _on_delta_event(self, event: ProviderEvent) -> None:
        session = self._session
        if event.text:
            if session.telemetry.time_to_first_text_ms is None:
                session.telemetry.time_to_first_text_ms = self._elapsed_ms(session.started_at)
            session.interim_transcript += event.text
            if self._on_partial:
                self._on_partial(session.interim_transcript)

    def _on_turn_complete_event(self, event: ProviderEvent) -> None:
        session = self._session
        session.interim_transcript = ""
        if not event.text:
            return
        separator = " " if session.final_transcript else ""
        session.final_transcript = session.final_transcript + separator + event.text
        if session.telemetry.time_to_final_ms is None:
            session.telemetry.time_to_final_ms = self._elapsed_ms(session.started_at)
        logger.info("Transcription completed: %s", event.text)
        if self._on_final:
            self._on_final(session.final_transcript)

    def _on_vad_event(self, event: ProviderEvent) -> None:
        logger.debug("Voice activity: %s", event.type)

    def _on_error_event(self, event: ProviderEvent) -> None:
        if is_benign_provider_code(event.code):
            logger.info("Ignoring %s (server VAD already committed)", event.code)
            return
        self._enter_error(ProviderError(event.message, provider_code=event.code))
        self._reset_task = asyncio.get_running_loop().create_task(self._reset())

    def _on_other_event(self, event: ProviderEvent) -> None:
        logger.debug("Unhandled event type: %s", event.type)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _elapsed_ms(self, since: float) -> int:
        return max(0, int(round((self._clock() - since) * 1000)))

    def _emit_error(self, code: str, message: str) -> None:
        if self._on_error:
            self._on_error(code, message)

    def _transition(self, to_state: SessionState) -> None:
        from_state = self._state
        if from_state == to_state:
            return
        self._state = to_state
        self._session.state = to_state
        logger.info("Session state: %s -> %s", from_state.value, to_state.value)
        if self._on_state_change:
            self._on_state_change(from_state, to_state)
