"""Core data models for the console."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional


class SessionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECORDING = "recording"
    PROCESSING = "processing"
    ERROR = "error"


class EventKind(str, Enum):
    """Closed set of inbound provider event kinds."""

    READY = "ready"
    DELTA = "delta"
    TURN_COMPLETE = "turn_complete"
    VAD_BOUNDARY = "vad_boundary"
    ERROR = "error"
    OTHER = "other"


class RunStatus(str, Enum):
    SUCCESS = "success"
    EMPTY_TRANSCRIPT = "empty_transcript"
    SCORING_FAILED = "scoring_failed"


@dataclass
class ProviderEvent:
    kind: EventKind
    type: str = ""
    text: str = ""
    item_id: str = ""
    code: str = ""
    message: str = ""


@dataclass
class AudioFrame:
    samples: Any
    sample_rate: int = 48000
    timestamp_ms: int = 0


@dataclass
class VadConfig:
    threshold: float = 0.3
    prefix_padding_ms: int = 500
    silence_duration_ms: int = 2000

    def __post_init__(self) -> None:
        if not 0.0 <= float(self.threshold) <= 1.0:
            raise ValueError(f"threshold must be within [0, 1], got {self.threshold}")
        if int(self.prefix_padding_ms) < 0 or int(self.silence_duration_ms) < 0:
            raise ValueError("VAD durations must be non-negative")

    def to_turn_detection(self) -> dict:
        return {
            "type": "server_vad",
            "threshold": float(self.threshold),
            "prefix_padding_ms": int(self.prefix_padding_ms),
            "silence_duration_ms": int(self.silence_duration_ms),
        }

    @classmethod
    def from_camel(cls, data: Optional[dict]) -> "VadConfig":
        data = data or {}
        defaults = cls()
        return cls(
            threshold=data.get("threshold", defaults.threshold),
            prefix_padding_ms=data.get("prefixPaddingMs", defaults.prefix_padding_ms),
            silence_duration_ms=data.get("silenceDurationMs", defaults.silence_duration_ms),
        )


@dataclass
class TokenGrant:
    session_id: str
    client_secret: str
    expires_at: int
    model: str = ""

    def to_public_dict(self) -> dict:
        return {
            "sessionId": self.session_id,
            "clientSecret": self.client_secret,
            "expiresAt": self.expires_at,
            "model": self.model,
        }


@dataclass
class StructureRequirements:
    require_receiver: bool = True
    require_sender: bool = True
    require_location: bool = False
    require_intent: bool = True
    closing_optional: bool = True

    def to_payload(self) -> dict:
        return {
            "requireReceiver": self.require_receiver,
            "requireSender": self.require_sender,
            "requireLocation": self.require_location,
            "requireIntent": self.require_intent,
            "closingOptional": self.closing_optional,
        }


@dataclass
class Question:
    id: str
    expected_answer: str
    scenario_prompt: str = ""
    structure: Optional[StructureRequirements] = None

    @classmethod
    def from_dict(cls, data: dict) -> "Question":
        expected = data.get("expectedAnswer", {})
        if isinstance(expected, str):
            expected = {"text": expected}
        structure = expected.get("structure")
        return cls(
            id=str(data.get("id", "")),
            expected_answer=str(expected.get("text", "")),
            scenario_prompt=str(data.get("scenarioPrompt", "")),
            structure=StructureRequirements(
                require_receiver=bool(structure.get("requireReceiver", True)),
                require_sender=bool(structure.get("requireSender", True)),
                require_location=bool(structure.get("requireLocation", False)),
                require_intent=bool(structure.get("requireIntent", True)),
                closing_optional=bool(structure.get("closingOptional", True)),
            )
            if structure
            else None,
        )


@dataclass
class Profile:
    id: str
    name: str = ""
    weights: dict = field(
        default_factory=lambda: {"accuracy": 0.5, "fluency": 0.3, "structure": 0.2}
    )
    pass_mark_overall: int = 70
    filler_penalty_per_word: float = 2.0
    filler_penalty_cap: float = 20.0
    pause_penalty: float = 1.0
    long_pause_penalty: float = 3.0
    pause_penalty_cap: float = 20.0
    digit_word_equivalence: bool = True
    scoring_prompt: str = ""
    explanation_prompt: str = ""
    model: str = "gpt-4o-mini"
    temperature: float = 0.3

    @classmethod
    def from_dict(cls, data: dict) -> "Profile":
        fluency = data.get("fluency", {})
        evaluator = data.get("evaluator", {})
        benchmarks = data.get("benchmarks", {})
        normalization = data.get("normalization", {})
        defaults = cls(id="")
        return cls(
            id=str(data.get("id", "")),
            name=str(data.get("name", "")),
            weights=dict(data.get("weights", defaults.weights)),
            pass_mark_overall=int(benchmarks.get("passMarkOverall", defaults.pass_mark_overall)),
            filler_penalty_per_word=fluency.get(
                "fillerPenaltyPerWord", defaults.filler_penalty_per_word
            ),
            filler_penalty_cap=fluency.get("fillerPenaltyCap", defaults.filler_penalty_cap),
            pause_penalty=fluency.get("pausePenalty", defaults.pause_penalty),
            long_pause_penalty=fluency.get("longPausePenalty", defaults.long_pause_penalty),
            digit_word_equivalence=bool(
                normalization.get("digitWordEquivalence", defaults.digit_word_equivalence)
            ),
            scoring_prompt=str(evaluator.get("scoringPromptTemplate", "")),
            explanation_prompt=str(evaluator.get("explanationPromptTemplate", "")),
            model=str(evaluator.get("model", defaults.model)),
            temperature=float(evaluator.get("temperature", defaults.temperature)),
        )


@dataclass
class FluencyMetrics:
    duration_ms: int
    wpm: int
    pause_count: int
    long_pause_count: int
    longest_pause_ms: int
    filler_count: int
    filler_breakdown: dict = field(default_factory=dict)

    def to_payload(self) -> dict:
        return {
            "durationMs": self.duration_ms,
            "wpm": self.wpm,
            "pauseCount": self.pause_count,
            "longPauseCount": self.long_pause_count,
            "longestPauseMs": self.longest_pause_ms,
            "fillerCount": self.filler_count,
            "fillerBreakdown": dict(self.filler_breakdown),
        }


@dataclass
class ScoreResult:
    accuracy_score: int
    fluency_score: int
    structure_score: int
    overall_score: int
    reasons: dict = field(default_factory=dict)
    passed: bool = False


@dataclass
class SessionTelemetry:
    connect_time_ms: Optional[int] = None
    time_to_first_text_ms: Optional[int] = None
    time_to_final_ms: Optional[int] = None
    evaluator_latency_ms: Optional[int] = None
    total_latency_ms: Optional[int] = None
    audio_duration_ms: Optional[int] = None
    estimated_cost: float = 0.0


@dataclass(frozen=True)
class RunRecord:
    id: str
    question_id: str
    profile_id: str
    timestamp: str
    transcript: str
    audio_duration_ms: int
    telemetry: SessionTelemetry
    status: RunStatus
    score: Optional[ScoreResult] = None
    error_message: str = ""

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass
class Session:
    id: str
    state: SessionState = SessionState.IDLE
    started_at: float = 0.0
    recording_started_at: Optional[float] = None
    interim_transcript: str = ""
    final_transcript: str = ""
    last_error: Optional[str] = None
    telemetry: SessionTelemetry = field(default_factory=SessionTelemetry)

    @property
    def transcript(self) -> str:
        parts = [self.final_transcript.strip(), self.interim_transcript.strip()]
        return " ".join(p for p in parts if p)
