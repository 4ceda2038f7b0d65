"""Shared error codes, user-facing messages and exception types."""

from __future__ import annotations

from typing import Optional

CREDENTIAL_ERROR = "CREDENTIAL_ERROR"
UPSTREAM_AUTH_ERROR = "UPSTREAM_AUTH_ERROR"
UPSTREAM_UNAVAILABLE = "UPSTREAM_UNAVAILABLE"
CONNECT_TIMEOUT = "CONNECT_TIMEOUT"
AUTH_REJECTED = "AUTH_REJECTED"
PROVIDER_ERROR = "PROVIDER_ERROR"
ENCODING_INVARIANT = "ENCODING_INVARIANT"
SCORING_FAILED = "SCORING_FAILED"
STOPPED_BEFORE_READY = "STOPPED_BEFORE_READY"

# Sent by the provider when a manual commit races the server VAD commit.
BENIGN_COMMIT_EMPTY = "input_audio_buffer_commit_empty"
BENIGN_PROVIDER_CODES = frozenset({BENIGN_COMMIT_EMPTY})

ERROR_MESSAGES = {
    CREDENTIAL_ERROR: "Provider API key is missing or invalid.",
    UPSTREAM_AUTH_ERROR: "Provider rejected the API key.",
    UPSTREAM_UNAVAILABLE: "Provider session service is unavailable.",
    CONNECT_TIMEOUT: "Transcription session did not become ready in time.",
    AUTH_REJECTED: "Transcription session rejected the credential.",
    PROVIDER_ERROR: "Transcription provider reported an error.",
    ENCODING_INVARIANT: "Encoded audio frame is malformed.",
    SCORING_FAILED: "Scoring unavailable, transcript kept.",
    STOPPED_BEFORE_READY: "Stopped before the transcription session was ready.",
}


class ConsoleError(Exception):
    code = PROVIDER_ERROR

    def __init__(self, message: str = "", code: Optional[str] = None) -> None:
        if code is not None:
            self.code = code
        self.message = message or ERROR_MESSAGES.get(self.code, self.code)
        super().__init__(self.message)


class CredentialError(ConsoleError):
    code = CREDENTIAL_ERROR


class UpstreamAuthError(ConsoleError):
    code = UPSTREAM_AUTH_ERROR

    def __init__(self, message: str = "", status: int = 401) -> None:
        super().__init__(message)
        self.status = status


class UpstreamUnavailable(ConsoleError):
    code = UPSTREAM_UNAVAILABLE

    def __init__(self, message: str = "", status: int = 502, details: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.details = details


class ConnectTimeout(ConsoleError):
    code = CONNECT_TIMEOUT


class AuthRejected(ConsoleError):
    code = AUTH_REJECTED


class ProviderError(ConsoleError):
    code = PROVIDER_ERROR

    def __init__(self, message: str = "", provider_code: str = "") -> None:
        super().__init__(message)
        self.provider_code = provider_code


class EncodingInvariantViolation(ConsoleError):
    code = ENCODING_INVARIANT


class ScoringFailed(ConsoleError):
    code = SCORING_FAILED

    def __init__(self, message: str = "", status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


def is_benign_provider_code(code: str) -> bool:
    return code in BENIGN_PROVIDER_CODES
