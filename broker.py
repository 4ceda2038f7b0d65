"""Token broker: trades the long-lived provider key for a session secret.

The server half (``TokenBroker`` + ``create_app``) holds the API key and is
the only code that ever sends it anywhere. The client half
(``HttpTokenSource``) asks the broker endpoint for a grant.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse

from errors import CredentialError, UpstreamAuthError, UpstreamUnavailable
from models import TokenGrant, VadConfig

logger = logging.getLogger(__name__)

CLIENT_SECRETS_URL = "https://api.openai.com/v1/realtime/client_secrets"
TRANSCRIPTION_MODEL = "gpt-4o-mini-transcribe"
TARGET_SAMPLE_RATE = 24000
SESSION_PATH = "/api/transcription-session"


def build_session_request(vad: VadConfig, model: str = TRANSCRIPTION_MODEL) -> dict:
    """Transcription session body; the model lives under audio.input only."""
    return {
        "session": {
            "type": "transcription",
            "audio": {
                "input": {
                    "format": {"type": "audio/pcm", "rate": TARGET_SAMPLE_RATE},
                    "transcription": {"model": model, "language": "en", "prompt": ""},
                    "turn_detection": vad.to_turn_detection(),
                    "noise_reduction": {"type": "near_field"},
                }
            },
        }
    }


class TokenBroker:
    def __init__(
        self,
        api_key: str,
        client: Optional[httpx.AsyncClient] = None,
        url: str = CLIENT_SECRETS_URL,
        model: str = TRANSCRIPTION_MODEL,
        timeout_s: float = 10.0,
    ) -> None:
        self._api_key = api_key
        self._client = client
        self._url = url
        self._model = model
        self._timeout_s = timeout_s

    def validate(self) -> None:
        if not self._api_key:
            raise CredentialError("OPENAI_API_KEY is not configured")
        if not self._api_key.startswith("sk-"):
            logger.warning("Provider API key does not start with the sk- prefix")

    async def mint(self, vad: Optional[VadConfig] = None) -> TokenGrant:
        if not self._api_key:
            raise UpstreamAuthError("Provider API key is missing", status=500)
        vad = vad or VadConfig()
        started = time.monotonic()
        logger.info("Creating transcription session...")

        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }
        body = build_session_request(vad, self._model)
        try:
            if self._client is not None:
                response = await self._client.post(self._url, json=body, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self._timeout_s) as client:
                    response = await client.post(self._url, json=body, headers=headers)
        except httpx.HTTPError as exc:
            logger.error("Provider session request failed: %s", exc)
            raise UpstreamUnavailable(f"Provider request failed: {exc}", status=502) from exc

        if response.status_code in (401, 403):
            logger.error("Provider rejected API key: %s", response.status_code)
            raise UpstreamAuthError(
                f"Provider rejected the API key: {response.text}", status=response.status_code
            )
        if response.status_code >= 400:
            logger.error("Provider API error: %s - %s", response.status_code, response.text)
            raise UpstreamUnavailable(
                "Failed to create transcription session",
                status=response.status_code,
                details=response.text,
            )

        try:
            data = response.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            logger.error("Provider returned a non-JSON session body")
            raise UpstreamUnavailable(
                "Provider response was not a JSON object", status=502, details=response.text
            )
        session = data.get("session")
        if not isinstance(session, dict):
            session = {}
        grant = TokenGrant(
            session_id=str(session.get("id", "")),
            client_secret=str(data.get("value", "")),
            expires_at=int(data.get("expires_at") or session.get("expires_at") or 0),
            model=self._model,
        )
        if not grant.client_secret:
            raise UpstreamUnavailable(
                "Provider response had no client secret", status=502, details=response.text
            )
        logger.info(
            "Transcription session created: id=%s latency=%dms expires_at=%s",
            grant.session_id,
            int((time.monotonic() - started) * 1000),
            grant.expires_at,
        )
        return grant


router = APIRouter()
_started_at = time.monotonic()


@router.get("/api/health")
async def health_check() -> dict[str, Any]:
    return {
        "ok": True,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime": round(time.monotonic() - _started_at, 3),
    }


async def _mint_response(request: Request, vad: VadConfig) -> JSONResponse:
    broker: TokenBroker = request.app.state.broker
    try:
        grant = await broker.mint(vad)
    except UpstreamAuthError as exc:
        return JSONResponse(
            status_code=exc.status,
            content={"error": "Failed to create transcription session", "details": exc.message},
        )
    except UpstreamUnavailable as exc:
        return JSONResponse(
            status_code=exc.status,
            content={
                "error": "Failed to create transcription session",
                "details": exc.details or exc.message,
            },
        )
    return JSONResponse(content=grant.to_public_dict())


@router.get(SESSION_PATH)
async def get_transcription_session(request: Request) -> JSONResponse:
    return await _mint_response(request, VadConfig())


@router.post(SESSION_PATH)
async def post_transcription_session(request: Request) -> JSONResponse:
    body: Any = None
    if await request.body():
        try:
            body = await request.json()
        except ValueError:
            return JSONResponse(status_code=400, content={"error": "Invalid JSON body"})
    try:
        vad = VadConfig.from_camel(body if isinstance(body, dict) else None)
    except (TypeError, ValueError) as exc:
        return JSONResponse(status_code=400, content={"error": "Invalid VAD config", "details": str(exc)})
    return await _mint_response(request, vad)


def create_app(broker: TokenBroker) -> FastAPI:
    app = FastAPI(title="STT tuning console broker")
    app.state.broker = broker
    app.include_router(router)
    return app


class HttpTokenSource:
    """Client for the broker endpoint."""

    def __init__(
        self,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout_s: float = 10.0,
    ) -> None:
        self._url = base_url.rstrip("/") + SESSION_PATH
        self._client = client
        self._timeout_s = timeout_s

    async def mint(self, vad: Optional[VadConfig] = None) -> TokenGrant:
        payload = None
        if vad is not None:
            payload = {
                "threshold": vad.threshold,
                "prefixPaddingMs": vad.prefix_padding_ms,
                "silenceDurationMs": vad.silence_duration_ms,
            }
        logger.info("Requesting session token from broker")
        try:
            if self._client is not None:
                response = await self._client.post(self._url, json=payload)
            else:
                async with httpx.AsyncClient(timeout=self._timeout_s) as client:
                    response = await client.post(self._url, json=payload)
        except httpx.HTTPError as exc:
            raise UpstreamUnavailable(f"Broker unreachable: {exc}", status=503) from exc

        if response.status_code in (401, 403):
            raise UpstreamAuthError(_error_text(response), status=response.status_code)
        if response.status_code >= 400:
            raise UpstreamUnavailable(
                _error_text(response), status=response.status_code, details=response.text
            )
        try:
            data = response.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            raise UpstreamUnavailable(
                "Broker response was not a JSON object", status=502, details=response.text
            )
        if not data.get("clientSecret"):
            raise CredentialError("No client secret in token response")
        grant = TokenGrant(
            session_id=str(data.get("sessionId", "")),
            client_secret=str(data["clientSecret"]),
            expires_at=int(data.get("expiresAt") or 0),
            model=str(data.get("model", "")),
        )
        logger.info("Got session token: id=%s expires_at=%s", grant.session_id, grant.expires_at)
        return grant


def _error_text(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(data, dict):
        return str(data.get("details") or data.get("error") or response.text)
    return response.text
