"""Tests for the token broker, its HTTP routes and the broker client."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest
from fastapi.testclient import TestClient

from broker import HttpTokenSource, TokenBroker, build_session_request, create_app
from errors import CredentialError, UpstreamAuthError, UpstreamUnavailable
from models import VadConfig

API_KEY = "sk-test-key"
GRANT = {"value": "ek_123", "expires_at": 1700000600, "session": {"id": "sess_1"}}


# ---------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------

class Upstream:
    """Records provider requests and replies with a canned response."""

    def __init__(self, status: int = 200, body: dict | None = None, fail: bool = False) -> None:
        self.status = status
        self.body = GRANT if body is None else body
        self.fail = fail
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail:
            raise httpx.ConnectError("upstream down", request=request)
        return httpx.Response(self.status, json=self.body)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))

    def last_body(self) -> dict:
        return json.loads(self.requests[-1].content)


def _app(upstream: Upstream, api_key: str = API_KEY) -> TestClient:
    return TestClient(create_app(TokenBroker(api_key=api_key, client=upstream.client())))


# ---------------------------------------------------------------
# Session request body
# ---------------------------------------------------------------

def test_session_request_shape() -> None:
    body = build_session_request(VadConfig(threshold=0.4, silence_duration_ms=800))
    session = body["session"]
    assert session["type"] == "transcription"
    assert "model" not in session
    audio_input = session["audio"]["input"]
    assert audio_input["format"] == {"type": "audio/pcm", "rate": 24000}
    assert audio_input["transcription"]["model"] == "gpt-4o-mini-transcribe"
    assert audio_input["transcription"]["language"] == "en"
    assert audio_input["noise_reduction"] == {"type": "near_field"}
    assert audio_input["turn_detection"] == {
        "type": "server_vad",
        "threshold": 0.4,
        "prefix_padding_ms": 500,
        "silence_duration_ms": 800,
    }


# ---------------------------------------------------------------
# TokenBroker.mint
# ---------------------------------------------------------------

def test_mint_returns_grant_and_sends_key_upstream() -> None:
    upstream = Upstream()
    broker = TokenBroker(api_key=API_KEY, client=upstream.client())

    grant = asyncio.run(broker.mint())

    assert grant.client_secret == "ek_123"
    assert grant.session_id == "sess_1"
    assert grant.expires_at == 1700000600
    assert upstream.requests[0].headers["Authorization"] == f"Bearer {API_KEY}"
    assert upstream.requests[0].url == "https://api.openai.com/v1/realtime/client_secrets"


def test_mint_without_key_never_calls_upstream() -> None:
    upstream = Upstream()
    broker = TokenBroker(api_key="", client=upstream.client())
    with pytest.raises(UpstreamAuthError) as info:
        asyncio.run(broker.mint())
    assert info.value.status == 500
    assert upstream.requests == []


@pytest.mark.parametrize("status", [401, 403])
def test_mint_maps_rejected_key(status: int) -> None:
    broker = TokenBroker(api_key=API_KEY, client=Upstream(status=status, body={"error": "no"}).client())
    with pytest.raises(UpstreamAuthError) as info:
        asyncio.run(broker.mint())
    assert info.value.status == status


def test_mint_maps_upstream_failure() -> None:
    broker = TokenBroker(api_key=API_KEY, client=Upstream(status=500, body={"error": "x"}).client())
    with pytest.raises(UpstreamUnavailable) as info:
        asyncio.run(broker.mint())
    assert info.value.status == 500
    assert "error" in info.value.details


def test_mint_maps_network_failure() -> None:
    broker = TokenBroker(api_key=API_KEY, client=Upstream(fail=True).client())
    with pytest.raises(UpstreamUnavailable) as info:
        asyncio.run(broker.mint())
    assert info.value.status == 502


def test_mint_without_secret_in_response() -> None:
    broker = TokenBroker(api_key=API_KEY, client=Upstream(body={"session": {"id": "s"}}).client())
    with pytest.raises(UpstreamUnavailable):
        asyncio.run(broker.mint())


def test_mint_maps_non_json_success_body() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>gateway</html>")

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    broker = TokenBroker(api_key=API_KEY, client=client)
    with pytest.raises(UpstreamUnavailable) as info:
        asyncio.run(broker.mint())
    assert info.value.status == 502

    route_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    app = create_app(TokenBroker(api_key=API_KEY, client=route_client))
    response = TestClient(app).get("/api/transcription-session")
    assert response.status_code == 502
    assert set(response.json()) == {"error", "details"}


def test_validate_requires_key() -> None:
    with pytest.raises(CredentialError):
        TokenBroker(api_key="").validate()
    TokenBroker(api_key=API_KEY).validate()


# ---------------------------------------------------------------
# HTTP routes
# ---------------------------------------------------------------

def test_health_route() -> None:
    response = _app(Upstream()).get("/api/health")
    assert response.status_code == 200
    data = response.json()
    assert data["ok"] is True
    assert "timestamp" in data
    assert data["uptime"] >= 0


def test_get_session_returns_public_grant() -> None:
    response = _app(Upstream()).get("/api/transcription-session")
    assert response.status_code == 200
    assert response.json() == {
        "sessionId": "sess_1",
        "clientSecret": "ek_123",
        "expiresAt": 1700000600,
        "model": "gpt-4o-mini-transcribe",
    }
    assert API_KEY not in response.text


def test_post_session_applies_vad_tuning() -> None:
    upstream = Upstream()
    response = _app(upstream).post(
        "/api/transcription-session",
        json={"threshold": 0.6, "prefixPaddingMs": 300, "silenceDurationMs": 1200},
    )
    assert response.status_code == 200
    turn_detection = upstream.last_body()["session"]["audio"]["input"]["turn_detection"]
    assert turn_detection["threshold"] == 0.6
    assert turn_detection["prefix_padding_ms"] == 300
    assert turn_detection["silence_duration_ms"] == 1200


def test_post_session_rejects_bad_input() -> None:
    upstream = Upstream()
    client = _app(upstream)
    bad_json = client.post(
        "/api/transcription-session",
        content=b"{not json",
        headers={"Content-Type": "application/json"},
    )
    assert bad_json.status_code == 400
    bad_vad = client.post("/api/transcription-session", json={"threshold": 2.0})
    assert bad_vad.status_code == 400
    assert upstream.requests == []


def test_session_route_propagates_upstream_status() -> None:
    response = _app(Upstream(status=401, body={"error": "invalid key"})).get(
        "/api/transcription-session"
    )
    assert response.status_code == 401
    data = response.json()
    assert data["error"] == "Failed to create transcription session"
    assert "details" in data


def test_session_route_without_key_is_500() -> None:
    response = _app(Upstream(), api_key="").get("/api/transcription-session")
    assert response.status_code == 500
    assert set(response.json()) == {"error", "details"}


# ---------------------------------------------------------------
# HttpTokenSource
# ---------------------------------------------------------------

class BrokerStub:
    def __init__(self, status: int = 200, body: dict | None = None) -> None:
        self.status = status
        self.body = body if body is not None else {
            "sessionId": "sess_1",
            "clientSecret": "ek_123",
            "expiresAt": 1700000600,
            "model": "gpt-4o-mini-transcribe",
        }
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status, json=self.body)


def _source(stub: BrokerStub) -> HttpTokenSource:
    client = httpx.AsyncClient(transport=httpx.MockTransport(stub))
    return HttpTokenSource("http://broker.test/", client=client)


def test_token_source_returns_grant() -> None:
    stub = BrokerStub()
    grant = asyncio.run(_source(stub).mint(VadConfig(threshold=0.5)))
    assert grant.client_secret == "ek_123"
    assert grant.session_id == "sess_1"
    assert str(stub.requests[0].url) == "http://broker.test/api/transcription-session"
    assert json.loads(stub.requests[0].content)["threshold"] == 0.5


def test_token_source_error_mapping() -> None:
    with pytest.raises(UpstreamAuthError):
        asyncio.run(_source(BrokerStub(status=401, body={"error": "x"})).mint())
    with pytest.raises(UpstreamUnavailable):
        asyncio.run(_source(BrokerStub(status=502, body={"error": "x"})).mint())
    with pytest.raises(CredentialError):
        asyncio.run(_source(BrokerStub(body={"sessionId": "s"})).mint())


def test_token_source_maps_non_json_success_body() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>")

    source = HttpTokenSource(
        "http://broker.test", client=httpx.AsyncClient(transport=httpx.MockTransport(handler))
    )
    with pytest.raises(UpstreamUnavailable) as info:
        asyncio.run(source.mint())
    assert info.value.status == 502
