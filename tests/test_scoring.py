from __future__ import annotations

import asyncio

import httpx
import pytest

from errors import ScoringFailed
from models import Profile, Question
from scoring import ScoringClient, build_score_request, parse_score_response

SCORES = {
    "accuracyScore": 90,
    "fluencyScore": 80,
    "structureScore": 70,
    "overallScore": 82,
    "reasons": {"accuracy": ["matched"], "fluency": [], "structure": ["no closing"]},
}


def _question() -> Question:
    return Question(id="q1", expected_answer="Tower, Alpha One Two, ready for departure.")


def _profile(pass_mark: int = 70) -> Profile:
    return Profile(id="p1", pass_mark_overall=pass_mark, scoring_prompt="score it")


# ---------------------------------------------------------------
# Request building
# ---------------------------------------------------------------

def test_score_request_contents() -> None:
    request = build_score_request(_question(), _profile(), "um tower alpha one two ready", 4000)

    assert request["expectedAnswer"]["normalized"] == "tower alpha 1 2 ready for departure"
    assert request["transcript"]["raw"] == "um tower alpha one two ready"
    assert request["transcript"]["normalized"] == "tower alpha 1 2 ready"
    assert request["fluencyMetrics"]["durationMs"] == 4000
    assert request["fluencyMetrics"]["fillerCount"] == 1
    assert request["structureRequirements"] == {
        "requireReceiver": True,
        "requireSender": True,
        "requireLocation": False,
        "requireIntent": True,
        "closingOptional": True,
    }
    assert request["profileParameters"]["fluency"]["pausePenaltyCap"] == 20.0
    assert request["scoringPrompt"] == "score it"


# ---------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------

def test_pass_is_computed_from_overall_and_pass_mark() -> None:
    assert parse_score_response(SCORES, 82).passed is True
    assert parse_score_response(SCORES, 83).passed is False


def test_parse_keeps_reasons() -> None:
    result = parse_score_response(SCORES, 70)
    assert result.overall_score == 82
    assert result.reasons["structure"] == ["no closing"]


@pytest.mark.parametrize(
    "data",
    [
        None,
        {"accuracyScore": 1, "fluencyScore": 1, "structureScore": 1},
        {**SCORES, "overallScore": 140},
        {**SCORES, "fluencyScore": "n/a"},
        {**SCORES, "reasons": ["too slow"]},
        {**SCORES, "reasons": {"accuracy": 5}},
    ],
)
def test_malformed_responses_fail(data) -> None:  # noqa: ANN001
    with pytest.raises(ScoringFailed):
        parse_score_response(data, 70)


# ---------------------------------------------------------------
# ScoringClient
# ---------------------------------------------------------------

def _client(handler) -> ScoringClient:  # noqa: ANN001
    return ScoringClient(
        "http://broker.test",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


def test_client_posts_to_score_endpoint() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=SCORES)

    request = build_score_request(_question(), _profile(), "tower", 1000)
    data = asyncio.run(_client(handler).score(request))

    assert data["overallScore"] == 82
    assert str(seen[0].url) == "http://broker.test/api/evaluator/score"


def test_client_maps_http_error_status() -> None:
    client = _client(lambda request: httpx.Response(500, text="boom"))
    request = build_score_request(_question(), _profile(), "tower", 1000)
    with pytest.raises(ScoringFailed) as info:
        asyncio.run(client.score(request))
    assert info.value.status == 500


def test_client_maps_invalid_json() -> None:
    client = _client(lambda request: httpx.Response(200, text="<html>"))
    request = build_score_request(_question(), _profile(), "tower", 1000)
    with pytest.raises(ScoringFailed):
        asyncio.run(client.score(request))


def test_client_maps_network_failure() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    request = build_score_request(_question(), _profile(), "tower", 1000)
    with pytest.raises(ScoringFailed):
        asyncio.run(_client(handler).score(request))
