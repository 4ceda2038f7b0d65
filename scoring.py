"""Client for the external scoring endpoint."""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from errors import ScoringFailed
from models import Profile, Question, ScoreResult, StructureRequirements
from text_utils import estimate_fluency_metrics, normalize_text

logger = logging.getLogger(__name__)

SCORE_PATH = "/api/evaluator/score"
SCORE_FIELDS = ("accuracyScore", "fluencyScore", "structureScore", "overallScore")


def build_score_request(
    question: Question,
    profile: Profile,
    transcript: str,
    duration_ms: int,
) -> dict[str, Any]:
    structure = question.structure or StructureRequirements()
    return {
        "expectedAnswer": {
            "raw": question.expected_answer,
            "normalized": normalize_text(
                question.expected_answer,
                convert_numbers_to_digits=profile.digit_word_equivalence,
            ),
        },
        "transcript": {
            "raw": transcript,
            "normalized": normalize_text(
                transcript,
                convert_numbers_to_digits=profile.digit_word_equivalence,
                remove_fillers=True,
            ),
        },
        "fluencyMetrics": estimate_fluency_metrics(transcript, duration_ms).to_payload(),
        "structureRequirements": structure.to_payload(),
        "profileParameters": {
            "weights": dict(profile.weights),
            "fluency": {
                "fillerPenaltyPerWord": profile.filler_penalty_per_word,
                "fillerPenaltyCap": profile.filler_penalty_cap,
                "pausePenalty": profile.pause_penalty,
                "longPausePenalty": profile.long_pause_penalty,
                "pausePenaltyCap": profile.pause_penalty_cap,
            },
        },
        "scoringPrompt": profile.scoring_prompt,
        "explanationPrompt": profile.explanation_prompt,
        "model": profile.model,
        "temperature": profile.temperature,
    }


def parse_score_response(data: Any, pass_mark: int) -> ScoreResult:
    if not isinstance(data, dict):
        raise ScoringFailed("Scoring response is not a JSON object")
    try:
        scores = {name: int(round(float(data[name]))) for name in SCORE_FIELDS}
    except (KeyError, TypeError, ValueError) as exc:
        raise ScoringFailed(f"Scoring response missing scores: {exc}") from exc
    for name, value in scores.items():
        if not 0 <= value <= 100:
            raise ScoringFailed(f"{name} out of range: {value}")

    reasons = data.get("reasons") or {}
    if not isinstance(reasons, dict):
        raise ScoringFailed("Scoring reasons must be an object")
    for key in ("accuracy", "fluency", "structure"):
        if not isinstance(reasons.get(key, []), list):
            raise ScoringFailed(f"Scoring reasons for {key} must be a list")
    return ScoreResult(
        accuracy_score=scores["accuracyScore"],
        fluency_score=scores["fluencyScore"],
        structure_score=scores["structureScore"],
        overall_score=scores["overallScore"],
        reasons={
            key: [str(r) for r in reasons.get(key, [])]
            for key in ("accuracy", "fluency", "structure")
        },
        passed=scores["overallScore"] >= pass_mark,
    )


class ScoringClient:
    def __init__(
        self,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout_s: float = 60.0,
    ) -> None:
        self._url = base_url.rstrip("/") + SCORE_PATH
        self._client = client
        self._timeout_s = timeout_s

    async def score(self, request: dict[str, Any]) -> dict[str, Any]:
        logger.info("Scoring request: transcript %d chars", len(request["transcript"]["raw"]))
        try:
            if self._client is not None:
                response = await self._client.post(self._url, json=request)
            else:
                async with httpx.AsyncClient(timeout=self._timeout_s) as client:
                    response = await client.post(self._url, json=request)
        except httpx.HTTPError as exc:
            raise ScoringFailed(f"Scoring endpoint unreachable: {exc}") from exc

        if not response.is_success:
            logger.error("Scoring failed: %s - %s", response.status_code, response.text)
            raise ScoringFailed(
                f"Scoring endpoint returned {response.status_code}",
                status=response.status_code,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise ScoringFailed("Scoring response is not valid JSON") from exc
