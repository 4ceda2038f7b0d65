from __future__ import annotations

import json
from pathlib import Path

import pytest

from models import RunRecord, RunStatus, ScoreResult, SessionTelemetry
from run_store import JsonlRunStore


def _record(run_id: str, status: RunStatus, latency: int, cost: float = 0.002) -> RunRecord:
    return RunRecord(
        id=run_id,
        question_id="q1",
        profile_id="p1",
        timestamp="2026-01-01T00:00:00+00:00",
        transcript="tower alpha",
        audio_duration_ms=3000,
        telemetry=SessionTelemetry(total_latency_ms=latency, estimated_cost=cost),
        status=status,
        score=ScoreResult(90, 80, 70, 82, passed=True) if status == RunStatus.SUCCESS else None,
    )


def test_append_writes_one_json_line_per_run(tmp_path: Path) -> None:
    path = tmp_path / "runs.jsonl"
    store = JsonlRunStore(path=path)
    store.append(_record("r1", RunStatus.SUCCESS, 1000))
    store.append(_record("r2", RunStatus.EMPTY_TRANSCRIPT, 500))

    lines = path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    first = json.loads(lines[0])
    assert first["status"] == "success"
    assert first["score"]["overall_score"] == 82
    assert json.loads(lines[1])["score"] is None


def test_load_skips_corrupt_lines(tmp_path: Path) -> None:
    path = tmp_path / "runs.jsonl"
    store = JsonlRunStore(path=path)
    store.append(_record("r1", RunStatus.SUCCESS, 1000))
    with path.open("a", encoding="utf-8") as fh:
        fh.write("{truncated\n\n")
    store.append(_record("r2", RunStatus.SUCCESS, 1200))

    assert [r["id"] for r in store.load()] == ["r1", "r2"]


def test_summary(tmp_path: Path) -> None:
    store = JsonlRunStore(path=tmp_path / "runs.jsonl")
    assert store.summary()["run_count"] == 0

    for i, latency in enumerate([100, 200, 300, 400]):
        store.append(_record(f"ok{i}", RunStatus.SUCCESS, latency))
    store.append(_record("e1", RunStatus.SCORING_FAILED, 1000))

    summary = store.summary()
    assert summary["run_count"] == 5
    assert summary["average_latency_ms"] == pytest.approx(400.0)
    assert summary["p95_latency_ms"] == 1000
    assert summary["error_count"] == 1
    assert summary["errors_by_status"] == {"scoring_failed": 1}
    assert summary["total_cost"] == pytest.approx(0.01)
