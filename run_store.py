"""Append-only JSON-lines store for run records."""

from __future__ import annotations

import json
import logging
import math
from pathlib import Path
from typing import Any

from models import RunRecord, RunStatus

logger = logging.getLogger(__name__)


class JsonlRunStore:
    def __init__(self, path: Path | None = None) -> None:
        self._path = path or Path.home() / ".config" / "stt_console" / "runs.jsonl"
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def append(self, record: RunRecord) -> None:
        line = json.dumps(record.to_dict(), ensure_ascii=False)
        with self._path.open("a", encoding="utf-8") as fh:
            fh.write(line + "\n")

    def load(self) -> list[dict[str, Any]]:
        if not self._path.exists():
            return []
        runs = []
        for number, line in enumerate(self._path.read_text(encoding="utf-8").splitlines(), 1):
            if not line.strip():
                continue
            try:
                runs.append(json.loads(line))
            except json.JSONDecodeError:
                logger.warning("Skipping corrupt run record at line %d", number)
        return runs

    def summary(self) -> dict[str, Any]:
        runs = self.load()
        latencies = sorted(
            int(r["telemetry"].get("total_latency_ms") or 0) for r in runs if r.get("telemetry")
        )
        errors: dict[str, int] = {}
        for run in runs:
            status = run.get("status")
            if status != RunStatus.SUCCESS.value:
                errors[status] = errors.get(status, 0) + 1
        p95 = 0
        if latencies:
            p95 = latencies[min(math.floor(len(latencies) * 0.95), len(latencies) - 1)]
        return {
            "run_count": len(runs),
            "average_latency_ms": sum(latencies) / len(latencies) if latencies else 0.0,
            "p95_latency_ms": p95,
            "error_count": sum(errors.values()),
            "errors_by_status": errors,
            "total_cost": round(
                sum(float((r.get("telemetry") or {}).get("estimated_cost") or 0) for r in runs), 6
            ),
        }
