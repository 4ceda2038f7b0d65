"""Simple JSON-based config store with environment overrides."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from models import VadConfig

DEFAULTS: dict[str, Any] = {
    "api_key": "",
    "broker_url": "http://127.0.0.1:3001",
    "scoring_url": "http://127.0.0.1:3002",
    "realtime_url": "wss://api.openai.com/v1/realtime?intent=transcription",
    "vad": {"threshold": 0.3, "prefix_padding_ms": 500, "silence_duration_ms": 2000},
    "connect_timeout_s": 15.0,
    "settle_interval_s": 2.0,
    "rewarm_delay_s": 0.1,
}

ENV_OVERRIDES = {
    "api_key": "OPENAI_API_KEY",
    "broker_url": "STT_CONSOLE_BROKER_URL",
    "scoring_url": "STT_CONSOLE_SCORING_URL",
}


class JsonConfigStore:
    def __init__(self, path: Path | None = None) -> None:
        self._path = path or Path.home() / ".config" / "stt_console" / "config.json"
        self._path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self._path

    def get(self, name: str) -> Any:
        env_name = ENV_OVERRIDES.get(name)
        if env_name and os.getenv(env_name):
            return os.environ[env_name]
        data = self._read_all()
        return data.get(name, DEFAULTS.get(name))

    def set(self, name: str, value: Any) -> None:
        data = self._read_all()
        data[name] = value
        self._write_all(data)

    def get_api_key(self) -> str:
        return str(self.get("api_key") or "")

    def set_api_key(self, key: str) -> None:
        self.set("api_key", key)

    def get_vad(self) -> VadConfig:
        raw = self.get("vad") or {}
        defaults = DEFAULTS["vad"]
        return VadConfig(
            threshold=float(raw.get("threshold", defaults["threshold"])),
            prefix_padding_ms=int(raw.get("prefix_padding_ms", defaults["prefix_padding_ms"])),
            silence_duration_ms=int(
                raw.get("silence_duration_ms", defaults["silence_duration_ms"])
            ),
        )

    def get_float(self, name: str) -> float:
        try:
            return float(self.get(name))
        except (TypeError, ValueError):
            return float(DEFAULTS[name])

    def _read_all(self) -> dict:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            return {}
        return data if isinstance(data, dict) else {}

    def _write_all(self, data: dict) -> None:
        self._path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
