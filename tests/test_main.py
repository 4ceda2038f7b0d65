from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from config import JsonConfigStore
from main import ConsoleApp, build_parser
from models import Profile, Question, SessionState
from run_store import JsonlRunStore

QUESTION = Question(id="q1", expected_answer="Tower, Alpha One, ready for departure")
PROFILE = Profile(id="p1", pass_mark_overall=70)


class SlowController:
    """Controller whose start stays in CONNECTING until stopped."""

    def __init__(self) -> None:
        self.state = SessionState.IDLE
        self.gate = asyncio.Event()
        self.starts = 0
        self.stops = 0
        self.teardowns = 0

    async def start(self, question: Question, profile: Profile) -> None:
        self.starts += 1
        self.state = SessionState.CONNECTING
        await self.gate.wait()

    async def stop(self) -> None:
        self.stops += 1
        self.state = SessionState.IDLE
        self.gate.set()

    async def teardown(self) -> None:
        self.teardowns += 1
        self.state = SessionState.IDLE
        self.gate.set()


@pytest.fixture(autouse=True)
def _clear_env(monkeypatch) -> None:  # noqa: ANN001
    monkeypatch.delenv("STT_CONSOLE_BROKER_URL", raising=False)
    monkeypatch.delenv("STT_CONSOLE_SCORING_URL", raising=False)


def _app(tmp_path: Path) -> ConsoleApp:
    return ConsoleApp(
        JsonConfigStore(path=tmp_path / "config.json"),
        QUESTION,
        PROFILE,
        run_store=JsonlRunStore(path=tmp_path / "runs.jsonl"),
    )


async def _drain(rounds: int = 5) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


def test_second_toggle_stops_while_connecting(tmp_path: Path) -> None:
    async def _run() -> None:
        app = _app(tmp_path)
        controller = SlowController()
        app.controller = controller

        await app.toggle()
        await _drain()
        assert controller.state == SessionState.CONNECTING

        await asyncio.wait_for(app.toggle(), timeout=1.0)
        assert controller.stops == 1
        assert controller.starts == 1
        assert controller.state == SessionState.IDLE
        await app.shutdown()

    asyncio.run(_run())


def test_shutdown_waits_for_pending_start(tmp_path: Path) -> None:
    async def _run() -> None:
        app = _app(tmp_path)
        controller = SlowController()
        app.controller = controller

        await app.toggle()
        await _drain()
        await asyncio.wait_for(app.shutdown(), timeout=1.0)

        assert controller.teardowns == 1
        assert app._start_task is None

    asyncio.run(_run())


def test_scorer_uses_scoring_url(tmp_path: Path) -> None:
    store = JsonConfigStore(path=tmp_path / "config.json")
    store.set("scoring_url", "http://evaluator.test:9000/")
    app = ConsoleApp(store, QUESTION, PROFILE, run_store=JsonlRunStore(path=tmp_path / "runs.jsonl"))

    assert app.controller._scorer._url == "http://evaluator.test:9000/api/evaluator/score"


def test_parser_commands() -> None:
    args = build_parser().parse_args(["console", "--question", "q.json", "--profile", "p.json"])
    assert args.command == "console"
    assert args.question == "q.json"
    assert build_parser().parse_args(["serve", "--port", "4000"]).port == 4000
