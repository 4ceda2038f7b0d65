"""Application entrypoint."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional

import uvicorn

from broker import HttpTokenSource, TokenBroker, create_app
from config import JsonConfigStore
from errors import CredentialError
from models import Profile, Question, RunRecord, SessionState
from recorder import SoundDeviceRecorder
from run_store import JsonlRunStore
from scoring import ScoringClient
from session_controller import SessionController
from transport import RealtimeTransport

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _load_json(path: str) -> dict:
    return json.loads(Path(path).read_text(encoding="utf-8"))


class ConsoleApp:
    def __init__(
        self,
        config_store: JsonConfigStore,
        question: Question,
        profile: Profile,
        run_store: Optional[JsonlRunStore] = None,
    ) -> None:
        self.config_store = config_store
        self.question = question
        self.profile = profile
        self._start_task: Optional[asyncio.Task] = None
        broker_url = str(config_store.get("broker_url"))
        self.controller = SessionController(
            token_source=HttpTokenSource(broker_url),
            transport=RealtimeTransport(
                url=str(config_store.get("realtime_url")),
                connect_timeout_s=config_store.get_float("connect_timeout_s"),
                audio_input_factory=SoundDeviceRecorder,
            ),
            scorer=ScoringClient(str(config_store.get("scoring_url"))),
            run_store=run_store or JsonlRunStore(),
            vad=config_store.get_vad(),
            settle_interval_s=config_store.get_float("settle_interval_s"),
            rewarm_delay_s=config_store.get_float("rewarm_delay_s"),
            on_state_change=self._on_state_change,
            on_partial=self._on_partial,
            on_final=self._on_final,
            on_error=self._on_error,
            on_run_complete=self._on_run_complete,
        )

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------

    def _on_state_change(self, from_state: SessionState, to_state: SessionState) -> None:
        print(f"[{to_state.value}]")

    def _on_partial(self, text: str) -> None:
        print(f"  ... {text}")

    def _on_final(self, text: str) -> None:
        print(f"  >>> {text}")

    def _on_error(self, code: str, message: str) -> None:
        print(f"  !! {code}: {message}")

    def _on_run_complete(self, record: RunRecord) -> None:
        print(f"Transcript: {record.transcript or '(empty)'}")
        if record.score is not None:
            score = record.score
            verdict = "PASS" if score.passed else "FAIL"
            print(
                f"Score: overall {score.overall_score} ({verdict}) | accuracy "
                f"{score.accuracy_score} fluency {score.fluency_score} structure {score.structure_score}"
            )
        telemetry = record.telemetry
        print(
            f"Latency: connect {telemetry.connect_time_ms}ms, first text "
            f"{telemetry.time_to_first_text_ms}ms, total {telemetry.total_latency_ms}ms, "
            f"cost ${telemetry.estimated_cost:.4f}"
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def run(self) -> int:
        loop = asyncio.get_running_loop()
        self.controller.set_profile(self.profile)
        print("Enter to start/stop recording, q to quit.")
        try:
            while True:
                line = await loop.run_in_executor(None, sys.stdin.readline)
                if not line or line.strip().lower() == "q":
                    break
                await self.toggle()
        finally:
            await self.shutdown()
        return 0

    async def toggle(self) -> None:
        """Start a session when idle, otherwise stop the current one.

        The start runs as a task so a second Enter while connecting can
        still reach ``stop``.
        """
        starting = self._start_task is not None and not self._start_task.done()
        if not starting and self.controller.state == SessionState.IDLE:
            self._start_task = asyncio.create_task(
                self.controller.start(self.question, self.profile)
            )
            return
        await self.controller.stop()

    async def shutdown(self) -> None:
        await self.controller.teardown()
        task, self._start_task = self._start_task, None
        if task is not None:
            await task


def serve(args: argparse.Namespace) -> int:
    broker = TokenBroker(api_key=JsonConfigStore().get_api_key())
    try:
        broker.validate()
    except CredentialError as exc:
        logger.error("%s", exc.message)
        return 1
    uvicorn.run(create_app(broker), host=args.host, port=args.port, log_level=args.log_level.lower())
    return 0


def console(args: argparse.Namespace) -> int:
    question = Question.from_dict(_load_json(args.question))
    profile = Profile.from_dict(_load_json(args.profile))
    app = ConsoleApp(JsonConfigStore(), question, profile)
    return asyncio.run(app.run())


def runs(args: argparse.Namespace) -> int:
    print(json.dumps(JsonlRunStore().summary(), indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Speech-to-text tuning console")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    sub = parser.add_subparsers(dest="command", required=True)

    serve_parser = sub.add_parser("serve", help="Run the token broker")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=3001)
    serve_parser.set_defaults(func=serve)

    console_parser = sub.add_parser("console", help="Record and score answers")
    console_parser.add_argument("--question", required=True, help="Question JSON file")
    console_parser.add_argument("--profile", required=True, help="Scoring profile JSON file")
    console_parser.set_defaults(func=console)

    runs_parser = sub.add_parser("runs", help="Summarize stored runs")
    runs_parser.set_defaults(func=runs)
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=args.log_level, format=LOG_FORMAT)
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
