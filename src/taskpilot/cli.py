"""Command-line interface for taskpilot."""

from __future__ import annotations

import argparse
import logging
import threading
from collections.abc import Sequence
from pathlib import Path
from typing import cast

from .agent.context import ContextGatherer
from .agent.models import ErrorAnalysis, ErrorInfo
from .agent.recovery import RecoveryCoordinator
from .agent.runner import PlanRunner, RecoveryChoice
from .agent.safety import ActionGate
from .agent.state import AgentState
from .config import AppConfig
from .llm.client import LLMClient, ModelError
from .shell import create_shell_adapter
from .tools import CommandSerializer, ToolDispatcher

LOGGER = logging.getLogger(__name__)

LOG_FILE_NAME = "taskpilot.log"
_TASK_POLL_SECONDS = 0.1


class CLIArgs(argparse.Namespace):
    task: str | None
    working_directory: str | None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="taskpilot", description="Task-planning workspace agent")
    parser.add_argument(
        "--cwd",
        dest="working_directory",
        help=(
            "Override the workspace root used for file tools and commands. "
            "Takes precedence over config/env workspace values."
        ),
    )
    parser.add_argument(
        "task",
        nargs="?",
        help="Run a single task and exit instead of starting the interactive prompt",
    )
    return parser


def configure_logging(log_dir: str | Path, level: str) -> Path:
    """Send package logs to ``<log_dir>/taskpilot.log`` and return that path."""
    directory = Path(log_dir)
    directory.mkdir(parents=True, exist_ok=True)
    log_path = directory / LOG_FILE_NAME

    handler = logging.FileHandler(log_path, encoding="utf-8")
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    package_logger = logging.getLogger("taskpilot")
    package_logger.setLevel(level)
    package_logger.addHandler(handler)
    return log_path


def build_runner(config: AppConfig, workspace_root: Path) -> PlanRunner:
    adapter = create_shell_adapter(config.shell)
    commands = CommandSerializer(
        adapter,
        default_working_dir=str(workspace_root),
        default_timeout_seconds=config.command_timeout,
    )
    dispatcher = ToolDispatcher(
        workspace_root=workspace_root,
        commands=commands,
        ask_user=_ask_user,
    )
    coordinator = RecoveryCoordinator(
        dispatcher,
        gate=ActionGate(auto_approve=config.auto_approve, confirm=_confirm_action),
    )
    client = LLMClient(
        api_key=config.api_key,
        model=config.model,
        api_url=config.api_url,
        timeout=config.request_timeout,
    )
    LOGGER.debug("shell_adapter_selected", extra={"shell": adapter.name})
    return PlanRunner(
        client=client,
        coordinator=coordinator,
        context=ContextGatherer(dispatcher),
        log_dir=config.log_dir,
        max_retries=config.max_retries,
        confirm_recovery=_confirm_recovery,
        ask_to_continue=_ask_to_continue,
    )


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = cast(CLIArgs, parser.parse_args(argv))
    config = AppConfig.from_env()

    configured_workspace = (
        args.working_directory if args.working_directory is not None else config.workspace_root
    )
    workspace_root = Path(configured_workspace or Path.cwd()).expanduser().resolve()
    if not workspace_root.is_dir():
        print(f"Invalid workspace directory: {configured_workspace}")
        return 1

    configure_logging(config.log_dir, config.log_level)
    if not config.api_key:
        print("No API key configured. Set TASKPILOT_API_KEY or OPENROUTER_API_KEY.")

    runner = build_runner(config, workspace_root)
    runner.subscribe(MessagePrinter())
    LOGGER.info(
        "session_started",
        extra={"workspace_root": str(workspace_root), "model": config.model},
    )
    try:
        if args.task:
            run_task(runner, args.task)
            return 0
        return _interactive(runner)
    finally:
        runner.close()


class MessagePrinter:
    """State listener that prints each assistant message once."""

    def __init__(self) -> None:
        self._printed = 0

    def __call__(self, state: AgentState) -> None:
        if len(state.messages) < self._printed:
            self._printed = 0
        for message in state.messages[self._printed :]:
            if message.role != "user":
                print(message.content)
        self._printed = len(state.messages)


def run_task(runner: PlanRunner, task: str) -> None:
    """Run ``task`` on a worker thread so Ctrl-C can request cancellation."""
    worker = threading.Thread(target=runner.run, args=(task,), name="taskpilot-task", daemon=True)
    worker.start()
    while worker.is_alive():
        try:
            worker.join(_TASK_POLL_SECONDS)
        except KeyboardInterrupt:
            runner.cancel()
            print("\nCancelling after the current step finishes...")


def _interactive(runner: PlanRunner) -> int:
    print("Enter a task, /chat <message>, /clear or /quit.")
    while True:
        try:
            line = input("taskpilot> ").strip()
        except (EOFError, KeyboardInterrupt):
            print()
            return 0

        if not line:
            continue
        if line in {"/quit", "/exit"}:
            return 0
        if line == "/clear":
            runner.clear()
            print("History cleared.")
            continue
        if line == "/chat" or line.startswith("/chat "):
            message = line[len("/chat") :].strip()
            if not message:
                print("Usage: /chat <message>")
                continue
            try:
                runner.chat(message)
            except ModelError as exc:
                LOGGER.warning("chat_failed", extra={"error": str(exc)})
            continue

        run_task(runner, line)


def _confirm_action(message: str) -> bool:
    try:
        choice = input(f"{message} [y/N]: ").strip().lower()
    except EOFError:
        return False
    return choice in {"y", "yes"}


def _ask_user(question: str, default: str | None) -> str | None:
    print("\n=== INPUT REQUIRED ===")
    print(f"Question: {question}")
    suffix = f" [{default}]" if default else ""
    try:
        response = input(f"Your response{suffix}: ").strip()
    except EOFError:
        return default
    return response or default


def _confirm_recovery(error: ErrorInfo, analysis: ErrorAnalysis) -> RecoveryChoice:
    print(f"\n=== RECOVERY FOR {error.kind.upper()} ===")
    for index, step in enumerate(analysis.suggestions, start=1):
        print(f"  {index}. {step.describe()}")
    choice = input("Apply the fix, decline, or skip this step? [a/D/s]: ").strip().lower()
    if choice in {"a", "apply"}:
        return "apply"
    if choice in {"s", "skip"}:
        return "skip"
    return "decline"


def _ask_to_continue(error: str) -> bool:
    choice = input("Continue with the remaining steps? [y/N]: ").strip().lower()
    return choice in {"y", "yes"}


if __name__ == "__main__":
    raise SystemExit(main())
