"""Plan runner: asks the model for a plan and executes it step by step."""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable, Sequence
from datetime import datetime, timezone
from pathlib import Path
from typing import Literal

from taskpilot.agent import state as transitions
from taskpilot.agent.context import ContextGatherer
from taskpilot.agent.models import (
    AVAILABLE_ACTIONS,
    ErrorAnalysis,
    ErrorInfo,
    ExecutionRecord,
    MessageRole,
    PlanStep,
    ToolResult,
)
from taskpilot.agent.recovery import DEFAULT_MAX_RETRIES, RecoveryCoordinator
from taskpilot.agent.state import AgentState, StateListener, StatePublisher
from taskpilot.llm.client import LLMClient, ModelError
from taskpilot.shell.base import sanitize_command

LOGGER = logging.getLogger(__name__)

RecoveryChoice = Literal["apply", "decline", "skip"]
PlanOutcome = Literal["completed", "stopped", "cancelled"]
ConfirmRecovery = Callable[[ErrorInfo, ErrorAnalysis], RecoveryChoice]
AskToContinue = Callable[[str], bool]

MAX_LOGGED_TEXT_CHARS = 2000


class PlanRunner:
    """Runs one task at a time: plan, execute with recovery, publish state.

    Cancellation is cooperative and only observed between steps; a command
    already handed to the shell runs to completion or timeout.
    """

    def __init__(
        self,
        *,
        client: LLMClient,
        coordinator: RecoveryCoordinator,
        context: ContextGatherer,
        log_dir: str | Path,
        max_retries: int = DEFAULT_MAX_RETRIES,
        on_state_change: StateListener | None = None,
        confirm_recovery: ConfirmRecovery | None = None,
        ask_to_continue: AskToContinue | None = None,
    ) -> None:
        self.client = client
        self.coordinator = coordinator
        self.context = context
        self.log_dir = Path(log_dir)
        self.max_retries = max_retries
        self.confirm_recovery = confirm_recovery
        self.ask_to_continue = ask_to_continue
        self._publisher = StatePublisher(on_state_change)
        self._cancel_requested = threading.Event()
        self._run_lock = threading.Lock()

    @property
    def state(self) -> AgentState:
        return self._publisher.state

    def subscribe(self, listener: StateListener | None) -> None:
        self._publisher.subscribe(listener)

    def run(self, task: str) -> None:
        if not self._run_lock.acquire(blocking=False):
            LOGGER.warning("task_already_running", extra={"task": task})
            return
        try:
            self._cancel_requested.clear()
            self._execute_task(task)
        finally:
            self._cancel_requested.clear()
            self._publisher.apply(transitions.finish_task)
            self._run_lock.release()

    def chat(self, message: str) -> str:
        self._say("user", message)
        try:
            response = self.client.chat(message)
        except ModelError as exc:
            self._say("assistant", f"Error: {exc}")
            raise
        self._say("assistant", response)
        return response

    def cancel(self) -> None:
        LOGGER.info("task_cancel_requested", extra={"is_running": self.state.is_running})
        self._cancel_requested.set()

    def clear(self) -> None:
        self._publisher.apply(transitions.clear_history)
        self.client.clear_history()
        self.coordinator.clear_history()

    def history(self) -> list[ExecutionRecord]:
        return self.coordinator.history()

    def close(self) -> None:
        self.coordinator.dispatcher.commands.close()

    def _execute_task(self, task: str) -> None:
        LOGGER.info("task_started", extra={"task": task})
        self._publisher.apply(transitions.start_task, task)
        self._say("user", task)

        try:
            context = self.context.gather(self.state.errors)
            LOGGER.info(
                "task_context_gathered",
                extra={
                    "workspace_root": context.workspace_root,
                    "project_type": context.project_type,
                    "open_files": len(context.open_files),
                },
            )
            response = self.client.plan_task(task, context, AVAILABLE_ACTIONS)
            plan = response.plan
            self._say(
                "assistant",
                f"Planning complete (confidence: {response.confidence * 100:.0f}%)\n\n"
                f"{response.reasoning}\n\nSteps: {len(plan)}",
            )
            if not plan:
                LOGGER.warning("task_plan_empty", extra={"task": task})
                self._say("assistant", "No actions needed for this task.")
                return

            self._publisher.apply(transitions.set_total_steps, len(plan))
            outcome = self._run_plan(task, plan)
            LOGGER.info("task_finished", extra={"task": task, "outcome": outcome})
            if outcome == "completed":
                self._say("assistant", "Task execution completed.")
        except Exception as exc:
            LOGGER.exception("task_failed", extra={"task": task})
            self._say("assistant", f"Error: {exc}")

    def _run_plan(self, task: str, plan: Sequence[PlanStep]) -> PlanOutcome:
        total = len(plan)
        for index, step in enumerate(plan, start=1):
            if self._cancel_requested.is_set():
                LOGGER.info("task_cancelled", extra={"task": task, "next_step": index})
                self._say("assistant", "Task cancelled by user.")
                return "cancelled"

            self._publisher.apply(transitions.set_current_step, index)
            LOGGER.info(
                "plan_step_started",
                extra={"step": index, "total_steps": total, "action": step.action},
            )
            self._say(
                "assistant",
                f"Step {index}/{total}: {step.action}\nExpected: {step.expected_outcome}",
            )

            result = self.coordinator.execute_with_recovery(
                step,
                lambda error, failed_step: self._advise(error, failed_step),
                self.max_retries,
            )
            self._append_log(task=task, step=step, step_index=index, result=result)

            if result.success:
                self._say("assistant", f"✓ {self._present(task, step, result)}")
                continue

            error = result.error or "Unknown error"
            LOGGER.info("plan_step_failed", extra={"step": index, "action": step.action})
            self._say("assistant", f"✗ Failed: {error}")
            if not (self.ask_to_continue and self.ask_to_continue(error)):
                LOGGER.info("task_stopped_after_failure", extra={"step": index})
                self._say("assistant", f"Task stopped after step {index} failed.")
                return "stopped"
        return "completed"

    def _advise(self, error: ErrorInfo, failed_step: PlanStep) -> list[PlanStep] | None:
        self._publisher.apply(transitions.record_error, error)
        self._say("assistant", f"Analyzing error: {error.kind} - {error.message}")
        try:
            analysis = self.client.analyze_error(error)
        except Exception as exc:
            LOGGER.warning(
                "error_analysis_failed",
                extra={"action": failed_step.action, "error": str(exc)},
            )
            return None
        if not analysis.suggestions:
            return None

        self._say("assistant", f"Recovery suggestion: {analysis.analysis}")
        choice = self.confirm_recovery(error, analysis) if self.confirm_recovery else "decline"
        LOGGER.info(
            "recovery_choice",
            extra={"error_kind": error.kind, "choice": choice},
        )
        if choice == "apply":
            return list(analysis.suggestions)
        if choice == "skip":
            return []
        return None

    def _present(self, task: str, step: PlanStep, result: ToolResult) -> str:
        raw_output = result.output or "Completed successfully"
        try:
            formatted = self.client.format_tool_result(
                step.action,
                result.data if result.data is not None else result.output,
                task,
            )
        except Exception:
            LOGGER.debug("result_formatting_failed", exc_info=True)
            return raw_output
        return formatted.strip() or raw_output

    def _say(self, role: MessageRole, content: str) -> None:
        self._publisher.apply(transitions.append_message, role, content)

    def _append_log(
        self,
        *,
        task: str,
        step: PlanStep,
        step_index: int,
        result: ToolResult,
    ) -> None:
        day_file = self.log_dir / f"session-{datetime.now(timezone.utc).date().isoformat()}.log"
        entry = {
            "log_version": 1,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "task": task,
            "model": getattr(self.client, "model", None),
            "step_index": step_index,
            "action": step.action,
            "parameters": _loggable_parameters(step),
            "expected_outcome": step.expected_outcome,
            "success": result.success,
            "output": (result.output or "")[:MAX_LOGGED_TEXT_CHARS],
            "error": result.error,
        }
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            with day_file.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry, default=str) + "\n")
        except OSError as exc:
            LOGGER.warning(
                "session_log_write_failed",
                extra={"path": str(day_file), "error": str(exc)},
            )


def _loggable_parameters(step: PlanStep) -> dict[str, object]:
    loggable: dict[str, object] = {}
    for key, value in step.parameters.items():
        if isinstance(value, str):
            text = sanitize_command(value) if key == "command" else value
            loggable[key] = text[:MAX_LOGGED_TEXT_CHARS]
        else:
            loggable[key] = value
    return loggable
