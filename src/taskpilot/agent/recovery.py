"""Gated step execution with classification-driven recovery."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence

from taskpilot.agent.classifier import ErrorClassifier
from taskpilot.agent.models import ErrorInfo, ExecutionRecord, PlanStep, ToolResult
from taskpilot.agent.safety import OPERATION_CANCELLED, ActionGate
from taskpilot.tools.dispatcher import ToolDispatcher

LOGGER = logging.getLogger(__name__)

# None declines recovery, an empty sequence skips the step, otherwise the
# corrective steps are applied before the original step is retried.
AdviceCallback = Callable[[ErrorInfo, PlanStep], Sequence[PlanStep] | None]

DEFAULT_MAX_RETRIES = 3


class RecoveryCoordinator:
    """Runs steps through the gate and dispatcher, retrying after corrective plans."""

    def __init__(
        self,
        dispatcher: ToolDispatcher,
        *,
        gate: ActionGate | None = None,
        classifier: ErrorClassifier | None = None,
    ) -> None:
        self.dispatcher = dispatcher
        self.gate = gate or ActionGate()
        self.classifier = classifier or ErrorClassifier()
        self._history: list[ExecutionRecord] = []

    def execute(self, step: PlanStep) -> ToolResult:
        """Gate and dispatch one step without any recovery."""
        result, _declined = self._attempt(step)
        return result

    def execute_with_recovery(
        self,
        step: PlanStep,
        advice: AdviceCallback,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> ToolResult:
        attempts = 0
        while attempts < max_retries:
            result, declined = self._attempt(step)
            if result.success or declined:
                return result

            attempts += 1
            if attempts >= max_retries:
                LOGGER.info(
                    "recovery_retries_exhausted",
                    extra={"action": step.action, "attempts": attempts},
                )
                return result

            error_info = self.classifier.classify(result.error or "", step.describe())
            if error_info is None:
                LOGGER.info("recovery_unclassified_failure", extra={"action": step.action})
                return result

            corrective_steps = advice(error_info, step)
            if corrective_steps is None:
                LOGGER.info("recovery_declined", extra={"error_kind": error_info.kind})
                return result
            if not corrective_steps:
                LOGGER.info("recovery_step_skipped", extra={"action": step.action})
                return result

            LOGGER.info(
                "recovery_applying_fix",
                extra={
                    "error_kind": error_info.kind,
                    "corrective_steps": len(corrective_steps),
                    "attempt": attempts,
                },
            )
            for corrective_step in corrective_steps:
                corrective_result = self.execute(corrective_step)
                if not corrective_result.success:
                    return corrective_result

        return ToolResult.fail("Max retries exceeded")

    def history(self) -> list[ExecutionRecord]:
        return list(self._history)

    def clear_history(self) -> None:
        self._history.clear()

    def _attempt(self, step: PlanStep) -> tuple[ToolResult, bool]:
        if not self.gate.approve(step):
            result = ToolResult.fail(OPERATION_CANCELLED)
            self._history.append(ExecutionRecord(step=step, result=result))
            return result, True

        result = self.dispatcher.dispatch(step.action, step.parameters)
        self._history.append(ExecutionRecord(step=step, result=result))
        return result, False
