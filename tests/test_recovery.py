from __future__ import annotations

from collections.abc import Mapping

from taskpilot.agent.models import ErrorInfo, PlanStep, ToolResult
from taskpilot.agent.recovery import RecoveryCoordinator
from taskpilot.agent.safety import ActionGate


class FakeDispatcher:
    """Replays scripted results per action and records every dispatch."""

    def __init__(self, scripted: dict[str, list[ToolResult]] | None = None) -> None:
        self.scripted = scripted or {}
        self.calls: list[tuple[str, dict[str, object]]] = []

    def dispatch(self, action: str, parameters: Mapping[str, object] | None = None) -> ToolResult:
        self.calls.append((action, dict(parameters or {})))
        results = self.scripted.get(action)
        if not results:
            return ToolResult.ok(output=f"{action} ok")
        if len(results) == 1:
            return results[0]
        return results.pop(0)


def _failing_command() -> PlanStep:
    return PlanStep(action="execute_command", parameters={"command": "npm test"})


def _install_step() -> PlanStep:
    return PlanStep(action="create_directory", parameters={"path": "node_modules"})


def test_success_on_first_attempt_skips_advice() -> None:
    dispatcher = FakeDispatcher()
    advice_calls: list[ErrorInfo] = []
    coordinator = RecoveryCoordinator(dispatcher)  # type: ignore[arg-type]

    result = coordinator.execute_with_recovery(
        PlanStep(action="read_file", parameters={"path": "a"}),
        lambda error, _step: advice_calls.append(error) or None,
    )

    assert result.success is True
    assert advice_calls == []
    assert len(coordinator.history()) == 1


def test_always_failing_step_is_dispatched_exactly_max_retries_times() -> None:
    failures = [ToolResult.fail(f"Error: Cannot find module 'x' (attempt {i})") for i in range(1, 4)]
    dispatcher = FakeDispatcher({"execute_command": list(failures)})
    coordinator = RecoveryCoordinator(dispatcher)  # type: ignore[arg-type]

    result = coordinator.execute_with_recovery(
        _failing_command(),
        lambda _error, _step: [_install_step()],
        max_retries=3,
    )

    command_calls = [call for call in dispatcher.calls if call[0] == "execute_command"]
    corrective_calls = [call for call in dispatcher.calls if call[0] == "create_directory"]
    assert len(command_calls) == 3
    assert len(corrective_calls) == 2
    assert result is failures[2]


def test_applied_fix_then_success() -> None:
    dispatcher = FakeDispatcher(
        {
            "execute_command": [
                ToolResult.fail("Error: Cannot find module 'express'"),
                ToolResult.ok(output="tests passed"),
            ]
        }
    )
    received: list[tuple[ErrorInfo, PlanStep]] = []

    def advise(error: ErrorInfo, step: PlanStep) -> list[PlanStep]:
        received.append((error, step))
        return [_install_step()]

    coordinator = RecoveryCoordinator(dispatcher)  # type: ignore[arg-type]

    result = coordinator.execute_with_recovery(_failing_command(), advise)

    assert result.success is True
    assert [call[0] for call in dispatcher.calls] == [
        "execute_command",
        "create_directory",
        "execute_command",
    ]
    [(error, step)] = received
    assert error.kind == "dependency_missing"
    assert error.source == "npm test"
    assert step == _failing_command()


def test_declined_advice_returns_original_failure() -> None:
    failure = ToolResult.fail("bash: foo: command not found")
    dispatcher = FakeDispatcher({"execute_command": [failure]})
    coordinator = RecoveryCoordinator(dispatcher)  # type: ignore[arg-type]

    result = coordinator.execute_with_recovery(_failing_command(), lambda _e, _s: None)

    assert result is failure
    assert len(dispatcher.calls) == 1


def test_skip_returns_original_failure_without_retry() -> None:
    failure = ToolResult.fail("Permission denied")
    dispatcher = FakeDispatcher({"execute_command": [failure]})
    coordinator = RecoveryCoordinator(dispatcher)  # type: ignore[arg-type]

    result = coordinator.execute_with_recovery(_failing_command(), lambda _e, _s: [])

    assert result is failure
    assert len(dispatcher.calls) == 1


def test_corrective_failure_aborts_recovery() -> None:
    dispatcher = FakeDispatcher(
        {
            "execute_command": [ToolResult.fail("Error: Cannot find module 'x'")],
            "create_directory": [ToolResult.fail("Directory already exists: node_modules")],
        }
    )
    coordinator = RecoveryCoordinator(dispatcher)  # type: ignore[arg-type]

    result = coordinator.execute_with_recovery(
        _failing_command(),
        lambda _e, _s: [_install_step(), PlanStep(action="read_file", parameters={"path": "x"})],
    )

    assert result.error == "Directory already exists: node_modules"
    assert [call[0] for call in dispatcher.calls] == ["execute_command", "create_directory"]


def test_unclassified_failure_is_not_retried() -> None:
    failure = ToolResult.fail("exit status 3")
    dispatcher = FakeDispatcher({"execute_command": [failure]})
    advice_calls: list[ErrorInfo] = []
    coordinator = RecoveryCoordinator(dispatcher)  # type: ignore[arg-type]

    result = coordinator.execute_with_recovery(
        _failing_command(),
        lambda error, _step: advice_calls.append(error) or [_install_step()],
    )

    assert result is failure
    assert advice_calls == []
    assert len(dispatcher.calls) == 1


def test_declined_confirmation_has_no_side_effects_and_skips_recovery() -> None:
    dispatcher = FakeDispatcher()
    advice_calls: list[ErrorInfo] = []
    coordinator = RecoveryCoordinator(
        dispatcher,  # type: ignore[arg-type]
        gate=ActionGate(confirm=lambda _message: False),
    )

    result = coordinator.execute_with_recovery(
        PlanStep(action="delete_file", parameters={"path": "important.txt"}),
        lambda error, _step: advice_calls.append(error) or [_install_step()],
    )

    assert result.success is False
    assert result.error == "Operation cancelled by user"
    assert dispatcher.calls == []
    assert advice_calls == []
    [record] = coordinator.history()
    assert record.result is result


def test_zero_retries_never_dispatches() -> None:
    dispatcher = FakeDispatcher()
    coordinator = RecoveryCoordinator(dispatcher)  # type: ignore[arg-type]

    result = coordinator.execute_with_recovery(_failing_command(), lambda _e, _s: None, max_retries=0)

    assert result.success is False
    assert result.error == "Max retries exceeded"
    assert dispatcher.calls == []


def test_execute_runs_once_and_history_can_be_cleared() -> None:
    dispatcher = FakeDispatcher({"execute_command": [ToolResult.fail("Error: boom")]})
    coordinator = RecoveryCoordinator(dispatcher)  # type: ignore[arg-type]

    result = coordinator.execute(_failing_command())

    assert result.success is False
    assert len(dispatcher.calls) == 1
    assert len(coordinator.history()) == 1

    coordinator.clear_history()
    assert coordinator.history() == []
