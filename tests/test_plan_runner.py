from __future__ import annotations

import json
from collections.abc import Callable, Mapping
from pathlib import Path

import pytest

from taskpilot.agent.context import ContextGatherer
from taskpilot.agent.models import (
    ErrorAnalysis,
    ErrorInfo,
    PlanResponse,
    PlanStep,
    ProjectContext,
    ToolResult,
)
from taskpilot.agent.recovery import RecoveryCoordinator
from taskpilot.agent.runner import PlanRunner
from taskpilot.agent.state import AgentState
from taskpilot.llm.client import ModelError
from taskpilot.shell.base import CommandResult
from taskpilot.tools import CommandSerializer, ToolDispatcher


class FakeShell:
    @property
    def name(self) -> str:
        return "fake"

    def execute(self, command, *, cwd=None, timeout=None) -> CommandResult:
        return CommandResult(command=command, shell=self.name, returncode=0, stdout="ok", stderr="")


class FakeClient:
    model = "fake/model"

    def __init__(
        self,
        plan: list[PlanStep],
        *,
        analysis: ErrorAnalysis | None = None,
        plan_error: Exception | None = None,
        format_error: Exception | None = None,
        chat_error: Exception | None = None,
    ) -> None:
        self.plan = plan
        self.analysis = analysis
        self.plan_error = plan_error
        self.format_error = format_error
        self.chat_error = chat_error
        self.tasks: list[str] = []
        self.analyzed: list[ErrorInfo] = []
        self.cleared = 0

    def plan_task(self, task, context, available_actions) -> PlanResponse:
        self.tasks.append(task)
        if self.plan_error:
            raise self.plan_error
        return PlanResponse(plan=list(self.plan), reasoning="because", confidence=0.8)

    def analyze_error(self, error_info: ErrorInfo) -> ErrorAnalysis:
        self.analyzed.append(error_info)
        return self.analysis or ErrorAnalysis(analysis="", suggestions=[])

    def format_tool_result(self, action: str, raw_data: object, task: str) -> str:
        if self.format_error:
            raise self.format_error
        return f"formatted {action}"

    def chat(self, message: str) -> str:
        if self.chat_error:
            raise self.chat_error
        return f"echo: {message}"

    def clear_history(self) -> None:
        self.cleared += 1


class ScriptedDispatcher:
    """Returns scripted results keyed by the step's ``path`` parameter."""

    def __init__(
        self,
        results: dict[str, list[ToolResult]] | None = None,
        on_dispatch: Callable[[str], None] | None = None,
    ) -> None:
        self.results = results or {}
        self.on_dispatch = on_dispatch
        self.paths: list[str] = []

    def dispatch(self, action: str, parameters: Mapping[str, object] | None = None) -> ToolResult:
        path = str((parameters or {}).get("path"))
        self.paths.append(path)
        if self.on_dispatch:
            self.on_dispatch(path)
        scripted = self.results.get(path)
        if scripted:
            return scripted.pop(0) if len(scripted) > 1 else scripted[0]
        return ToolResult.ok(output=f"{action} ok")


class FakeContext:
    def gather(self, recent_errors=()) -> ProjectContext:
        return ProjectContext(workspace_root="/ws", recent_errors=tuple(recent_errors))


def _read(path: str) -> PlanStep:
    return PlanStep(action="read_file", parameters={"path": path}, expected_outcome=f"read {path}")


def _contents(runner: PlanRunner) -> list[str]:
    return [message.content for message in runner.state.messages]


def _runner(client: FakeClient, dispatcher: ScriptedDispatcher, tmp_path: Path, **kwargs) -> PlanRunner:
    return PlanRunner(
        client=client,  # type: ignore[arg-type]
        coordinator=RecoveryCoordinator(dispatcher),  # type: ignore[arg-type]
        context=FakeContext(),  # type: ignore[arg-type]
        log_dir=tmp_path / "logs",
        **kwargs,
    )


def test_plan_runs_against_real_workspace_and_logs(tmp_path: Path) -> None:
    workspace = tmp_path / "ws"
    workspace.mkdir()
    commands = CommandSerializer(FakeShell())
    dispatcher = ToolDispatcher(workspace_root=workspace, commands=commands)
    client = FakeClient(
        [
            PlanStep(action="create_directory", parameters={"path": "pkg"}, expected_outcome="dir"),
            PlanStep(
                action="create_file",
                parameters={"path": "pkg/a.txt", "content": "hello"},
                expected_outcome="file",
            ),
            PlanStep(action="read_file", parameters={"path": "pkg/a.txt"}, expected_outcome="read"),
        ]
    )
    runner = PlanRunner(
        client=client,  # type: ignore[arg-type]
        coordinator=RecoveryCoordinator(dispatcher),
        context=ContextGatherer(dispatcher),
        log_dir=tmp_path / "logs",
    )

    runner.run("make a package")
    runner.close()

    assert (workspace / "pkg" / "a.txt").read_text(encoding="utf-8") == "hello"
    messages = _contents(runner)
    assert messages[0] == "make a package"
    assert messages[1] == "Planning complete (confidence: 80%)\n\nbecause\n\nSteps: 3"
    assert messages[2] == "Step 1/3: create_directory\nExpected: dir"
    assert messages[3] == "✓ formatted create_directory"
    assert messages[-1] == "Task execution completed."
    assert runner.state.is_running is False

    log_files = list((tmp_path / "logs").glob("session-*.log"))
    assert len(log_files) == 1
    entries = [json.loads(line) for line in log_files[0].read_text(encoding="utf-8").splitlines()]
    assert [entry["action"] for entry in entries] == ["create_directory", "create_file", "read_file"]
    assert entries[0]["log_version"] == 1
    assert entries[0]["model"] == "fake/model"
    assert entries[1]["parameters"] == {"path": "pkg/a.txt", "content": "hello"}
    assert all(entry["success"] for entry in entries)


def test_published_snapshots_track_progress(tmp_path: Path) -> None:
    snapshots: list[AgentState] = []
    runner = _runner(
        FakeClient([_read("a"), _read("b")]),
        ScriptedDispatcher(),
        tmp_path,
        on_state_change=snapshots.append,
    )

    runner.run("read two files")

    steps_seen = [snapshot.current_step for snapshot in snapshots if snapshot.is_running]
    assert steps_seen[0] == 0
    assert 1 in steps_seen and 2 in steps_seen
    assert steps_seen.index(1) < steps_seen.index(2)
    assert any(snapshot.total_steps == 2 for snapshot in snapshots)
    assert snapshots[-1].is_running is False
    assert snapshots[-1].current_task is None


def test_cancel_before_third_step_stops_remaining_steps(tmp_path: Path) -> None:
    holder: list[PlanRunner] = []

    def cancel_on_second(path: str) -> None:
        if path == "2":
            holder[0].cancel()

    dispatcher = ScriptedDispatcher(on_dispatch=cancel_on_second)
    runner = _runner(FakeClient([_read(str(i)) for i in range(1, 6)]), dispatcher, tmp_path)
    holder.append(runner)

    runner.run("read five files")

    assert dispatcher.paths == ["1", "2"]
    assert "Task cancelled by user." in _contents(runner)
    assert "Task execution completed." not in _contents(runner)
    assert runner.state.is_running is False


def test_failed_step_stops_when_operator_declines_to_continue(tmp_path: Path) -> None:
    dispatcher = ScriptedDispatcher({"2": [ToolResult.fail("exit status 3")]})
    asked: list[str] = []

    def ask_to_continue(error: str) -> bool:
        asked.append(error)
        return False

    runner = _runner(
        FakeClient([_read("1"), _read("2"), _read("3")]),
        dispatcher,
        tmp_path,
        ask_to_continue=ask_to_continue,
    )

    runner.run("read files")

    assert dispatcher.paths == ["1", "2"]
    assert asked == ["exit status 3"]
    messages = _contents(runner)
    assert "✗ Failed: exit status 3" in messages
    assert messages[-1] == "Task stopped after step 2 failed."


def test_failed_step_continues_when_operator_agrees(tmp_path: Path) -> None:
    dispatcher = ScriptedDispatcher({"2": [ToolResult.fail("exit status 3")]})
    runner = _runner(
        FakeClient([_read("1"), _read("2"), _read("3")]),
        dispatcher,
        tmp_path,
        ask_to_continue=lambda _error: True,
    )

    runner.run("read files")

    assert dispatcher.paths == ["1", "2", "3"]
    assert _contents(runner)[-1] == "Task execution completed."


def test_approved_recovery_applies_fix_and_retries(tmp_path: Path) -> None:
    fix = _read("fix")
    dispatcher = ScriptedDispatcher(
        {
            "1": [
                ToolResult.fail("Error: Cannot find module 'left-pad'"),
                ToolResult.ok(output="done"),
            ]
        }
    )
    client = FakeClient(
        [_read("1")],
        analysis=ErrorAnalysis(analysis="install the module", suggestions=[fix]),
    )
    choices: list[str] = []

    def confirm_recovery(error: ErrorInfo, analysis: ErrorAnalysis) -> str:
        choices.append(error.kind)
        return "apply"

    runner = _runner(client, dispatcher, tmp_path, confirm_recovery=confirm_recovery)

    runner.run("run it")

    assert dispatcher.paths == ["1", "fix", "1"]
    assert choices == ["dependency_missing"]
    messages = _contents(runner)
    assert "Analyzing error: dependency_missing - Cannot find module 'left-pad'" in messages
    assert "Recovery suggestion: install the module" in messages
    assert messages[-1] == "Task execution completed."
    assert [error.kind for error in runner.state.errors] == ["dependency_missing"]
    assert [record.step for record in runner.history()] == [_read("1"), fix, _read("1")]


def test_recovery_is_declined_without_a_recovery_prompt(tmp_path: Path) -> None:
    dispatcher = ScriptedDispatcher({"1": [ToolResult.fail("Permission denied")]})
    client = FakeClient(
        [_read("1")],
        analysis=ErrorAnalysis(analysis="use sudo", suggestions=[_read("fix")]),
    )
    runner = _runner(client, dispatcher, tmp_path)

    runner.run("run it")

    assert dispatcher.paths == ["1"]
    assert len(client.analyzed) == 1
    assert "✗ Failed: Permission denied" in _contents(runner)


def test_analysis_failure_surfaces_original_error(tmp_path: Path) -> None:
    class BrokenAnalysisClient(FakeClient):
        def analyze_error(self, error_info: ErrorInfo) -> ErrorAnalysis:
            raise ModelError("Rate limit exceeded. Please wait and try again.")

    dispatcher = ScriptedDispatcher({"1": [ToolResult.fail("Permission denied")]})
    runner = _runner(BrokenAnalysisClient([_read("1")]), dispatcher, tmp_path)

    runner.run("run it")

    assert dispatcher.paths == ["1"]
    assert "✗ Failed: Permission denied" in _contents(runner)


def test_transport_failure_during_analysis_does_not_end_plan(tmp_path: Path) -> None:
    class DroppedConnectionClient(FakeClient):
        def analyze_error(self, error_info: ErrorInfo) -> ErrorAnalysis:
            raise ConnectionResetError("connection reset while reading body")

    dispatcher = ScriptedDispatcher({"1": [ToolResult.fail("Permission denied")]})
    runner = _runner(
        DroppedConnectionClient([_read("1"), _read("2")]),
        dispatcher,
        tmp_path,
        ask_to_continue=lambda _error: True,
    )

    runner.run("run it")

    assert dispatcher.paths == ["1", "2"]
    messages = _contents(runner)
    assert "✗ Failed: Permission denied" in messages
    assert not any(message.startswith("Error:") for message in messages)
    assert messages[-1] == "Task execution completed."


def test_formatting_failure_falls_back_to_raw_output(tmp_path: Path) -> None:
    runner = _runner(
        FakeClient([_read("1")], format_error=ModelError("Empty response from API")),
        ScriptedDispatcher(),
        tmp_path,
    )

    runner.run("read")

    assert "✓ read_file ok" in _contents(runner)
    assert _contents(runner)[-1] == "Task execution completed."


def test_planning_failure_is_reported_and_state_reset(tmp_path: Path) -> None:
    dispatcher = ScriptedDispatcher()
    runner = _runner(
        FakeClient([], plan_error=ModelError("Invalid API key. Please check your API key in settings.")),
        dispatcher,
        tmp_path,
    )

    runner.run("anything")

    assert _contents(runner)[-1] == "Error: Invalid API key. Please check your API key in settings."
    assert runner.state.is_running is False
    assert dispatcher.paths == []


def test_context_failure_is_reported_and_state_reset(tmp_path: Path) -> None:
    class BrokenContext:
        def gather(self, recent_errors=()) -> ProjectContext:
            raise PermissionError("workspace is not readable")

    client = FakeClient([_read("1")])
    dispatcher = ScriptedDispatcher()
    runner = PlanRunner(
        client=client,  # type: ignore[arg-type]
        coordinator=RecoveryCoordinator(dispatcher),  # type: ignore[arg-type]
        context=BrokenContext(),  # type: ignore[arg-type]
        log_dir=tmp_path / "logs",
    )

    runner.run("anything")

    errors = [message for message in _contents(runner) if message.startswith("Error:")]
    assert errors == ["Error: workspace is not readable"]
    assert runner.state.is_running is False
    assert client.tasks == []
    assert dispatcher.paths == []


def test_unwritable_session_log_does_not_stop_plan(tmp_path: Path) -> None:
    blocked = tmp_path / "logs"
    blocked.write_text("not a directory", encoding="utf-8")
    dispatcher = ScriptedDispatcher()
    runner = PlanRunner(
        client=FakeClient([_read("1"), _read("2")]),  # type: ignore[arg-type]
        coordinator=RecoveryCoordinator(dispatcher),  # type: ignore[arg-type]
        context=FakeContext(),  # type: ignore[arg-type]
        log_dir=blocked,
    )

    runner.run("read files")

    assert dispatcher.paths == ["1", "2"]
    assert _contents(runner)[-1] == "Task execution completed."
    assert blocked.read_text(encoding="utf-8") == "not a directory"


def test_empty_plan_reports_nothing_to_do(tmp_path: Path) -> None:
    runner = _runner(FakeClient([]), ScriptedDispatcher(), tmp_path)

    runner.run("nothing")

    assert _contents(runner)[-1] == "No actions needed for this task."
    assert not (tmp_path / "logs").exists()


def test_chat_appends_both_sides(tmp_path: Path) -> None:
    runner = _runner(FakeClient([]), ScriptedDispatcher(), tmp_path)

    reply = runner.chat("hello")

    assert reply == "echo: hello"
    assert [(m.role, m.content) for m in runner.state.messages] == [
        ("user", "hello"),
        ("assistant", "echo: hello"),
    ]


def test_chat_error_is_recorded_and_raised(tmp_path: Path) -> None:
    runner = _runner(
        FakeClient([], chat_error=ModelError("Insufficient credits. Please add credits to your account.")),
        ScriptedDispatcher(),
        tmp_path,
    )

    with pytest.raises(ModelError):
        runner.chat("hello")

    assert _contents(runner)[-1] == "Error: Insufficient credits. Please add credits to your account."


def test_clear_resets_messages_history_and_model_memory(tmp_path: Path) -> None:
    client = FakeClient([_read("1")])
    runner = _runner(client, ScriptedDispatcher(), tmp_path)
    runner.run("read")

    runner.clear()

    assert runner.state.messages == ()
    assert runner.history() == []
    assert client.cleared == 1
