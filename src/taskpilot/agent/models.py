"""Data models shared by the planner, the tools and the recovery loop."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Literal, cast, get_args

ActionKind = Literal[
    "read_file",
    "write_file",
    "create_file",
    "create_directory",
    "delete_file",
    "list_directory",
    "execute_command",
    "search_files",
    "analyze_error",
    "ask_user",
]
ErrorKind = Literal[
    "command_not_found",
    "permission_denied",
    "syntax_error",
    "dependency_missing",
    "network_error",
    "file_not_found",
    "compilation_error",
    "runtime_error",
    "unknown",
]
MessageRole = Literal["user", "assistant", "system"]

# The dispatcher's handler table and the planning prompt are both built from
# this mapping; it must list every ActionKind exactly once.
ACTION_CATALOG: dict[ActionKind, str] = {
    "read_file": 'Read file contents. Parameters: {"path": "relative/path/to/file"}',
    "write_file": 'Write/update file contents. Parameters: {"path": "...", "content": "..."}',
    "create_file": (
        'Create a new file, failing if it exists. Parameters: {"path": "...", "content": "..."}'
    ),
    "create_directory": 'Create a new directory. Parameters: {"path": "..."}',
    "delete_file": 'Delete a file or empty directory. Parameters: {"path": "..."}',
    "list_directory": 'List directory contents. Parameters: {"path": "."}',
    "execute_command": (
        'Run a shell command. Parameters: {"command": "npm install",'
        ' "cwd": "optional/path", "timeout": "optional seconds"}'
    ),
    "search_files": (
        'Search for files or content. Parameters: {"pattern": "**/*.py",'
        ' "content": "optional search text"}'
    ),
    "analyze_error": 'Hand error details back for analysis. Parameters: {"message": "..."}',
    "ask_user": 'Ask the user for clarification. Parameters: {"question": "..."}',
}
AVAILABLE_ACTIONS: tuple[ActionKind, ...] = get_args(ActionKind)
ERROR_KINDS: tuple[ErrorKind, ...] = get_args(ErrorKind)


@dataclass(frozen=True, slots=True)
class PlanStep:
    """One tool invocation proposed by the model."""

    action: ActionKind
    parameters: Mapping[str, object] = field(default_factory=dict)
    expected_outcome: str = ""
    rollback_plan: tuple[PlanStep, ...] | None = None

    @classmethod
    def from_payload(cls, payload: object) -> PlanStep:
        """Build a step from decoded model JSON, rejecting unknown actions."""
        if not isinstance(payload, dict):
            msg = f"Plan step must be an object, got {type(payload).__name__}"
            raise ValueError(msg)

        action = payload.get("action")
        if not isinstance(action, str) or action not in AVAILABLE_ACTIONS:
            msg = f"Unsupported action in plan step: {action!r}"
            raise ValueError(msg)

        parameters = payload.get("parameters", {})
        if parameters is None:
            parameters = {}
        if not isinstance(parameters, dict):
            msg = f"Parameters for {action} must be an object"
            raise ValueError(msg)

        expected_outcome = payload.get("expected_outcome")
        rollback_payload = payload.get("rollback_plan")
        rollback_plan: tuple[PlanStep, ...] | None = None
        if isinstance(rollback_payload, list):
            rollback_plan = tuple(cls.from_payload(item) for item in rollback_payload)

        return cls(
            action=cast(ActionKind, action),
            parameters={str(key): value for key, value in parameters.items()},
            expected_outcome=expected_outcome if isinstance(expected_outcome, str) else "",
            rollback_plan=rollback_plan,
        )

    def describe(self) -> str:
        if self.action == "execute_command":
            return str(self.parameters.get("command", ""))
        return f"{self.action}: {dict(self.parameters)}"


@dataclass(frozen=True, slots=True)
class ToolResult:
    """Uniform outcome of a dispatched tool call."""

    success: bool
    data: object = None
    output: str | None = None
    error: str | None = None

    @classmethod
    def ok(cls, output: str | None = None, data: object = None) -> ToolResult:
        return cls(success=True, data=data, output=output)

    @classmethod
    def fail(cls, error: str, *, output: str | None = None, data: object = None) -> ToolResult:
        return cls(success=False, data=data, output=output, error=error or "Unknown error")


@dataclass(frozen=True, slots=True)
class ErrorInfo:
    """Classified failure handed to the advisory model."""

    kind: ErrorKind
    message: str
    source: str
    timestamp: float
    context: str | None = None


@dataclass(frozen=True, slots=True)
class ExecutionRecord:
    step: PlanStep
    result: ToolResult


@dataclass(frozen=True, slots=True)
class ChatMessage:
    role: MessageRole
    content: str
    timestamp: float


@dataclass(frozen=True, slots=True)
class ProjectContext:
    """Ambient workspace facts sent along with every planning request."""

    workspace_root: str
    current_file: str | None = None
    open_files: tuple[str, ...] = ()
    recent_errors: tuple[ErrorInfo, ...] = ()
    project_type: str | None = None


@dataclass(frozen=True, slots=True)
class PlanResponse:
    plan: list[PlanStep]
    reasoning: str = ""
    confidence: float = 0.5


@dataclass(frozen=True, slots=True)
class ErrorAnalysis:
    analysis: str
    suggestions: list[PlanStep] = field(default_factory=list)
