"""Map plan actions onto workspace side effects."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from pathlib import Path

from taskpilot.agent.models import ActionKind, ToolResult
from taskpilot.tools.command_queue import CommandSerializer
from taskpilot.tools.files import FileManager

LOGGER = logging.getLogger(__name__)

AskUser = Callable[[str, str | None], str | None]
Parameters = Mapping[str, object]
_Handler = Callable[[Parameters], ToolResult]


class MissingParameterError(ValueError):
    def __init__(self, name: str) -> None:
        super().__init__(name)
        self.name = name


class ToolDispatcher:
    """Execute one action exactly once and report a ``ToolResult``.

    ``dispatch`` never raises. Dangerous-action approval is not checked here;
    callers gate ``delete_file`` and ``execute_command`` before dispatching.
    """

    def __init__(
        self,
        *,
        workspace_root: str | Path,
        commands: CommandSerializer,
        ask_user: AskUser | None = None,
    ) -> None:
        self.workspace_root = Path(workspace_root)
        self.files = FileManager(self.workspace_root)
        self.commands = commands
        self.ask_user = ask_user
        self._handlers: dict[ActionKind, _Handler] = {
            "read_file": self._read_file,
            "write_file": self._write_file,
            "create_file": self._create_file,
            "create_directory": self._create_directory,
            "delete_file": self._delete_file,
            "list_directory": self._list_directory,
            "execute_command": self._execute_command,
            "search_files": self._search_files,
            "analyze_error": self._analyze_error,
            "ask_user": self._ask_user,
        }

    @property
    def supported_actions(self) -> frozenset[str]:
        return frozenset(self._handlers)

    def dispatch(self, action: str, parameters: Parameters | None = None) -> ToolResult:
        params: Parameters = parameters or {}
        handler = self._handlers.get(action)  # type: ignore[call-overload]
        if handler is None:
            return ToolResult.fail(f"Unknown action: {action}")

        LOGGER.debug("tool_dispatch", extra={"action": action, "parameter_keys": sorted(params)})
        try:
            return handler(params)
        except MissingParameterError as exc:
            return ToolResult.fail(f"Missing required parameter '{exc.name}' for {action}")
        except Exception as exc:
            LOGGER.exception("tool_dispatch_failed", extra={"action": action})
            return ToolResult.fail(f"{action} failed: {exc}")

    def _read_file(self, params: Parameters) -> ToolResult:
        return self.files.read_file(_required(params, "path"))

    def _write_file(self, params: Parameters) -> ToolResult:
        return self.files.write_file(_required(params, "path"), _required(params, "content"))

    def _create_file(self, params: Parameters) -> ToolResult:
        content = params.get("content")
        return self.files.create_file(
            _required(params, "path"),
            content if isinstance(content, str) else "",
        )

    def _create_directory(self, params: Parameters) -> ToolResult:
        return self.files.create_directory(_required(params, "path"))

    def _delete_file(self, params: Parameters) -> ToolResult:
        return self.files.delete_file(_required(params, "path"))

    def _list_directory(self, params: Parameters) -> ToolResult:
        return self.files.list_directory(_optional(params, "path") or ".")

    def _execute_command(self, params: Parameters) -> ToolResult:
        command = _required(params, "command")
        cwd = _optional(params, "cwd")
        working_dir = str(self.files.resolve_path(cwd)) if cwd else str(self.workspace_root)
        return self.commands.run(
            command,
            working_dir=working_dir,
            timeout_seconds=_to_timeout(params.get("timeout")),
        )

    def _search_files(self, params: Parameters) -> ToolResult:
        return self.files.search_files(
            _required(params, "pattern"),
            _optional(params, "content"),
        )

    @staticmethod
    def _analyze_error(params: Parameters) -> ToolResult:
        return ToolResult.ok(
            output="Error analysis requested - forwarding to AI",
            data=dict(params),
        )

    def _ask_user(self, params: Parameters) -> ToolResult:
        question = _required(params, "question")
        response = (
            self.ask_user(question, _optional(params, "placeholder"))
            if self.ask_user is not None
            else None
        )
        return ToolResult.ok(output=response or "No response", data=response)


def _required(params: Parameters, name: str) -> str:
    value = params.get(name)
    if not isinstance(value, str) or (name != "content" and not value.strip()):
        raise MissingParameterError(name)
    return value


def _optional(params: Parameters, name: str) -> str | None:
    value = params.get(name)
    if isinstance(value, str) and value.strip():
        return value
    return None


def _to_timeout(value: object) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if value > 0 else None
    if isinstance(value, str):
        try:
            parsed = float(value.strip())
        except ValueError:
            return None
        return parsed if parsed > 0 else None
    return None
