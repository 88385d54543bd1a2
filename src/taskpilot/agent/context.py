"""Ambient project context sent with every planning request."""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from typing import Protocol

from taskpilot.agent.models import ErrorInfo, ProjectContext
from taskpilot.tools.dispatcher import ToolDispatcher

LOGGER = logging.getLogger(__name__)

MAX_OPEN_FILES = 10
MAX_RECENT_ERRORS = 5

# Marker files checked after package.json, first hit wins.
_PROJECT_MARKERS: tuple[tuple[str, str], ...] = (
    ("pyproject.toml", "Python"),
    ("setup.py", "Python"),
    ("requirements.txt", "Python"),
    ("Cargo.toml", "Rust"),
    ("go.mod", "Go"),
    ("pom.xml", "Java"),
)


class EditorView(Protocol):
    """Optional host view of the files the operator is working on."""

    def current_file(self) -> str | None: ...

    def open_files(self) -> Sequence[str]: ...


class ContextGatherer:
    def __init__(self, dispatcher: ToolDispatcher, *, editor: EditorView | None = None) -> None:
        self.dispatcher = dispatcher
        self.editor = editor

    def gather(self, recent_errors: Sequence[ErrorInfo] = ()) -> ProjectContext:
        current_file = self.editor.current_file() if self.editor else None
        open_files = tuple(self.editor.open_files())[:MAX_OPEN_FILES] if self.editor else ()
        return ProjectContext(
            workspace_root=str(self.dispatcher.workspace_root),
            current_file=current_file,
            open_files=open_files,
            recent_errors=tuple(recent_errors)[-MAX_RECENT_ERRORS:],
            project_type=self.detect_project_type(),
        )

    def detect_project_type(self) -> str | None:
        """Best-effort sniff of the workspace stack; ``None`` when unknown."""
        package_json = self.dispatcher.dispatch("read_file", {"path": "package.json"})
        if package_json.success and isinstance(package_json.data, str):
            project_type = _node_project_type(package_json.data)
            if project_type:
                return project_type

        for marker, project_type in _PROJECT_MARKERS:
            if self.dispatcher.files.file_exists(marker):
                return project_type
        return None


def _node_project_type(raw: str) -> str | None:
    try:
        package = json.loads(raw)
    except json.JSONDecodeError:
        LOGGER.debug("package_json_invalid")
        return None
    if not isinstance(package, dict):
        return None

    dependencies = package.get("dependencies")
    dev_dependencies = package.get("devDependencies")
    deps = dependencies if isinstance(dependencies, dict) else {}
    dev_deps = dev_dependencies if isinstance(dev_dependencies, dict) else {}
    if "next" in deps or "next" in dev_deps:
        return "Next.js"
    if "react" in deps:
        return "React"
    if "express" in deps:
        return "Express"
    return "Node.js"
