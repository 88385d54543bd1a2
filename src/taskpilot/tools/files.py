"""Workspace-relative filesystem operations returning tool results."""

from __future__ import annotations

import logging
from pathlib import Path

from taskpilot.agent.models import ToolResult

LOGGER = logging.getLogger(__name__)

MAX_SEARCH_RESULTS = 100
MAX_CONTENT_SCAN_FILES = 50
MAX_MATCHES_PER_FILE = 5
MAX_MATCH_LINE_CHARS = 100
_SEARCH_EXCLUDED_PARTS = frozenset({"node_modules", ".git"})


class FileManager:
    """File tools rooted at a workspace directory."""

    def __init__(self, workspace_root: str | Path) -> None:
        self.workspace_root = Path(workspace_root)

    def read_file(self, file_path: str) -> ToolResult:
        try:
            content = self.resolve_path(file_path).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            return ToolResult.fail(f"Failed to read file: {exc}")
        return ToolResult.ok(
            output=f"Read {len(content.encode('utf-8'))} bytes from {file_path}",
            data=content,
        )

    def write_file(self, file_path: str, content: str) -> ToolResult:
        target = self.resolve_path(file_path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        except OSError as exc:
            return ToolResult.fail(f"Failed to write file: {exc}")
        return ToolResult.ok(output=f"Wrote {len(content)} bytes to {file_path}")

    def create_file(self, file_path: str, content: str = "") -> ToolResult:
        target = self.resolve_path(file_path)
        if target.exists():
            return ToolResult.fail(f"File already exists: {file_path}")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with target.open("x", encoding="utf-8") as handle:
                handle.write(content)
        except FileExistsError:
            return ToolResult.fail(f"File already exists: {file_path}")
        except OSError as exc:
            return ToolResult.fail(f"Failed to create file: {exc}")
        return ToolResult.ok(output=f"Created file: {file_path}")

    def delete_file(self, file_path: str) -> ToolResult:
        target = self.resolve_path(file_path)
        try:
            if target.is_dir() and not target.is_symlink():
                target.rmdir()
            else:
                target.unlink()
        except OSError as exc:
            return ToolResult.fail(f"Failed to delete file: {exc}")
        return ToolResult.ok(output=f"Deleted file: {file_path}")

    def list_directory(self, dir_path: str = ".") -> ToolResult:
        target = self.resolve_path(dir_path)
        if not target.exists():
            return ToolResult.fail(f"Directory does not exist: {dir_path}")
        if not target.is_dir():
            return ToolResult.fail(f"Path is not a directory: {dir_path}")
        try:
            entries = sorted(target.iterdir(), key=lambda entry: entry.name)
        except OSError as exc:
            return ToolResult.fail(f"Failed to list directory: {exc}")

        items = [
            {
                "name": entry.name,
                "type": "directory" if entry.is_dir() else "file",
                "path": str(Path(dir_path) / entry.name),
            }
            for entry in entries
        ]
        return ToolResult.ok(output=f"Listed {len(items)} items in {dir_path}", data=items)

    def create_directory(self, dir_path: str) -> ToolResult:
        target = self.resolve_path(dir_path)
        if target.is_dir():
            return ToolResult.fail(f"Directory already exists: {dir_path}")
        if target.exists():
            return ToolResult.fail(f"Path exists but is not a directory: {dir_path}")
        try:
            target.mkdir(parents=True)
        except OSError as exc:
            return ToolResult.fail(f"Failed to create directory: {exc}")
        return ToolResult.ok(output=f"Created directory: {dir_path}")

    def search_files(self, pattern: str, search_content: str | None = None) -> ToolResult:
        """Glob for files and optionally grep them for a substring.

        Content search only looks at the first ``MAX_CONTENT_SCAN_FILES``
        matches and reports at most ``MAX_MATCHES_PER_FILE`` lines per file.
        """
        try:
            files = self._glob_files(pattern)
        except (OSError, ValueError, NotImplementedError) as exc:
            return ToolResult.fail(f"Search failed: {exc}")

        if not search_content:
            results = [{"path": self._relative(path)} for path in files]
            return ToolResult.ok(
                output=f'Found {len(results)} files matching "{pattern}"',
                data=results,
            )

        matching_files: list[dict[str, object]] = []
        for path in files[:MAX_CONTENT_SCAN_FILES]:
            try:
                text = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError):
                LOGGER.debug("search_skipped_unreadable", extra={"path": str(path)})
                continue
            if search_content not in text:
                continue
            matches = [
                f"Line {number}: {line.strip()[:MAX_MATCH_LINE_CHARS]}"
                for number, line in enumerate(text.splitlines(), start=1)
                if search_content in line
            ][:MAX_MATCHES_PER_FILE]
            if matches:
                matching_files.append({"path": self._relative(path), "matches": matches})

        return ToolResult.ok(
            output=f'Found {len(matching_files)} files containing "{search_content}"',
            data=matching_files,
        )

    def file_exists(self, file_path: str) -> bool:
        return self.resolve_path(file_path).exists()

    def resolve_path(self, file_path: str) -> Path:
        path = Path(file_path).expanduser()
        if path.is_absolute():
            return path
        return self.workspace_root / path

    def _glob_files(self, pattern: str) -> list[Path]:
        files: list[Path] = []
        for path in self.workspace_root.glob(pattern):
            relative_parts = path.relative_to(self.workspace_root).parts
            if _SEARCH_EXCLUDED_PARTS.intersection(relative_parts):
                continue
            if not path.is_file():
                continue
            files.append(path)
            if len(files) >= MAX_SEARCH_RESULTS:
                break
        return sorted(files)

    def _relative(self, path: Path) -> str:
        try:
            return path.relative_to(self.workspace_root).as_posix()
        except ValueError:
            return str(path)
