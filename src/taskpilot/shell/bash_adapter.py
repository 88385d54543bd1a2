"""POSIX shell adapter."""

from __future__ import annotations

import shutil

from .base import ShellAdapter


class BashAdapter(ShellAdapter):
    """Runs commands with ``bash -c``, or ``sh -c`` where bash is absent."""

    def __init__(self, executable: str | None = None, *, fallback_to_sh: bool = True) -> None:
        self.executable = executable or _locate_posix_shell(fallback_to_sh=fallback_to_sh)

    @property
    def name(self) -> str:
        return "bash"

    def build_argv(self, command: str) -> list[str]:
        return [self.executable, "-c", command]


def _locate_posix_shell(*, fallback_to_sh: bool) -> str:
    if shutil.which("bash"):
        return "bash"
    if fallback_to_sh and shutil.which("sh"):
        return "sh"
    return "bash"
