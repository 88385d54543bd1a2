"""Shell adapter implementations."""

import os

from .base import CommandResult, ShellAdapter
from .bash_adapter import BashAdapter
from .powershell_adapter import PowerShellAdapter


def default_shell_name(os_name: str | None = None) -> str:
    platform_name = os.name if os_name is None else os_name
    return "powershell" if platform_name == "nt" else "bash"


def create_shell_adapter(shell_name: str | None = None) -> ShellAdapter:
    normalized = (shell_name or default_shell_name()).strip().lower()
    if normalized in {"bash", "sh", "shell"}:
        return BashAdapter(executable="sh" if normalized == "sh" else None)
    if normalized in {"powershell", "pwsh"}:
        return PowerShellAdapter(executable="pwsh" if normalized == "pwsh" else None)
    msg = f"Unsupported shell adapter: {shell_name}"
    raise ValueError(msg)


__all__ = [
    "BashAdapter",
    "CommandResult",
    "PowerShellAdapter",
    "ShellAdapter",
    "create_shell_adapter",
    "default_shell_name",
]
