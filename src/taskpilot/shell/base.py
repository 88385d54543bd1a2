"""Shell process runner shared by the concrete adapters."""

from __future__ import annotations

import abc
import locale
import logging
import re
import subprocess
import time
from dataclasses import dataclass

LOGGER = logging.getLogger(__name__)

TIMEOUT_RETURNCODE = 124
MISSING_EXECUTABLE_RETURNCODE = 127

# Flag-style and assignment-style secrets; the value group is masked.
_SECRET_PATTERNS = [
    re.compile(r"(--?(?:password|token|secret|api[-_]?key)\s+)(\S+)", re.IGNORECASE),
    re.compile(r"((?:password|token|secret|api[-_]?key)\s*=\s*)(\S+)", re.IGNORECASE),
]


@dataclass(slots=True)
class CommandResult:
    """Outcome of one shell process."""

    command: str
    shell: str
    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False
    duration_seconds: float = 0.0
    executed: bool = True

    @property
    def succeeded(self) -> bool:
        return self.returncode == 0 and not self.timed_out


class ShellAdapter(abc.ABC):
    """Runs one command line through a specific shell executable.

    Subclasses only describe how the shell is invoked; process handling,
    timeouts and logging live here.
    """

    executable: str = ""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Friendly shell adapter name."""

    @abc.abstractmethod
    def build_argv(self, command: str) -> list[str]:
        """Return the argument vector that runs ``command`` in this shell."""

    def execute(
        self,
        command: str,
        *,
        cwd: str | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        LOGGER.info(
            "command_request",
            extra={
                "shell": self.name,
                "command": sanitize_command(command),
                "cwd": cwd,
                "timeout": timeout,
            },
        )
        started = time.monotonic()
        try:
            process = subprocess.run(
                self.build_argv(command),
                capture_output=True,
                cwd=cwd,
                timeout=timeout,
                check=False,
                text=False,
            )
        except subprocess.TimeoutExpired as exc:
            result = self._result(
                command,
                started,
                returncode=TIMEOUT_RETURNCODE,
                stdout=normalize_output(exc.stdout),
                stderr=normalize_output(exc.stderr),
                timed_out=True,
            )
        except FileNotFoundError:
            result = self._result(
                command,
                started,
                returncode=MISSING_EXECUTABLE_RETURNCODE,
                stderr=f"{self.name} executable not found: {self.executable}",
                executed=False,
            )
        else:
            result = self._result(
                command,
                started,
                returncode=process.returncode,
                stdout=normalize_output(process.stdout),
                stderr=normalize_output(process.stderr),
            )

        LOGGER.info(
            "command_result",
            extra={
                "shell": result.shell,
                "returncode": result.returncode,
                "timed_out": result.timed_out,
                "duration_seconds": round(result.duration_seconds, 4),
                "executed": result.executed,
                "stdout_length": len(result.stdout),
                "stderr_length": len(result.stderr),
            },
        )
        return result

    def _result(
        self,
        command: str,
        started: float,
        *,
        returncode: int,
        stdout: str = "",
        stderr: str = "",
        timed_out: bool = False,
        executed: bool = True,
    ) -> CommandResult:
        return CommandResult(
            command=command,
            shell=self.name,
            returncode=returncode,
            stdout=stdout,
            stderr=stderr,
            timed_out=timed_out,
            duration_seconds=time.monotonic() - started,
            executed=executed,
        )


def sanitize_command(command: str) -> str:
    """Mask secret-looking arguments before a command line is logged."""
    for pattern in _SECRET_PATTERNS:
        command = pattern.sub(r"\1***", command)
    return command


def normalize_output(payload: bytes | str | None) -> str:
    """Decode captured process output, trying the console encodings in turn."""
    if payload is None:
        return ""
    if isinstance(payload, str):
        return payload

    encodings = ("utf-8", "utf-8-sig", locale.getpreferredencoding(False), "cp1252")
    for encoding in encodings:
        try:
            return payload.decode(encoding)
        except (LookupError, UnicodeDecodeError):
            continue
    return payload.decode("utf-8", errors="replace")
