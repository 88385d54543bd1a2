"""Deterministic failure classification for the recovery loop."""

from __future__ import annotations

import re
import time
from collections.abc import Callable
from dataclasses import dataclass

from taskpilot.agent.models import ErrorInfo, ErrorKind

MAX_CONTEXT_CHARS = 500
MAX_MESSAGE_CHARS = 200


@dataclass(frozen=True, slots=True)
class ClassificationRule:
    kind: ErrorKind
    pattern: re.Pattern[str]
    summarize: Callable[[re.Match[str]], str]


def _fixed(message: str) -> Callable[[re.Match[str]], str]:
    return lambda _match: message


def _missing_command(match: re.Match[str]) -> str:
    name = next((group for group in match.groups() if group), None)
    return f"Command not found: {name}" if name else "Command not found"


# Order is priority: specific failures first, generic catch-alls last.
RULES: tuple[ClassificationRule, ...] = (
    ClassificationRule(
        kind="command_not_found",
        pattern=re.compile(
            r"(?:([\w.-]+): command not found|command not found"
            r"|'([\w.-]+)' is not recognized|not recognized as .*command)",
            re.IGNORECASE,
        ),
        summarize=_missing_command,
    ),
    ClassificationRule(
        kind="permission_denied",
        pattern=re.compile(r"permission denied|access is denied|EACCES|EPERM", re.IGNORECASE),
        summarize=_fixed("Permission denied"),
    ),
    ClassificationRule(
        kind="syntax_error",
        pattern=re.compile(r"SyntaxError|syntax error|unexpected token", re.IGNORECASE),
        summarize=_fixed("Syntax error in code"),
    ),
    ClassificationRule(
        kind="dependency_missing",
        pattern=re.compile(
            r"Cannot find module[^\n]*|Module not found[^\n]*|No module named[^\n]*"
            r"|package [^\n]*not found",
            re.IGNORECASE,
        ),
        summarize=lambda match: match.group(0).strip()[:MAX_MESSAGE_CHARS],
    ),
    ClassificationRule(
        kind="network_error",
        pattern=re.compile(
            r"ECONNREFUSED|ETIMEDOUT|ENOTFOUND|getaddrinfo|could not resolve host|network",
            re.IGNORECASE,
        ),
        summarize=_fixed("Network connection error"),
    ),
    ClassificationRule(
        kind="file_not_found",
        pattern=re.compile(
            r"no such file or directory|file not found|ENOENT|does not exist",
            re.IGNORECASE,
        ),
        summarize=_fixed("File or directory not found"),
    ),
    ClassificationRule(
        kind="compilation_error",
        pattern=re.compile(
            r"error TS\d+|tsc.*error|compilation failed|error\[E\d+\]",
            re.IGNORECASE,
        ),
        summarize=_fixed("Compilation error"),
    ),
    ClassificationRule(
        kind="runtime_error",
        pattern=re.compile(
            r"Error:|Exception:|Traceback|at .* \(.*:\d+:\d+\)",
            re.IGNORECASE,
        ),
        summarize=_fixed("Runtime error"),
    ),
)


class ErrorClassifier:
    """Assign an ``ErrorKind`` to raw failure text, or ``None`` when it holds no error."""

    def __init__(
        self,
        rules: tuple[ClassificationRule, ...] = RULES,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.rules = rules
        self.clock = clock

    def classify(self, raw_output: str, source_command: str) -> ErrorInfo | None:
        context = raw_output[:MAX_CONTEXT_CHARS]
        for rule in self.rules:
            match = rule.pattern.search(raw_output)
            if match:
                return ErrorInfo(
                    kind=rule.kind,
                    message=rule.summarize(match),
                    source=source_command,
                    timestamp=self.clock(),
                    context=context,
                )

        lowered = raw_output.lower()
        if "error" in lowered or "failed" in lowered:
            first_line = raw_output.strip().splitlines()[0] if raw_output.strip() else ""
            return ErrorInfo(
                kind="unknown",
                message=first_line[:MAX_MESSAGE_CHARS],
                source=source_command,
                timestamp=self.clock(),
                context=context,
            )
        return None
