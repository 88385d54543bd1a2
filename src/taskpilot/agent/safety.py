"""Dangerous-action policy and operator approval."""

from __future__ import annotations

import logging
import re
from collections.abc import Callable

from taskpilot.agent.models import PlanStep
from taskpilot.shell.base import sanitize_command

LOGGER = logging.getLogger(__name__)

ConfirmAction = Callable[[str], bool]

OPERATION_CANCELLED = "Operation cancelled by user"

_DESTRUCTIVE_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"\brm\s+-[a-z]*r[a-z]*\b",
        r"\bdel\s+/[sfq]",
        r"\bformat\b",
        r"\bmkfs\b",
        r"\bdd\s+if=",
        r"\bdd\b.*\bof=/dev/",
        r">\s*/dev/[sh]d",
        r"\bsudo\b",
        r"\bchmod\s+(-R\s+)?777\b",
        r"\bchown\s+-R\b",
        r":\s*\(\)\s*\{",
        r"\beval\s*\(",
        r"\bcurl\b.*\|\s*(ba)?sh\b",
        r"\bwget\b.*\|\s*(ba)?sh\b",
        r"\bremove-item\b.*-recurse",
        r"\bdrop\s+table\b",
    )
]


def is_dangerous_command(command: str) -> bool:
    """Return true when a command matches destructive command heuristics."""
    return any(pattern.search(command) for pattern in _DESTRUCTIVE_PATTERNS)


def confirmation_message(step: PlanStep) -> str | None:
    """Describe why a step needs approval, or ``None`` if it does not."""
    if step.action == "delete_file":
        return f"Delete file: {step.parameters.get('path')}?"
    if step.action == "execute_command":
        command = step.parameters.get("command")
        if isinstance(command, str) and is_dangerous_command(command):
            return f"Execute potentially dangerous command: {command}?"
    return None


class ActionGate:
    def __init__(self, *, auto_approve: bool = False, confirm: ConfirmAction | None = None) -> None:
        self.auto_approve = auto_approve
        self.confirm = confirm

    def approve(self, step: PlanStep) -> bool:
        message = confirmation_message(step)
        if message is None:
            return True
        if self.auto_approve:
            LOGGER.info("dangerous_action_auto_approved", extra={"action": step.action})
            return True
        # Without an operator to ask, gated actions are declined.
        try:
            approved = bool(self.confirm and self.confirm(message))
        except Exception as exc:
            LOGGER.warning(
                "dangerous_action_prompt_failed",
                extra={"action": step.action, "error": str(exc)},
            )
            approved = False
        LOGGER.info(
            "dangerous_action_decision",
            extra={
                "action": step.action,
                "approved": approved,
                "prompt": sanitize_command(message),
            },
        )
        return approved
