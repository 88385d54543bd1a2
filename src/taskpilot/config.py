"""Application settings from JSON config files and ``TASKPILOT_*`` variables."""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import TypeVar

from taskpilot.llm.client import DEFAULT_API_URL, DEFAULT_MODEL
from taskpilot.shell import default_shell_name

LOGGER = logging.getLogger(__name__)

SHARED_CONFIG_FILE = "taskpilot.config.json"
LOCAL_CONFIG_FILE = "taskpilot.config.local.json"

_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})
_SHELL_ALIASES = {"bash": "bash", "sh": "sh", "shell": "bash", "powershell": "powershell", "pwsh": "pwsh"}
_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off"})

_Number = TypeVar("_Number", int, float)


@dataclass(slots=True)
class AppConfig:
    """Runtime settings; environment variables win over config files."""

    api_key: str | None
    api_url: str
    model: str
    auto_approve: bool
    max_retries: int
    command_timeout: float
    request_timeout: float
    shell: str
    workspace_root: str | None
    log_dir: str
    log_level: str

    @classmethod
    def from_env(cls) -> AppConfig:
        file_config = _load_config_files()

        def setting(file_key: str, *env_names: str) -> object:
            for env_name in env_names:
                value = os.getenv(env_name)
                if value is not None and value.strip():
                    return value
            return file_config.get(file_key)

        return cls(
            api_key=_text(setting("api_key", "TASKPILOT_API_KEY", "OPENROUTER_API_KEY")),
            api_url=_text(setting("api_url", "TASKPILOT_API_URL")) or DEFAULT_API_URL,
            model=_text(setting("model", "TASKPILOT_MODEL")) or DEFAULT_MODEL,
            auto_approve=_flag(setting("auto_approve", "TASKPILOT_AUTO_APPROVE")),
            max_retries=_positive(setting("max_retries", "TASKPILOT_MAX_RETRIES"), int, 3),
            command_timeout=_positive(
                setting("command_timeout", "TASKPILOT_COMMAND_TIMEOUT"), float, 30.0
            ),
            request_timeout=_positive(
                setting("request_timeout", "TASKPILOT_REQUEST_TIMEOUT"), float, 60.0
            ),
            shell=_SHELL_ALIASES.get(
                (_text(setting("shell", "TASKPILOT_SHELL")) or "").lower(),
                default_shell_name(),
            ),
            workspace_root=_text(setting("workspace", "TASKPILOT_WORKSPACE")),
            log_dir=_text(setting("log_dir", "TASKPILOT_LOG_DIR")) or "logs",
            log_level=_log_level(setting("log_level", "TASKPILOT_LOG_LEVEL")),
        )


def _load_config_files() -> dict[str, object]:
    """Read the explicit config file, or the shared file overlaid by the local one."""
    explicit_path = os.getenv("TASKPILOT_CONFIG_FILE")
    if explicit_path:
        return _read_json_object(Path(explicit_path))
    return {
        **_read_json_object(Path(SHARED_CONFIG_FILE)),
        **_read_json_object(Path(LOCAL_CONFIG_FILE)),
    }


def _read_json_object(path: Path) -> dict[str, object]:
    if not path.is_file():
        return {}
    try:
        parsed = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        LOGGER.warning("config_file_unreadable", extra={"path": str(path), "error": str(exc)})
        return {}
    if not isinstance(parsed, Mapping):
        LOGGER.warning("config_file_not_an_object", extra={"path": str(path)})
        return {}
    return {str(key): value for key, value in parsed.items()}


def _text(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _flag(value: object) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in _TRUE_VALUES:
            return True
        if normalized in _FALSE_VALUES:
            return False
    return False


def _log_level(value: object) -> str:
    level = (_text(value) or "").upper()
    return level if level in _LOG_LEVELS else "INFO"


def _positive(value: object, cast: Callable[[str], _Number], default: _Number) -> _Number:
    """Coerce ``value`` to a positive number, falling back to ``default``."""
    if isinstance(value, bool) or value is None:
        return default
    try:
        parsed = cast(value.strip()) if isinstance(value, str) else cast(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default
    return parsed if parsed > 0 else default
