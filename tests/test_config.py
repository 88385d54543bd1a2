import json

import pytest

from taskpilot.config import AppConfig

_ENV_VARS = (
    "TASKPILOT_API_KEY",
    "OPENROUTER_API_KEY",
    "TASKPILOT_API_URL",
    "TASKPILOT_MODEL",
    "TASKPILOT_AUTO_APPROVE",
    "TASKPILOT_MAX_RETRIES",
    "TASKPILOT_COMMAND_TIMEOUT",
    "TASKPILOT_REQUEST_TIMEOUT",
    "TASKPILOT_SHELL",
    "TASKPILOT_WORKSPACE",
    "TASKPILOT_LOG_DIR",
    "TASKPILOT_LOG_LEVEL",
    "TASKPILOT_CONFIG_FILE",
)


@pytest.fixture(autouse=True)
def _clean_env(tmp_path, monkeypatch) -> None:
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


def test_defaults_without_files_or_env() -> None:
    config = AppConfig.from_env()

    assert config.api_key is None
    assert config.api_url == "https://openrouter.ai/api/v1"
    assert config.model == "moonshotai/kimi-k2:free"
    assert config.auto_approve is False
    assert config.max_retries == 3
    assert config.command_timeout == 30.0
    assert config.request_timeout == 60.0
    assert config.workspace_root is None
    assert config.log_dir == "logs"
    assert config.log_level == "INFO"


def test_app_config_loads_values_from_file(tmp_path, monkeypatch) -> None:
    config_path = tmp_path / "custom.json"
    config_path.write_text(
        json.dumps(
            {
                "api_key": "file-key",
                "model": "some/model",
                "auto_approve": True,
                "max_retries": 5,
                "command_timeout": 12,
                "shell": "pwsh",
                "workspace": "/srv/project",
                "log_dir": "test-logs",
            }
        ),
        encoding="utf-8",
    )
    monkeypatch.setenv("TASKPILOT_CONFIG_FILE", str(config_path))

    config = AppConfig.from_env()

    assert config.api_key == "file-key"
    assert config.model == "some/model"
    assert config.auto_approve is True
    assert config.max_retries == 5
    assert config.command_timeout == 12.0
    assert config.shell == "pwsh"
    assert config.workspace_root == "/srv/project"
    assert config.log_dir == "test-logs"


def test_env_overrides_file_values(tmp_path, monkeypatch) -> None:
    (tmp_path / "taskpilot.config.json").write_text(
        json.dumps({"model": "file/model", "max_retries": 2, "auto_approve": True}),
        encoding="utf-8",
    )
    monkeypatch.setenv("TASKPILOT_MODEL", "env/model")
    monkeypatch.setenv("TASKPILOT_MAX_RETRIES", "7")
    monkeypatch.setenv("TASKPILOT_AUTO_APPROVE", "no")

    config = AppConfig.from_env()

    assert config.model == "env/model"
    assert config.max_retries == 7
    assert config.auto_approve is False


def test_local_config_overrides_shared_config(tmp_path) -> None:
    (tmp_path / "taskpilot.config.json").write_text(
        json.dumps({"model": "shared/model", "log_dir": "shared-logs"}),
        encoding="utf-8",
    )
    (tmp_path / "taskpilot.config.local.json").write_text(
        json.dumps({"model": "local/model"}),
        encoding="utf-8",
    )

    config = AppConfig.from_env()

    assert config.model == "local/model"
    assert config.log_dir == "shared-logs"


def test_openrouter_key_is_accepted(monkeypatch) -> None:
    monkeypatch.setenv("OPENROUTER_API_KEY", "router-key")

    assert AppConfig.from_env().api_key == "router-key"


def test_invalid_values_fall_back_to_defaults(tmp_path, monkeypatch) -> None:
    (tmp_path / "taskpilot.config.json").write_text("{not json", encoding="utf-8")
    monkeypatch.setenv("TASKPILOT_MAX_RETRIES", "-1")
    monkeypatch.setenv("TASKPILOT_COMMAND_TIMEOUT", "soon")
    monkeypatch.setenv("TASKPILOT_LOG_LEVEL", "chatty")
    monkeypatch.setenv("TASKPILOT_SHELL", "fish")

    config = AppConfig.from_env()

    assert config.max_retries == 3
    assert config.command_timeout == 30.0
    assert config.log_level == "INFO"
    assert config.shell in {"bash", "powershell"}
