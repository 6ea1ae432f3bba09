"""Unit tests for settings loading."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from stage_workflow_orchestrator.orchestrator.config import OrchestratorSettings

_ENV_VARS = (
    "LOG_LEVEL",
    "WORKFLOW_STATE_PATH",
    "WORKFLOW_TEMPLATES_PATH",
    "WORKFLOW_RETRY_MAX_ATTEMPTS",
    "WORKFLOW_RETRY_INITIAL_INTERVAL_SECONDS",
    "WORKFLOW_RETRY_MAXIMUM_INTERVAL_SECONDS",
    "WORKFLOW_NOTIFICATION_WEBHOOK_URL",
    "WORKFLOW_DEFAULT_RECIPIENTS",
)


@pytest.fixture
def clean_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    return tmp_path


def test_settings_defaults(clean_env: Path) -> None:
    settings = OrchestratorSettings()

    assert settings.log_level == "INFO"
    assert settings.state_path == Path("workflow_state")
    assert settings.instances_dir == Path("workflow_state") / "instances"
    assert settings.subjects_file == Path("workflow_state") / "subjects.json"
    assert settings.notification_webhook_url == ""
    assert settings.parsed_default_recipients() == []


def test_settings_loads_from_dotenv(clean_env: Path) -> None:
    (clean_env / ".env").write_text(
        "\n".join(
            [
                "LOG_LEVEL=DEBUG",
                "WORKFLOW_STATE_PATH=/var/lib/workflows",
                "WORKFLOW_DEFAULT_RECIPIENTS=a@example.com, ,b@example.com",
                "",
            ]
        ),
        encoding="utf-8",
    )

    settings = OrchestratorSettings()

    assert settings.log_level == "DEBUG"
    assert settings.instances_dir == Path("/var/lib/workflows/instances")
    assert settings.parsed_default_recipients() == ["a@example.com", "b@example.com"]


def test_environment_overrides_retry_policy(
    clean_env: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("WORKFLOW_RETRY_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("WORKFLOW_RETRY_INITIAL_INTERVAL_SECONDS", "2")

    policy = OrchestratorSettings().retry_policy()

    assert policy.max_attempts == 5
    assert policy.backoff(1) == 2.0
    assert policy.backoff(10) == 60.0


def test_maximum_interval_below_initial_is_rejected(
    clean_env: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("WORKFLOW_RETRY_INITIAL_INTERVAL_SECONDS", "30")
    monkeypatch.setenv("WORKFLOW_RETRY_MAXIMUM_INTERVAL_SECONDS", "5")

    with pytest.raises(ValidationError):
        OrchestratorSettings()


def test_zero_attempts_is_rejected(clean_env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("WORKFLOW_RETRY_MAX_ATTEMPTS", "0")
    with pytest.raises(ValidationError):
        OrchestratorSettings()
