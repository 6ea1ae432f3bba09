"""Configuration for the workflow orchestrator.

Configuration is loaded from:
- environment variables
- and a local `.env` file (if present)
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from stage_workflow_orchestrator.orchestrator.workflow.policy import RetryPolicy


class OrchestratorSettings(BaseSettings):
    """Settings for the workflow orchestrator.

    Environment variables:
    - LOG_LEVEL                                (optional)
    - WORKFLOW_STATE_PATH                      (optional)
    - WORKFLOW_TEMPLATES_PATH                  (optional)
    - WORKFLOW_RETRY_MAX_ATTEMPTS              (optional)
    - WORKFLOW_RETRY_INITIAL_INTERVAL_SECONDS  (optional)
    - WORKFLOW_RETRY_BACKOFF_COEFFICIENT       (optional)
    - WORKFLOW_RETRY_MAXIMUM_INTERVAL_SECONDS  (optional)
    - WORKFLOW_SIGNAL_WORKERS                  (optional)
    - WORKFLOW_ACTIVITY_WORKERS                (optional)
    - WORKFLOW_TIMER_POLL_SECONDS              (optional)
    - WORKFLOW_NOTIFICATION_WEBHOOK_URL        (optional)
    - WORKFLOW_NOTIFICATION_TIMEOUT_SECONDS    (optional)
    - WORKFLOW_DEFAULT_RECIPIENTS              (optional, comma-separated)

    Notes:
        Pydantic-settings supports overriding the env file in tests via:
        `OrchestratorSettings(_env_file=path_to_env)`.
    """

    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Root logging level",
    )

    state_path: Path = Field(
        default=Path("workflow_state"),
        validation_alias="WORKFLOW_STATE_PATH",
        description="Directory where instance state, audit ledgers and subject records live",
    )
    templates_path: Path = Field(
        default=Path("workflow_templates"),
        validation_alias="WORKFLOW_TEMPLATES_PATH",
        description="Directory of <template_id>.json files; built-in presets are the fallback",
    )

    retry_max_attempts: int = Field(
        default=3, ge=1, validation_alias="WORKFLOW_RETRY_MAX_ATTEMPTS"
    )
    retry_initial_interval_seconds: float = Field(
        default=10.0, ge=0, validation_alias="WORKFLOW_RETRY_INITIAL_INTERVAL_SECONDS"
    )
    retry_backoff_coefficient: float = Field(
        default=2.0, ge=1, validation_alias="WORKFLOW_RETRY_BACKOFF_COEFFICIENT"
    )
    retry_maximum_interval_seconds: float = Field(
        default=60.0, ge=0, validation_alias="WORKFLOW_RETRY_MAXIMUM_INTERVAL_SECONDS"
    )

    signal_workers: int = Field(
        default=4,
        ge=1,
        validation_alias="WORKFLOW_SIGNAL_WORKERS",
        description="Threads draining instance mailboxes",
    )
    activity_workers: int = Field(
        default=4,
        ge=0,
        validation_alias="WORKFLOW_ACTIVITY_WORKERS",
        description="Threads for background activities; 0 runs them inline",
    )
    timer_poll_seconds: float = Field(
        default=30.0, gt=0, validation_alias="WORKFLOW_TIMER_POLL_SECONDS"
    )

    notification_webhook_url: str = Field(
        default="",
        validation_alias="WORKFLOW_NOTIFICATION_WEBHOOK_URL",
        description="If set, notifications are POSTed here; otherwise they are logged",
    )
    notification_timeout_seconds: float = Field(
        default=10.0, gt=0, validation_alias="WORKFLOW_NOTIFICATION_TIMEOUT_SECONDS"
    )
    default_recipients: str = Field(
        default="",
        validation_alias="WORKFLOW_DEFAULT_RECIPIENTS",
        description="Comma-separated recipients used when start() is given none",
    )

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @model_validator(mode="after")
    def _check_retry_intervals(self) -> OrchestratorSettings:
        if self.retry_maximum_interval_seconds < self.retry_initial_interval_seconds:
            raise ValueError(
                "WORKFLOW_RETRY_MAXIMUM_INTERVAL_SECONDS must be >= "
                "WORKFLOW_RETRY_INITIAL_INTERVAL_SECONDS"
            )
        return self

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.retry_max_attempts,
            initial_interval=self.retry_initial_interval_seconds,
            backoff_coefficient=self.retry_backoff_coefficient,
            maximum_interval=self.retry_maximum_interval_seconds,
        )

    def parsed_default_recipients(self) -> list[str]:
        parts = [p.strip() for p in self.default_recipients.split(",")]
        return [p for p in parts if p]

    @property
    def instances_dir(self) -> Path:
        """Directory holding one JSON document per instance."""

        return self.state_path / "instances"

    @property
    def subjects_file(self) -> Path:
        return self.state_path / "subjects.json"
