"""Configuration for TaskFlow.

Configuration is loaded from:
- environment variables
- and a local `.env` file (if present)

To avoid collisions with other tools that may also use `GITHUB_TOKEN`, the
default token is read from a dedicated variable: `TASKFLOW_GITHUB_TOKEN`.
Per-repository credentials live in the repository registry.
"""

from __future__ import annotations

from pathlib import Path

from platformdirs import user_data_dir
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_state_path() -> Path:
    return Path(user_data_dir("taskflow", appauthor=False))


class TaskflowSettings(BaseSettings):
    """Settings for the TaskFlow CLI and sync engine.

    Environment variables:
    - TASKFLOW_GITHUB_TOKEN   (optional; default credential)
    - GITHUB_BASE_URL         (optional)
    - LOG_LEVEL               (optional)
    - TASKFLOW_STATE_PATH     (optional)

    Notes:
        Pydantic-settings supports overriding the env file in tests via:
        `TaskflowSettings(_env_file=path_to_env)`.
    """

    github_token: str = Field(
        default="",
        validation_alias="TASKFLOW_GITHUB_TOKEN",
        description="Default GitHub token for repositories without their own credential",
    )
    github_base_url: str = Field(
        default="https://api.github.com",
        validation_alias="GITHUB_BASE_URL",
        description="GitHub API base URL (useful for GitHub Enterprise)",
    )

    log_level: str = Field(
        default="WARNING",
        validation_alias="LOG_LEVEL",
        description="Root logging level",
    )

    state_path: Path = Field(
        default_factory=_default_state_path,
        validation_alias="TASKFLOW_STATE_PATH",
        description="Directory where tasks and repositories are persisted",
    )

    sync_max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        validation_alias="TASKFLOW_SYNC_MAX_ATTEMPTS",
        description="Attempts per repository before a transient failure is reported",
    )
    sync_retry_backoff_seconds: float = Field(
        default=2.0,
        ge=0,
        validation_alias="TASKFLOW_SYNC_RETRY_BACKOFF_SECONDS",
        description="Base delay before retrying an unreachable remote (multiplied by attempt)",
    )
    sync_max_retry_after_seconds: float = Field(
        default=300.0,
        ge=0,
        validation_alias="TASKFLOW_SYNC_MAX_RETRY_AFTER_SECONDS",
        description="Upper bound on how long to honour a rate-limit retry-after",
    )
    sync_workers: int = Field(
        default=4,
        ge=1,
        le=32,
        validation_alias="TASKFLOW_SYNC_WORKERS",
        description="Repositories synced concurrently",
    )
    request_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        validation_alias="TASKFLOW_REQUEST_TIMEOUT_SECONDS",
    )
    import_closed_issues: bool = Field(
        default=False,
        validation_alias="TASKFLOW_IMPORT_CLOSED_ISSUES",
        description="Import closed remote issues that have no local task (as done)",
    )

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def tasks_file(self) -> Path:
        """Path where tasks are persisted."""

        return self.state_path / "tasks.json"

    @property
    def repositories_file(self) -> Path:
        """Path where the repository registry is persisted."""

        return self.state_path / "repositories.json"
