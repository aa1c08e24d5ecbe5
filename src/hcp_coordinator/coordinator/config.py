"""Configuration for the coordinator core.

Configuration is loaded from:
- environment variables
- and a local `.env` file (if present)

Nothing is required at startup. Without `SLACK_BOT_TOKEN` the Slack channel is
simply not configured and requests routed to it are still reachable through the
portal.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class CoordinatorSettings(BaseSettings):
    """Settings for the lifecycle core.

    Environment variables:
    - HCP_DB_PATH                        (optional)
    - HCP_BASE_URL                       (optional)
    - SLACK_BOT_TOKEN / SLACK_API_URL    (optional)
    - LOG_LEVEL                          (optional)
    - HCP_TIMEOUT_POLL_INTERVAL_SECONDS  (optional)
    - HCP_SCHEDULER_MAX_WORKERS          (optional)
    - HCP_STORE_BUSY_TIMEOUT_MS          (optional)

    Notes:
        Pydantic-settings supports overriding the env file in tests via:
        `CoordinatorSettings(_env_file=path_to_env)`.
    """

    db_path: str = Field(
        default="~/.hcp/hcp.db",
        validation_alias="HCP_DB_PATH",
        description="SQLite database file (or ':memory:')",
    )
    base_url: str = Field(
        default="http://localhost:3100",
        validation_alias="HCP_BASE_URL",
        description="Public base URL, used for portal links in notifications",
    )

    slack_bot_token: str = Field(
        default="",
        validation_alias="SLACK_BOT_TOKEN",
        description="Slack bot token; empty disables the Slack channel",
    )
    slack_api_url: str = Field(
        default="https://slack.com/api",
        validation_alias="SLACK_API_URL",
        description="Slack Web API base URL",
    )

    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Root logging level",
    )

    timeout_poll_interval_seconds: float = Field(
        default=10.0,
        gt=0,
        validation_alias="HCP_TIMEOUT_POLL_INTERVAL_SECONDS",
        description=(
            "How often the timeout scheduler scans for expired requests. Fallbacks are "
            "applied at most one interval after the deadline."
        ),
    )
    scheduler_max_workers: int = Field(
        default=4,
        ge=1,
        le=64,
        validation_alias="HCP_SCHEDULER_MAX_WORKERS",
        description="Worker threads used to apply fallbacks within one scan",
    )
    busy_timeout_ms: int = Field(
        default=5000,
        ge=0,
        validation_alias="HCP_STORE_BUSY_TIMEOUT_MS",
        description="SQLite busy timeout when another process holds the write lock",
    )

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def resolved_db_path(self) -> str:
        """Database path with `~` expanded; `:memory:` is passed through."""

        if self.db_path == ":memory:":
            return self.db_path
        return str(Path(self.db_path).expanduser())

    @property
    def slack_configured(self) -> bool:
        return bool(self.slack_bot_token.strip())
