"""Configuration for the HTTP server.

Lifecycle settings (database, Slack, polling) live in
:class:`hcp_coordinator.coordinator.config.CoordinatorSettings`; this module only
covers what the HTTP layer needs on top.
"""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServerSettings(BaseSettings):
    host: str = Field(default="0.0.0.0", validation_alias="HCP_HOST")
    port: int = Field(default=3100, ge=1, le=65535, validation_alias="HCP_PORT")

    timeout_scheduler_enabled: bool = Field(
        default=True,
        validation_alias="HCP_TIMEOUT_SCHEDULER_ENABLED",
        description=(
            "If true, the app lifespan starts the timeout scheduler. Disable it when another "
            "process (for example a cron-driven `hcp scan-timeouts`) owns fallback handling."
        ),
    )
    sse_keepalive_seconds: float = Field(
        default=15.0,
        gt=0,
        validation_alias="HCP_SSE_KEEPALIVE_SECONDS",
        description="Idle interval after which the event stream sends a keep-alive comment.",
    )

    # Dev-friendly CORS for a local portal. Override via HCP_CORS_ORIGINS=...
    cors_origins: str = Field(
        default="http://localhost:5173,http://127.0.0.1:5173",
        validation_alias="HCP_CORS_ORIGINS",
        description="Comma-separated list of allowed CORS origins.",
    )

    model_config = SettingsConfigDict(env_prefix="", env_file=".env", extra="ignore")

    def parsed_cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]
