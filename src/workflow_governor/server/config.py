"""Configuration for the REST adapter."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServerSettings(BaseSettings):
    """Settings for the REST API.

    The workflow configuration itself (storage path, thresholds, rules) comes
    from :class:`workflow_governor.core.config.GovernorConfig`.
    """

    default_actor: str = Field(
        default="api",
        validation_alias="GOVERNOR_API_DEFAULT_ACTOR",
        description="Actor recorded in history when a request does not name one.",
    )

    # Dev-friendly CORS. Override via GOVERNOR_CORS_ORIGINS=...
    cors_origins: str = Field(
        default="http://localhost:5173,http://127.0.0.1:5173",
        validation_alias="GOVERNOR_CORS_ORIGINS",
        description="Comma-separated list of allowed CORS origins.",
    )

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )

    def parsed_cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]
