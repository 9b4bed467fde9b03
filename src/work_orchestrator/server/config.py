"""Configuration for the REST server.

Orchestrator behaviour (state path, worker count, timeouts) comes from
:class:`work_orchestrator.orchestrator.config.OrchestratorSettings`; this only
covers HTTP concerns.
"""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServerSettings(BaseSettings):
    """Settings for the REST API."""

    host: str = Field(default="127.0.0.1", validation_alias="ORCHESTRATOR_HOST")
    port: int = Field(default=8000, ge=1, le=65535, validation_alias="ORCHESTRATOR_PORT")

    # Dev-friendly CORS. Override via ORCHESTRATOR_CORS_ORIGINS=...
    cors_origins: str = Field(
        default="http://localhost:5173,http://127.0.0.1:5173",
        validation_alias="ORCHESTRATOR_CORS_ORIGINS",
        description="Comma-separated list of allowed CORS origins.",
    )

    recover_on_startup: bool = Field(
        default=True,
        validation_alias="ORCHESTRATOR_RECOVER_ON_STARTUP",
        description="Re-drive executions left running by a previous process when the app starts.",
    )

    model_config = SettingsConfigDict(env_prefix="", env_file=".env", extra="ignore")

    def parsed_cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]
