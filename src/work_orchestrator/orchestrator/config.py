"""Configuration for the work orchestrator.

Configuration is loaded from:
- environment variables
- and a local `.env` file (if present)

Everything has a working default so the CLI and the API run out of the box
against a local `agent_state/` directory.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


class OrchestratorSettings(BaseSettings):
    """Settings for the transition ledger and chain engine.

    Environment variables:
    - LOG_LEVEL                          (optional)
    - ORCHESTRATOR_STATE_PATH            (optional)
    - ORCHESTRATOR_WORKER_COUNT          (optional)
    - ORCHESTRATOR_STEP_TIMEOUT_SECONDS  (optional, 0 disables the timeout)
    - ORCHESTRATOR_PARALLEL_STEP_LIMIT   (optional)
    - ORCHESTRATOR_MAX_CONFLICT_RETRIES  (optional)

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
        default=Path("agent_state"),
        validation_alias="ORCHESTRATOR_STATE_PATH",
        description="Directory where subjects, chains and executions are persisted",
    )

    worker_count: int = Field(
        default=4,
        ge=1,
        validation_alias="ORCHESTRATOR_WORKER_COUNT",
        description="Background threads driving chain executions",
    )

    step_timeout_seconds: float = Field(
        default=300.0,
        ge=0,
        validation_alias="ORCHESTRATOR_STEP_TIMEOUT_SECONDS",
        description="Upper bound on a single agent step",
    )

    parallel_step_limit: int = Field(
        default=4,
        ge=1,
        validation_alias="ORCHESTRATOR_PARALLEL_STEP_LIMIT",
        description="Max concurrent steps within one parallel group",
    )

    max_conflict_retries: int = Field(
        default=3,
        ge=0,
        validation_alias="ORCHESTRATOR_MAX_CONFLICT_RETRIES",
        description="Retries when an execution record changes underneath an advance",
    )

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def _known_log_level(cls, value: str) -> str:
        level = value.strip().upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"LOG_LEVEL must be one of {sorted(_LOG_LEVELS)}")
        return level

    @property
    def subjects_file(self) -> Path:
        return self.state_path / "subjects.json"

    @property
    def transitions_file(self) -> Path:
        return self.state_path / "transitions.json"

    @property
    def chains_file(self) -> Path:
        return self.state_path / "chains.json"

    @property
    def triggers_file(self) -> Path:
        return self.state_path / "triggers.json"

    @property
    def executions_file(self) -> Path:
        return self.state_path / "executions.json"

    @property
    def execution_steps_file(self) -> Path:
        return self.state_path / "execution_steps.json"

    @property
    def pause_gates_file(self) -> Path:
        return self.state_path / "pause_gates.json"


class LLMConfig(BaseSettings):
    """Configuration for the LLM provider backing agent steps."""

    provider: Literal["openai"] = Field(
        default="openai",
        description="LLM provider to use",
    )

    openai_api_key: str | None = Field(
        default=None,
        description="OpenAI API key",
    )
    openai_model: str = Field(
        default="gpt-4o-mini",
        description="OpenAI model to use",
    )
    openai_temperature: float = Field(
        default=0.2,
        ge=0.0,
        le=2.0,
        description="Temperature for OpenAI model",
    )
    max_tokens: int | None = Field(
        default=None,
        gt=0,
        description="Optional completion token cap per agent step",
    )

    model_config = SettingsConfigDict(
        env_prefix="ORCHESTRATOR_LLM_",
        env_file=".env",
        extra="ignore",
    )
