"""Configuration for the runbook engine.

Configuration is loaded from:
- environment variables
- and a local `.env` file (if present)
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

RunMode = Literal["real", "dry-run", "replay"]

MAX_INVOKE_DEPTH = 5


class EngineSettings(BaseSettings):
    """Settings shared by the CLI and the HTTP server.

    Environment variables:
    - RUNBOOK_RUNS_DIR                 (optional)
    - RUNBOOK_MAX_INVOKE_DEPTH         (optional)
    - RUNBOOK_LOG_LEVEL                (optional)
    - RUNBOOK_DEFAULT_MODE             (optional)
    - RUNBOOK_COMMAND_TIMEOUT_SECONDS  (optional)

    Notes:
        Pydantic-settings supports overriding the env file in tests via:
        `EngineSettings(_env_file=path_to_env)`.
    """

    runs_dir: Path = Field(
        default=Path(".runbook/runs"),
        validation_alias="RUNBOOK_RUNS_DIR",
        description="Directory holding one sub-directory (with session.json) per run",
    )

    max_invoke_depth: int = Field(
        default=MAX_INVOKE_DEPTH,
        validation_alias="RUNBOOK_MAX_INVOKE_DEPTH",
        description="Maximum nesting of invoke steps before the run fails",
        ge=1,
        le=32,
    )

    log_level: str = Field(
        default="INFO",
        validation_alias="RUNBOOK_LOG_LEVEL",
        description="Root logging level",
    )

    default_mode: RunMode = Field(
        default="dry-run",
        validation_alias="RUNBOOK_DEFAULT_MODE",
        description="Execution mode used when a start request does not name one",
    )

    command_timeout_seconds: float | None = Field(
        default=None,
        validation_alias="RUNBOOK_COMMAND_TIMEOUT_SECONDS",
        description="Timeout applied to commands whose step and workflow declare none",
        gt=0,
    )

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @model_validator(mode="after")
    def _normalise_log_level(self) -> EngineSettings:
        level = self.log_level.strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"RUNBOOK_LOG_LEVEL has unsupported value: {self.log_level!r}")
        self.log_level = level
        return self

    def run_dir(self, run_id: str) -> Path:
        """Directory where a run's session and artefacts are persisted."""

        return self.runs_dir / run_id
