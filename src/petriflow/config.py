"""Configuration for the firing engine.

Configuration is loaded from:
- environment variables
- and a local `.env` file (if present)
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    """Settings for the workflow runtime.

    Environment variables:
    - LOG_LEVEL                 (optional)
    - PETRIFLOW_STATE_PATH      (optional)
    - PETRIFLOW_CONFLICT_WARN_INTERVAL  (optional)

    Notes:
        Pydantic-settings supports overriding the env file in tests via:
        `EngineSettings(_env_file=path_to_env)`.
    """

    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Root logging level",
    )

    state_path: Path | None = Field(
        default=None,
        validation_alias="PETRIFLOW_STATE_PATH",
        description=(
            "JSON file holding workflow definitions and markings. "
            "When unset, the runtime keeps everything in memory."
        ),
    )

    conflict_warn_interval: int = Field(
        default=5,
        ge=1,
        validation_alias="PETRIFLOW_CONFLICT_WARN_INTERVAL",
        description=(
            "Conflicting enablement commits are always re-evaluated; "
            "every Nth consecutive conflict is logged as a warning"
        ),
    )

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )
