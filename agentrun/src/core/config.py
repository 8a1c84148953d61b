"""Runtime settings.

Settings are a pydantic-settings model: every field can be supplied through an
``AGENTRUN_<FIELD>`` environment variable, and values passed explicitly (or read
from a JSON settings file) take precedence over the environment.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


ENV_PREFIX = "AGENTRUN_"

DEFAULT_TIMEOUT_MS = 30000
MAX_CHILD_FRACTION = 0.5


class RuntimeSettings(BaseSettings):
    """Tunables shared by every episode executed in one process."""

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_ignore_empty=True,
        extra="forbid",
        validate_assignment=True,
    )

    default_timeout_ms: float = Field(default=DEFAULT_TIMEOUT_MS, gt=0)
    warning_threshold: float = Field(default=0.7)
    max_child_fraction: float = Field(default=MAX_CHILD_FRACTION, gt=0)
    min_child_tokens: int = Field(default=1, ge=0)
    min_child_time_ms: float = Field(default=1000, ge=0)
    min_child_tool_calls: int = Field(default=1, ge=0)
    max_concurrent_tool_calls_per_client: int = Field(default=8, ge=1)
    telemetry_path: Optional[Path] = None
    database_path: Optional[Path] = None
    log_level: str = "INFO"

    @field_validator("warning_threshold")
    @classmethod
    def _validate_threshold(cls, value: float) -> float:
        if not 0 < value <= 1:
            raise ValueError("warning_threshold must be within (0, 1]")
        return value

    @field_validator("max_child_fraction")
    @classmethod
    def _validate_fraction(cls, value: float) -> float:
        if value > MAX_CHILD_FRACTION:
            raise ValueError(f"max_child_fraction cannot exceed {MAX_CHILD_FRACTION}")
        return value

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, value: str) -> str:
        level = str(value).upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {value}")
        return level

    @classmethod
    def from_file(cls, path: Path | str) -> "RuntimeSettings":
        """Load a JSON object of settings; fields it leaves out still come from the environment."""

        payload = json.loads(Path(path).read_text(encoding="utf-8"))
        if not isinstance(payload, dict):
            raise ValueError("settings file must contain a JSON object")
        return cls(**payload)

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        """Defaults overridden by ``AGENTRUN_*`` variables, e.g. ``AGENTRUN_LOG_LEVEL``."""

        return cls()


__all__ = ["DEFAULT_TIMEOUT_MS", "ENV_PREFIX", "MAX_CHILD_FRACTION", "RuntimeSettings"]
