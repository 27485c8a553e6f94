from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from narratrix.logging import get_logger

logger = get_logger(__name__)


class RunPolicy(str, Enum):
    """What the trigger manager does when an agent is triggered while one of
    its runs is still in flight.

    - SKIP: drop the new trigger (the in-flight run keeps going)
    - PARALLEL: start another run with its own execution context
    """

    SKIP = "skip"
    PARALLEL = "parallel"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the agent workflow core."""

    script_timeout_seconds: float | None = env_field(
        30.0,
        "SCRIPT_TIMEOUT_SECONDS",
        description="Deadline for one script node; empty disables it. Only interrupts scripts at await points.",
    )
    max_script_log_entries: int = env_field(
        200,
        "MAX_SCRIPT_LOG_ENTRIES",
        description="Captured console lines kept per script invocation (oldest dropped)",
    )
    inference_timeout_seconds: float = env_field(
        60.0,
        "INFERENCE_TIMEOUT_SECONDS",
        description="Upper bound on one agent-node inference call",
    )
    trigger_workers: int = env_field(
        4,
        "TRIGGER_WORKERS",
        description="Worker threads used to start runs when no event loop is running",
    )
    run_policy: RunPolicy = env_field(RunPolicy.SKIP, "AGENT_RUN_POLICY")
    default_message_threshold: int = env_field(
        5,
        "DEFAULT_MESSAGE_THRESHOLD",
        description="Message count used by every_x_messages triggers without an explicit count",
    )
    max_trace_entries: int = env_field(500, "MAX_TRACE_ENTRIES")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("script_timeout_seconds", mode="before")
    @classmethod
    def _blank_timeout_disables(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("script_timeout_seconds", "inference_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, value: float | None) -> float | None:
        if value is not None and value <= 0:
            raise ValueError("timeouts must be positive")
        return value

    @field_validator("trigger_workers", "max_script_log_entries", "default_message_threshold")
    @classmethod
    def _at_least_one(cls, value: int) -> int:
        if value < 1:
            logger.warning("settings_value_clamped", value=value, minimum=1)
            return 1
        return value

    @field_validator("run_policy")
    @classmethod
    def _validate_run_policy(cls, value: RunPolicy) -> RunPolicy:
        return RunPolicy(value)


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
