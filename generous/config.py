from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from generous.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the workflow service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/generous", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/generous", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow in-memory fallbacks and deterministic behaviour for CI runs.",
    )
    tool_executor_url: str = env_field(
        "http://localhost:3000",
        "TOOL_EXECUTOR_URL",
        description="Base URL of the service exposing /api/registry-execute",
    )
    tool_executor_timeout: float = env_field(
        30.0,
        "TOOL_EXECUTOR_TIMEOUT",
        description="Transport timeout in seconds for a single tool invocation",
    )
    stale_execution_seconds: int = env_field(
        3600,
        "STALE_EXECUTION_SECONDS",
        description="Executions left in 'running' longer than this are marked failed on read",
    )
    cron_secret: str | None = env_field(None, "CRON_SECRET")
    cors_allow_origins: str = env_field(
        "http://localhost:3000",
        "CORS_ALLOW_ORIGINS",
        description="Comma separated list of allowed CORS origins",
    )
    session_ttl_minutes: int = env_field(60 * 24, "SESSION_TTL_MINUTES")

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

    @field_validator("redis_url", "cron_secret")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None or not str(value).strip():
            return None
        return value

    @field_validator("stale_execution_seconds")
    @classmethod
    def _positive_staleness(cls, value: int) -> int:
        if value <= 0:
            logger.warning("stale_execution_seconds_invalid", value=value)
            return 3600
        return value

    @property
    def allowed_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_allow_origins.split(",") if o.strip()]


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
