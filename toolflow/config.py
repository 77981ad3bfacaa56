from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from toolflow.logging import get_logger

logger = get_logger(__name__)


class AdapterMode(str, Enum):
    """Backend pairing selected at startup.

    - LOCAL: tool daemon called directly, relational store via Postgres
    - CLOUD: tool calls routed through the remote gateway, records kept in the
      remote data API
    """

    LOCAL = "local"
    CLOUD = "cloud"


def parse_adapter_mode(value: Any) -> AdapterMode:
    """Resolve a mode string, falling back to LOCAL for unknown values."""
    if isinstance(value, AdapterMode):
        return value
    normalized = str(value or "").strip().lower()
    # "supabase" was the historical name of the cloud pairing
    if normalized == "supabase":
        return AdapterMode.CLOUD
    try:
        return AdapterMode(normalized)
    except ValueError:
        logger.warning(
            "adapter_mode_invalid",
            value=str(value),
            fallback=AdapterMode.LOCAL.value,
        )
        return AdapterMode.LOCAL


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the orchestration service."""

    adapter_mode: AdapterMode = env_field(AdapterMode.LOCAL, "ADAPTER_MODE")
    exai_daemon_url: str = env_field("http://127.0.0.1:8765", "EXAI_DAEMON_URL")
    exai_cloud_url: str | None = env_field(
        None,
        "EXAI_CLOUD_URL",
        description="Remote tool gateway; defaults to EXAI_DAEMON_URL when unset",
    )
    exai_gateway_api_key: str | None = env_field(None, "EXAI_GATEWAY_API_KEY")
    tool_timeout_seconds: float = env_field(
        300.0,
        "TOOL_TIMEOUT_SECONDS",
        gt=0,
        description="Upper bound for a single tool invocation",
    )
    tool_connect_timeout_seconds: float = env_field(
        10.0, "TOOL_CONNECT_TIMEOUT_SECONDS", gt=0
    )
    tool_health_timeout_seconds: float = env_field(
        5.0, "TOOL_HEALTH_TIMEOUT_SECONDS", gt=0
    )

    database_url: str = env_field(
        "postgresql://localhost:5432/toolflow", "DATABASE_URL"
    )
    remote_store_url: str | None = env_field(None, "REMOTE_STORE_URL")
    remote_store_key: str | None = env_field(None, "REMOTE_STORE_KEY")
    remote_store_timeout_seconds: float = env_field(
        15.0, "REMOTE_STORE_TIMEOUT_SECONDS", gt=0
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")

    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Relaxes Redis requirements and enables runtime resets in tests",
    )

    session_ttl_minutes: int = env_field(60 * 24 * 7, "SESSION_TTL_MINUTES", ge=1)
    session_sweep_interval_seconds: int = env_field(
        3600, "SESSION_SWEEP_INTERVAL_SECONDS", ge=1
    )
    workflow_lock_wait_seconds: float = env_field(
        30.0, "WORKFLOW_LOCK_WAIT_SECONDS", gt=0
    )
    workflow_lock_ttl_seconds: int = env_field(60, "WORKFLOW_LOCK_TTL_SECONDS", ge=1)
    step_rate_limit_per_minute: int = env_field(60, "STEP_RATE_LIMIT_PER_MINUTE")
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")

    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(False, "CORS_ALLOW_CREDENTIALS")
    build_sha: str = env_field("dev", "BUILD_SHA")

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

    @field_validator("adapter_mode", mode="before")
    @classmethod
    def _validate_adapter_mode(cls, value: Any) -> AdapterMode:
        return parse_adapter_mode(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> list[str]:
        if value is None or value == "":
            return []
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return list(value)

    @field_validator("exai_daemon_url", "exai_cloud_url", "remote_store_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str | None) -> str | None:
        return value.rstrip("/") if value else value

    @model_validator(mode="after")
    def _default_cloud_url(self) -> "Settings":
        if not self.exai_cloud_url:
            self.exai_cloud_url = self.exai_daemon_url
        return self


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
