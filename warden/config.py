from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from warden.logging import get_logger
from warden.service.durations import parse_duration

logger = get_logger(__name__)

# Minimum reasonable HMAC secret length
_MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth core."""

    database_url: str = env_field("postgresql://localhost:5432/warden", "DATABASE_URL")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (memory fallbacks, sync Redis client).",
    )
    jwt_access_secret: str = env_field(None, "JWT_ACCESS_SECRET", validate_default=True)
    jwt_refresh_secret: str = env_field(None, "JWT_REFRESH_SECRET", validate_default=True)
    jwt_access_expires_in: str = env_field(
        "2h",
        "JWT_ACCESS_EXPIRES_IN",
        description="Access token lifetime, e.g. 15m, 2h (overridable via system settings)",
    )
    jwt_refresh_expires_in: str = env_field(
        "30d",
        "JWT_REFRESH_EXPIRES_IN",
        description="Refresh token lifetime, e.g. 7d, 30d (overridable via system settings)",
    )
    jwt_issuer: str = env_field("warden", "JWT_ISSUER")
    jwt_audience: str = env_field("warden-clients", "JWT_AUDIENCE")
    jwt_leeway_seconds: int = env_field(
        0,
        "JWT_LEEWAY_SECONDS",
        description="Clock skew tolerated when checking token expiry",
        ge=0,
    )
    rbac_cache_ttl_seconds: int = env_field(
        5,
        "RBAC_CACHE_TTL_SECONDS",
        description="Lifetime of cached role/permission grants per principal; 0 disables caching",
        ge=0,
    )
    default_role: str | None = env_field(
        "user",
        "DEFAULT_ROLE",
        description="Role code assigned to newly registered principals",
    )
    log_level: str = env_field("INFO", "LOG_LEVEL")

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

    @field_validator("jwt_access_secret", "jwt_refresh_secret", mode="before")
    @classmethod
    def _ensure_secret(cls, value: str | None, info) -> str:
        if not value:
            raise ValueError(f"{info.field_name} is not configured")
        if len(value) < _MIN_SECRET_LENGTH:
            raise ValueError(
                f"{info.field_name} must be at least {_MIN_SECRET_LENGTH} characters"
            )
        return value

    @field_validator("jwt_access_expires_in", "jwt_refresh_expires_in")
    @classmethod
    def _validate_expiry(cls, value: str) -> str:
        # Fail closed at startup; the request path never re-raises on these.
        parse_duration(value)
        return value

    @field_validator("default_role")
    @classmethod
    def _normalize_default_role(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        return value or None

    @model_validator(mode="after")
    def _ensure_distinct_secrets(self) -> "Settings":
        if self.jwt_access_secret == self.jwt_refresh_secret:
            raise ValueError("access and refresh tokens must use distinct secrets")
        return self

    @property
    def access_ttl_seconds(self) -> int:
        return parse_duration(self.jwt_access_expires_in)

    @property
    def refresh_ttl_seconds(self) -> int:
        return parse_duration(self.jwt_refresh_expires_in)


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.info(
            "settings_loaded",
            use_memory_store=_settings_cache.use_memory_store,
            test_mode=_settings_cache.test_mode,
            access_expires_in=_settings_cache.jwt_access_expires_in,
            refresh_expires_in=_settings_cache.jwt_refresh_expires_in,
        )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
