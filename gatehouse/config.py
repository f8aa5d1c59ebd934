from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

# Lifetimes used when the environment does not override them.
AUTH_TOKEN_MAX_IDLE_HOURS = 24
REFRESH_TOKEN_MAX_AGE_DAYS = 30
EMAIL_VERIFICATION_MAX_AGE_HOURS = 24
SIGNIN_EVENT_MAX_AGE_DAYS = 90


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/gatehouse", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    shared_fs_root: str = env_field("/srv/gatehouse", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets and in-memory fallbacks used by the test suite.",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")

    # Token and history lifetimes
    auth_token_max_idle_hours: int = env_field(
        AUTH_TOKEN_MAX_IDLE_HOURS,
        "AUTH_TOKEN_MAX_IDLE_HOURS",
        description="Sliding idle window of an auth token",
    )
    refresh_token_max_age_days: int = env_field(
        REFRESH_TOKEN_MAX_AGE_DAYS,
        "REFRESH_TOKEN_MAX_AGE_DAYS",
        description="Fixed lifetime of a refresh token from issuance",
    )
    email_verification_max_age_hours: int = env_field(
        EMAIL_VERIFICATION_MAX_AGE_HOURS, "EMAIL_VERIFICATION_MAX_AGE_HOURS"
    )
    signin_event_max_age_days: int = env_field(
        SIGNIN_EVENT_MAX_AGE_DAYS, "SIGNIN_EVENT_MAX_AGE_DAYS"
    )

    # Store access
    store_timeout_seconds: float = env_field(
        5.0,
        "STORE_TIMEOUT_SECONDS",
        description="Default per-call bound on identity store operations",
    )
    store_pool_min_size: int = env_field(2, "STORE_POOL_MIN_SIZE")
    store_pool_max_size: int = env_field(10, "STORE_POOL_MAX_SIZE")

    # Credentials
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH")
    signin_rate_limit_per_minute: int = env_field(
        10,
        "SIGNIN_RATE_LIMIT_PER_MINUTE",
        description="Password sign-in attempts allowed per email per minute (Redis only)",
    )

    # OAuth providers
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_facebook_client_id: str | None = env_field(None, "OAUTH_FACEBOOK_CLIENT_ID")
    provider_http_timeout_seconds: float = env_field(
        10.0, "PROVIDER_HTTP_TIMEOUT_SECONDS"
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

    @field_validator(
        "auth_token_max_idle_hours",
        "refresh_token_max_age_days",
        "email_verification_max_age_hours",
        "signin_event_max_age_days",
        "password_min_length",
    )
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("store_timeout_seconds", "provider_http_timeout_seconds")
    @classmethod
    def _ensure_positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeout must be positive")
        return value

    @field_validator("redis_url")
    @classmethod
    def _blank_redis_is_none(cls, value: str | None) -> str | None:
        if value is not None and not value.strip():
            return None
        return value


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
