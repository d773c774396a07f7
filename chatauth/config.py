from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DAY_SECONDS = 24 * 60 * 60


class Environment(str, Enum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"


class StoreFailureMode(str, Enum):
    """What validation does when the session store cannot be reached.

    - CLOSED: the request fails with 503 (security over availability)
    - OPEN: the request proceeds anonymously (availability over security)
    """

    CLOSED = "closed"
    OPEN = "open"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session authentication service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/chatauth", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (runtime resets, no Redis requirement).",
    )
    environment: Environment = env_field(Environment.DEVELOPMENT, "ENVIRONMENT")
    cookie_secure: bool | None = env_field(
        None,
        "COOKIE_SECURE",
        description="Force the Secure cookie flag; defaults to on in production only",
    )
    session_cookie_name: str = env_field("session", "SESSION_COOKIE_NAME")
    session_lifetime_seconds: int = env_field(
        30 * DAY_SECONDS,
        "SESSION_LIFETIME_SECONDS",
        description="Validity of a session from creation or renewal",
    )
    session_renewal_window_seconds: int = env_field(
        15 * DAY_SECONDS,
        "SESSION_RENEWAL_WINDOW_SECONDS",
        description="Trailing interval before expiry in which use extends the session",
    )
    session_store_failure_mode: StoreFailureMode = env_field(
        StoreFailureMode.CLOSED, "SESSION_STORE_FAILURE_MODE"
    )
    session_sweep_interval_seconds: int = env_field(
        60 * 60,
        "SESSION_SWEEP_INTERVAL_SECONDS",
        description="Interval of the expired-session purge loop; 0 disables it",
    )
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")
    signin_rate_limit_per_minute: int = env_field(10, "SIGNIN_RATE_LIMIT_PER_MINUTE")
    signup_rate_limit_per_minute: int = env_field(5, "SIGNUP_RATE_LIMIT_PER_MINUTE")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    enable_hsts: bool = env_field(True, "ENABLE_HSTS")

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

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("redis_url", mode="before")
    @classmethod
    def _blank_redis_url(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("session_cookie_name")
    @classmethod
    def _validate_cookie_name(cls, value: str) -> str:
        if not value or not value.replace("_", "").replace("-", "").isalnum():
            raise ValueError("session cookie name must be alphanumeric")
        return value

    @model_validator(mode="after")
    def _validate_session_policy(self) -> "Settings":
        if self.session_lifetime_seconds <= 0:
            raise ValueError("session lifetime must be positive")
        if not 0 < self.session_renewal_window_seconds <= self.session_lifetime_seconds:
            raise ValueError(
                "session renewal window must be positive and no longer than the session lifetime"
            )
        if self.session_sweep_interval_seconds < 0:
            raise ValueError("session sweep interval cannot be negative")
        return self

    @property
    def secure_cookies(self) -> bool:
        if self.cookie_secure is not None:
            return self.cookie_secure
        return self.environment == Environment.PRODUCTION


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
