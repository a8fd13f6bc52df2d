from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from bizmarket.logging import get_logger

logger = get_logger(__name__)


class AppEnv(str, Enum):
    """Deployment environments recognised by the cookie and CORS policies."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class SameSite(str, Enum):
    LAX = "lax"
    STRICT = "strict"
    NONE = "none"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the marketplace auth backend."""

    database_url: str = env_field(
        "postgresql://localhost:5432/bizmarket", "DATABASE_URL"
    )
    redis_url: str | None = env_field(
        "redis://localhost:6379/0",
        "REDIS_URL",
        description="Session cache and counter store; empty disables the cache tier",
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Enable deterministic behaviours and runtime resets used by the test suite",
    )
    app_env: AppEnv = env_field(AppEnv.DEVELOPMENT, "APP_ENV")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    cors_allow_origins: list[str] = env_field(
        [],
        "CORS_ALLOW_ORIGINS",
        description="Comma separated list; empty allows localhost origins only",
    )

    # Sessions
    session_ttl_minutes: int = env_field(
        24 * 60, "SESSION_TTL_MINUTES", description="Session lifetime in minutes"
    )
    session_cookie_name: str = env_field("sid", "SESSION_COOKIE_NAME")
    session_cookie_domain: str | None = env_field(
        None,
        "SESSION_COOKIE_DOMAIN",
        description="Cookie domain; unset scopes the cookie to the request host",
    )
    session_cookie_secure: bool = env_field(True, "SESSION_COOKIE_SECURE")
    session_cookie_httponly: bool = env_field(True, "SESSION_COOKIE_HTTPONLY")
    session_cookie_samesite: SameSite = env_field(SameSite.LAX, "SESSION_COOKIE_SAMESITE")
    session_cleanup_interval_seconds: int = env_field(
        3600,
        "SESSION_CLEANUP_INTERVAL_SECONDS",
        description="Period of the expired-session sweep; 0 disables the background loop",
    )
    user_agent_max_length: int = env_field(500, "USER_AGENT_MAX_LENGTH")

    # Rate limits (fixed windows)
    rate_limit_login_per_minute: int = env_field(5, "RATE_LIMIT_LOGIN_PER_MINUTE")
    rate_limit_signup_per_hour: int = env_field(3, "RATE_LIMIT_SIGNUP_PER_HOUR")
    rate_limit_forgot_password_per_hour: int = env_field(
        3, "RATE_LIMIT_FORGOT_PASSWORD_PER_HOUR"
    )
    rate_limit_contact_per_hour: int = env_field(10, "RATE_LIMIT_CONTACT_PER_HOUR")

    # Login protection
    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS")
    lockout_duration_minutes: int = env_field(15, "LOCKOUT_DURATION_MINUTES")
    min_form_elapsed_ms: int = env_field(
        800,
        "MIN_FORM_ELAPSED_MS",
        description="Forms submitted faster than this after render are treated as automated",
    )

    # Account flows
    password_reset_ttl_minutes: int = env_field(30, "PASSWORD_RESET_TTL_MINUTES")
    email_verification_ttl_hours: int = env_field(24, "EMAIL_VERIFICATION_TTL_HOURS")

    # Outbound email; unset SMTP_HOST logs messages instead of sending
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("BizMarket", "EMAIL_FROM_NAME")

    # Store call bounds
    cache_timeout_seconds: float = env_field(2.0, "CACHE_TIMEOUT_SECONDS")
    db_timeout_seconds: float = env_field(10.0, "DB_TIMEOUT_SECONDS")
    db_pool_min_size: int = env_field(1, "DB_POOL_MIN_SIZE")
    db_pool_max_size: int = env_field(10, "DB_POOL_MAX_SIZE")

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

    @field_validator("redis_url", "session_cookie_domain", "smtp_host", mode="before")
    @classmethod
    def _blank_is_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator(
        "session_ttl_minutes",
        "rate_limit_login_per_minute",
        "rate_limit_signup_per_hour",
        "rate_limit_forgot_password_per_hour",
        "rate_limit_contact_per_hour",
        "max_login_attempts",
        "lockout_duration_minutes",
        "password_reset_ttl_minutes",
        "email_verification_ttl_hours",
        "user_agent_max_length",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("cache_timeout_seconds", "db_timeout_seconds")
    @classmethod
    def _require_positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeouts must be positive")
        return value

    @field_validator("min_form_elapsed_ms", "session_cleanup_interval_seconds")
    @classmethod
    def _require_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @model_validator(mode="after")
    def _warn_insecure_cookie(self) -> "Settings":
        if self.app_env == AppEnv.PRODUCTION and not self.session_cookie_secure:
            logger.warning(
                "insecure_session_cookie",
                message="SESSION_COOKIE_SECURE is disabled in production",
            )
        return self

    @property
    def is_development(self) -> bool:
        return self.app_env == AppEnv.DEVELOPMENT

    @property
    def session_ttl_seconds(self) -> int:
        return self.session_ttl_minutes * 60

    @property
    def lockout_window_seconds(self) -> int:
        return self.lockout_duration_minutes * 60


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
