from __future__ import annotations

import os
import re
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from tokenwarden.logging import get_logger

logger = get_logger(__name__)

_RUN_AT_PATTERN = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the credential and session lifecycle engine."""

    database_url: str = env_field(
        "postgresql://localhost:5432/tokenwarden", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("tokenwarden", "JWT_ISSUER")
    jwt_audience: str = env_field("tokenwarden-clients", "JWT_AUDIENCE")

    # Token lifetimes
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    session_token_ttl_days: int = env_field(7, "SESSION_TOKEN_TTL_DAYS")
    verification_code_ttl_minutes: int = env_field(5, "VERIFICATION_CODE_TTL_MINUTES")
    verification_code_hourly_limit: int = env_field(
        3,
        "VERIFICATION_CODE_HOURLY_LIMIT",
        description="Verification emails allowed per address in a trailing hour",
    )
    password_reset_ttl_minutes: int = env_field(10, "PASSWORD_RESET_TTL_MINUTES")

    # Rate limits
    auth_rate_limit_points: int = env_field(10, "AUTH_RATE_LIMIT_POINTS")
    auth_rate_limit_window_seconds: int = env_field(3600, "AUTH_RATE_LIMIT_WINDOW_SECONDS")
    api_rate_limit_points: int = env_field(100, "API_RATE_LIMIT_POINTS")
    api_rate_limit_window_seconds: int = env_field(900, "API_RATE_LIMIT_WINDOW_SECONDS")
    rate_limit_backend_timeout_seconds: float = env_field(
        0.25,
        "RATE_LIMIT_BACKEND_TIMEOUT_SECONDS",
        description="Upper bound on a single shared-backend rate limit call",
    )
    rate_limit_fallback_cooldown_seconds: int = env_field(
        30,
        "RATE_LIMIT_FALLBACK_COOLDOWN_SECONDS",
        description="How long the local limiter serves traffic after a shared backend failure",
    )

    # Security policy toggles
    revoke_sessions_on_token_reuse: bool = env_field(
        False,
        "REVOKE_SESSIONS_ON_TOKEN_REUSE",
        description="Revoke every session of a user when a rotated session token is replayed",
    )
    revoke_sessions_on_password_reset: bool = env_field(
        True, "REVOKE_SESSIONS_ON_PASSWORD_RESET"
    )

    # Ghost account reaper
    reaper_enabled: bool = env_field(True, "REAPER_ENABLED")
    reaper_run_at: str = env_field(
        "03:00", "REAPER_RUN_AT", description="UTC time of day (HH:MM) for the daily sweep"
    )
    reaper_grace_days: int = env_field(3, "REAPER_GRACE_DAYS")

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Tokenwarden", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:3001", "APP_BASE_URL")

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

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < 32:
                logger.warning("jwt_secret_short", length=len(value))
            return value
        # Tokens signed with an ephemeral secret do not survive a restart
        logger.warning(
            "jwt_secret_generated",
            message="JWT_SECRET is unset; access tokens are invalidated on restart",
        )
        return secrets.token_urlsafe(64)

    @field_validator(
        "access_token_ttl_minutes",
        "session_token_ttl_days",
        "verification_code_ttl_minutes",
        "verification_code_hourly_limit",
        "password_reset_ttl_minutes",
        "auth_rate_limit_points",
        "auth_rate_limit_window_seconds",
        "api_rate_limit_points",
        "api_rate_limit_window_seconds",
        "reaper_grace_days",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("rate_limit_backend_timeout_seconds")
    @classmethod
    def _validate_backend_timeout(cls, value: float) -> float:
        if value <= 0 or value >= 1:
            raise ValueError("rate limit backend timeout must be between 0 and 1 second")
        return value

    @field_validator("reaper_run_at")
    @classmethod
    def _validate_run_at(cls, value: str) -> str:
        if not _RUN_AT_PATTERN.match(value):
            raise ValueError("reaper_run_at must be HH:MM (24h)")
        return value

    @property
    def reaper_run_at_parts(self) -> tuple[int, int]:
        hour, minute = self.reaper_run_at.split(":")
        return int(hour), int(minute)


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
