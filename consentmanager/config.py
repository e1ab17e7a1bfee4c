from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from consentmanager.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session and lockout service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/consentmanager", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow in-memory fallbacks and runtime resets for test runs.",
    )
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("consentmanager", "JWT_ISSUER")
    jwt_audience: str = env_field("consent-manager-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(30, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(24 * 60, "REFRESH_TOKEN_TTL_MINUTES")
    # OTP service
    otp_service_url: str = env_field("http://localhost:5000", "OTP_SERVICE_URL")
    otp_expiry_minutes: int = env_field(
        5,
        "OTP_EXPIRY_MINUTES",
        description="Lifetime of an unverified OTP session",
    )
    otp_request_timeout_seconds: float = env_field(10.0, "OTP_REQUEST_TIMEOUT_SECONDS")
    # Cache key layout
    blacklist_namespace: str = env_field("blacklist", "BLACKLIST_NAMESPACE")
    blacklist_format: str = env_field("{namespace}:{token}", "BLACKLIST_FORMAT")
    unverified_session_prefix: str = env_field(
        "unverified_session:", "UNVERIFIED_SESSION_PREFIX"
    )
    refresh_revocation_prefix: str = env_field(
        "refresh_revoked:", "REFRESH_REVOCATION_PREFIX"
    )
    # Lockout policy
    lockout_max_attempts: int = env_field(
        5,
        "LOCKOUT_MAX_ATTEMPTS",
        description="Consecutive failed logins before the account is locked",
    )
    lockout_cool_off_minutes: int = env_field(
        8 * 60,
        "LOCKOUT_COOL_OFF_MINUTES",
        description="How long a locked account stays locked",
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

    @property
    def otp_expiry_seconds(self) -> int:
        return self.otp_expiry_minutes * 60

    def blacklist_key(self, token: str) -> str:
        return self.blacklist_format.format(
            namespace=self.blacklist_namespace, token=token
        )

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "otp_expiry_minutes",
        "lockout_max_attempts",
        "lockout_cool_off_minutes",
    )
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("blacklist_format")
    @classmethod
    def _validate_blacklist_format(cls, value: str) -> str:
        if "{token}" not in value:
            raise ValueError("blacklist_format must contain a {token} placeholder")
        return value

    @field_validator("redis_url")
    @classmethod
    def _blank_redis_url(cls, value: str | None) -> str | None:
        return value or None

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Tokens signed with a generated secret do not survive a restart
        logger.warning(
            "jwt_secret_generated",
            message="JWT_SECRET not set; issued tokens are valid for this process only",
        )
        return secrets.token_urlsafe(64)


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
