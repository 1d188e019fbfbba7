from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from stepauth.logging import get_logger

logger = get_logger(__name__)

MIN_OTP_LENGTH = 4


class Environment(str, Enum):
    """Deployment environments; only ``development`` surfaces error detail."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class SmsProvider(str, Enum):
    CONSOLE = "console"


class EmailProvider(str, Enum):
    CONSOLE = "console"
    SMTP = "smtp"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the login flow, passed explicitly to each service."""

    environment: Environment = env_field(Environment.PRODUCTION, "ENVIRONMENT")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviours (generated JWT secret, memory store friendly).",
    )

    # Storage
    database_url: str = env_field(
        "postgresql://localhost:5432/stepauth", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    redis_url: str | None = env_field(None, "REDIS_URL")
    db_pool_min_size: int = env_field(1, "DB_POOL_MIN_SIZE")
    db_pool_max_size: int = env_field(10, "DB_POOL_MAX_SIZE")

    # Token signing
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("stepauth", "JWT_ISSUER")
    jwt_audience: str = env_field("stepauth-clients", "JWT_AUDIENCE")
    jwt_ttl_hours: int = env_field(8, "JWT_TTL_HOURS")

    # One-time codes
    otp_ttl_minutes: int = env_field(10, "OTP_TTL_MINUTES")
    otp_length: int = env_field(
        6,
        "OTP_LENGTH",
        description="Digits per one-time code; production deployments should keep at least 6.",
    )
    otp_max_attempts: int = env_field(
        0,
        "OTP_MAX_ATTEMPTS",
        description="Failed verifications allowed per code; 0 leaves codes unbounded.",
    )
    expose_otp_in_response: bool = env_field(
        False,
        "EXPOSE_OTP_IN_RESPONSE",
        description="Echo issued codes in API responses; ignored in production.",
    )

    # Sessions
    session_ttl_hours: int = env_field(8, "SESSION_TTL_HOURS")
    timezone: str = env_field("Asia/Kolkata", "TIMEZONE")

    # Delivery
    sms_provider: SmsProvider = env_field(SmsProvider.CONSOLE, "SMS_PROVIDER")
    email_provider: EmailProvider = env_field(EmailProvider.CONSOLE, "EMAIL_PROVIDER")
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("StepAuth", "EMAIL_FROM_NAME")
    delivery_timeout_seconds: float = env_field(10.0, "DELIVERY_TIMEOUT_SECONDS")
    issue_lock_ttl_seconds: int = env_field(10, "ISSUE_LOCK_TTL_SECONDS")

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

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown time zone: {value}") from exc
        return value

    @field_validator("otp_length")
    @classmethod
    def _validate_otp_length(cls, value: int) -> int:
        if value < MIN_OTP_LENGTH:
            raise ValueError(f"otp_length must be at least {MIN_OTP_LENGTH}")
        return value

    @field_validator(
        "otp_ttl_minutes", "session_ttl_hours", "jwt_ttl_hours", "issue_lock_ttl_seconds"
    )
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("TTL values must be positive")
        return value

    @field_validator("otp_max_attempts")
    @classmethod
    def _validate_attempts(cls, value: int) -> int:
        if value < 0:
            raise ValueError("otp_max_attempts cannot be negative")
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if self.jwt_secret:
            return self
        if not self.test_mode:
            raise ValueError("JWT_SECRET is required")
        self.jwt_secret = secrets.token_urlsafe(48)
        logger.warning("jwt_secret_generated", reason="test_mode")
        return self

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @property
    def is_development(self) -> bool:
        return self.environment == Environment.DEVELOPMENT

    @property
    def otp_in_response_allowed(self) -> bool:
        return self.expose_otp_in_response and self.environment != Environment.PRODUCTION


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
