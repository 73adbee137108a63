from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from loginguard.logging import get_logger

logger = get_logger(__name__)

ONE_DAY_MILLIS = 24 * 60 * 60 * 1000


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the login core, overridable through the environment."""

    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    state_dir: str | None = env_field(
        None,
        "STATE_DIR",
        description="Directory for persisted memory-store state; unset keeps state in memory only",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors such as the in-memory blacklist fallback.",
    )
    # OTP settings
    otp_ttl_seconds: int = env_field(300, "OTP_TTL_SECONDS")
    otp_code_length: int = env_field(6, "OTP_CODE_LENGTH")
    otp_test_addresses: list[str] = env_field(
        [],
        "OTP_TEST_ADDRESSES",
        description="Comma-separated addresses that never receive messages and accept any code",
    )
    default_locale: str = env_field("en", "DEFAULT_LOCALE")
    # Token and signing key settings
    jwt_issuer: str = env_field("loginguard", "JWT_ISSUER")
    access_token_ttl_ms: int = env_field(ONE_DAY_MILLIS, "ACCESS_TOKEN_TTL_MS")
    signing_key_rotation_days: int = env_field(30, "SIGNING_KEY_ROTATION_DAYS")
    signing_key_bits: int = env_field(2048, "SIGNING_KEY_BITS")
    key_encryption_secret: str | None = env_field(None, "KEY_ENCRYPTION_SECRET")
    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("LoginGuard", "EMAIL_FROM_NAME")
    # HTTP messaging gateway for SMS, WhatsApp and push notifications
    messaging_gateway_url: str | None = env_field(None, "MESSAGING_GATEWAY_URL")
    messaging_gateway_token: str | None = env_field(None, "MESSAGING_GATEWAY_TOKEN")
    messaging_gateway_timeout: float = env_field(10.0, "MESSAGING_GATEWAY_TIMEOUT")
    # Single-session enforcement worker
    revocation_worker_concurrency: int = env_field(2, "REVOCATION_WORKER_CONCURRENCY")
    revocation_queue_size: int = env_field(1000, "REVOCATION_QUEUE_SIZE")

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

    @field_validator("otp_test_addresses", mode="before")
    @classmethod
    def _split_test_addresses(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            value = value.split(",")
        return [str(item).strip().lower() for item in value if str(item).strip()]

    @field_validator("otp_code_length")
    @classmethod
    def _validate_code_length(cls, value: int) -> int:
        if not 4 <= value <= 10:
            raise ValueError("otp_code_length must be between 4 and 10")
        return value

    @field_validator(
        "otp_ttl_seconds",
        "access_token_ttl_ms",
        "signing_key_rotation_days",
        "revocation_worker_concurrency",
        "revocation_queue_size",
    )
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("value must be positive")
        return value

    @field_validator("redis_url", "state_dir", "messaging_gateway_url")
    @classmethod
    def _blank_as_none(cls, value: str | None) -> str | None:
        if value is not None and not value.strip():
            return None
        return value


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.info(
            "settings_loaded",
            otp_ttl_seconds=_settings_cache.otp_ttl_seconds,
            test_address_count=len(_settings_cache.otp_test_addresses),
            redis_enabled=bool(_settings_cache.redis_url),
        )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
