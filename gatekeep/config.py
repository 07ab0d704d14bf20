from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from gatekeep.logging import get_logger

logger = get_logger(__name__)

MIN_SECRET_LENGTH = 32

# Fallback values used only outside production so local runs need no setup
_DEV_SECRETS: dict[str, str] = {
    "jwt_secret": "dev-secret-only-for-development-use-do-not-deploy",
    "jwt_refresh_secret": "dev-refresh-secret-only-for-development-use-do-not-deploy",
    "two_factor_encryption_key": "dev-two-factor-key-only-for-development-use",
}

# Substrings that mark a value as a copied placeholder rather than a real secret
_PLACEHOLDER_MARKERS = (
    "dev-secret",
    "dev-refresh-secret",
    "dev-two-factor-key",
    "dev-encryption-key",
    "change-me",
    "changeme",
)


class ConfigurationError(Exception):
    """Raised when the process is configured in a way it must refuse to run with."""


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth core."""

    environment: str = env_field("development", "ENVIRONMENT")
    redis_url: str | None = env_field(None, "REDIS_URL")
    allow_memory_fallback: bool = env_field(
        False,
        "ALLOW_MEMORY_FALLBACK",
        description="Permit the in-process KV store in production (single process only)",
    )
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    two_factor_encryption_key: str | None = env_field(None, "TWO_FACTOR_ENCRYPTION_KEY")
    jwt_issuer: str = env_field("gatekeep", "JWT_ISSUER")
    jwt_audience: str = env_field("gatekeep-clients", "JWT_AUDIENCE")
    totp_issuer: str = env_field("Gatekeep", "TOTP_ISSUER")
    super_admin_email: str = env_field(
        "admin@gatekeep.local",
        "SUPER_ADMIN_EMAIL",
        description="Reserved email of the single super-admin account",
    )
    super_admin_password: str | None = env_field(
        None,
        "SUPER_ADMIN_PASSWORD",
        description="When set, the super admin is seeded at startup if missing",
    )
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST")
    password_hash_memory_cost: int = env_field(65536, "PASSWORD_HASH_MEMORY_COST")
    password_hash_parallelism: int = env_field(4, "PASSWORD_HASH_PARALLELISM")
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Gatekeep", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    otp_cleanup_interval_seconds: int = env_field(60, "OTP_CLEANUP_INTERVAL_SECONDS")

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

    @field_validator("environment")
    @classmethod
    def _normalize_environment(cls, value: str) -> str:
        return (value or "development").strip().lower()

    @field_validator("super_admin_email")
    @classmethod
    def _normalize_super_admin_email(cls, value: str) -> str:
        return value.strip().lower()

    @property
    def is_production(self) -> bool:
        return self.environment in {"production", "prod"}

    def resolve_secret(self, name: str) -> str:
        """Return the configured secret ``name`` or fail for unusable production values.

        Outside production a missing secret falls back to a fixed development
        value and a warning is logged. In production the secret must be set,
        must not contain a known placeholder, and must be at least
        ``MIN_SECRET_LENGTH`` characters long.
        """
        if name not in _DEV_SECRETS:
            raise KeyError(name)
        env_name = type(self).model_fields[name].json_schema_extra["env"]
        value = getattr(self, name)
        if self.is_production:
            if not value:
                raise ConfigurationError(f"{env_name} must be set in production")
            lowered = value.lower()
            if any(marker in lowered for marker in _PLACEHOLDER_MARKERS):
                raise ConfigurationError(
                    f"{env_name} contains a development placeholder; generate a real secret"
                )
            if len(value) < MIN_SECRET_LENGTH:
                raise ConfigurationError(
                    f"{env_name} must be at least {MIN_SECRET_LENGTH} characters in production"
                )
            return value
        if not value:
            logger.warning("dev_secret_fallback", setting=env_name)
            return _DEV_SECRETS[name]
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
