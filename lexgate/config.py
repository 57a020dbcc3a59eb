from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

MIN_JWT_SECRET_LENGTH = 32


class EmailProvider(str, Enum):
    """Outbound email transports understood by the verification flow."""

    SMTP = "smtp"
    RESEND = "resend"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth, session and access-control service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/lexgate", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and in-process fallbacks.",
    )

    # Token signing. A missing secret is fatal: the process must not serve.
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("lexgate", "JWT_ISSUER")
    jwt_leeway_seconds: int = env_field(0, "JWT_LEEWAY_SECONDS", ge=0)
    access_token_ttl_minutes: int = env_field(
        15, "ACCESS_TOKEN_TTL_MINUTES", gt=0, description="Access token lifetime"
    )
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60,
        "REFRESH_TOKEN_TTL_MINUTES",
        gt=0,
        description="Refresh token lifetime (single-use, rotated on redemption)",
    )

    # Password hashing and brute-force lockout
    password_hash_cost: int = env_field(
        12, "PASSWORD_HASH_COST", description="argon2 time cost, valid range 1..31"
    )
    password_hash_memory_kib: int = env_field(19456, "PASSWORD_HASH_MEMORY_KIB", ge=8)
    password_hash_parallelism: int = env_field(1, "PASSWORD_HASH_PARALLELISM", ge=1)
    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS", gt=0)
    lockout_minutes: int = env_field(15, "LOCKOUT_MINUTES", gt=0)

    # Per-client admission control
    rate_limit_enabled: bool = env_field(True, "RATE_LIMIT_ENABLED")
    rate_limit_rate: float = env_field(
        10.0, "RATE_LIMIT_RATE", gt=0, description="Tokens refilled per second"
    )
    rate_limit_burst: int = env_field(20, "RATE_LIMIT_BURST", gt=0)
    rate_limit_max_clients: int = env_field(10000, "RATE_LIMIT_MAX_CLIENTS", gt=0)
    trust_forwarded_for: bool = env_field(
        False,
        "TRUST_FORWARDED_FOR",
        description="Key rate limits on the first X-Forwarded-For hop (behind a trusted proxy only)",
    )

    # Anonymous usage
    guest_max_chats: int = env_field(5, "GUEST_MAX_CHATS", gt=0)
    guest_session_ttl_hours: int = env_field(24, "GUEST_SESSION_TTL_HOURS", gt=0)
    guest_cookie_name: str = env_field("lex_guest_id", "GUEST_COOKIE_NAME")
    guest_cookie_secure: bool = env_field(False, "GUEST_COOKIE_SECURE")

    default_token_quota: int = env_field(100000, "DEFAULT_TOKEN_QUOTA", ge=0)

    # One-time verification codes
    verification_code_length: int = env_field(6, "VERIFICATION_CODE_LENGTH", ge=4, le=12)
    verification_code_ttl_seconds: int = env_field(
        300, "VERIFICATION_CODE_TTL_SECONDS", gt=0
    )
    verification_resend_seconds: int = env_field(
        60, "VERIFICATION_RESEND_SECONDS", gt=0
    )
    verification_max_attempts: int = env_field(5, "VERIFICATION_MAX_ATTEMPTS", gt=0)

    # Email delivery
    email_provider: EmailProvider = env_field(EmailProvider.SMTP, "EMAIL_PROVIDER")
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Lexgate", "EMAIL_FROM_NAME")
    resend_api_key: str | None = env_field(None, "RESEND_API_KEY")
    resend_api_url: str = env_field("https://api.resend.com/emails", "RESEND_API_URL")

    cors_allow_origins: str = env_field(
        "", "CORS_ALLOW_ORIGINS", description="Comma separated list of allowed origins"
    )
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")

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

    @field_validator("email_provider")
    @classmethod
    def _validate_email_provider(cls, value: EmailProvider) -> EmailProvider:
        return EmailProvider(value)

    @field_validator("jwt_secret")
    @classmethod
    def _require_jwt_secret(cls, value: str | None) -> str:
        value = (value or "").strip()
        if not value:
            raise ValueError("JWT_SECRET must be set; refusing to start without a signing key")
        if len(value) < MIN_JWT_SECRET_LENGTH:
            raise ValueError(
                f"JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters"
            )
        return value

    @property
    def access_token_ttl_seconds(self) -> int:
        return self.access_token_ttl_minutes * 60

    @property
    def refresh_token_ttl_seconds(self) -> int:
        return self.refresh_token_ttl_minutes * 60

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_allow_origins.split(",") if o.strip()]


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
