from __future__ import annotations

import hashlib
import hmac
import os
import secrets
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from lawrose_auth.logging import get_logger

logger = get_logger(__name__)

# Minimum length for explicitly configured production secrets
_MIN_PRODUCTION_SECRET_LENGTH = 32


class Environment(str, Enum):
    """Deployment environments; production enables strict secret validation."""

    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"


def derive_secret(base_secret: str, purpose: str) -> str:
    """Derive a per-purpose signing secret from the access secret.

    Development-only convenience: production configuration refuses to start
    when any per-purpose secret would have to be derived.
    """
    return hmac.new(
        base_secret.encode("utf-8"), f"lawrose:{purpose}".encode("utf-8"), hashlib.sha256
    ).hexdigest()


@dataclass(frozen=True)
class TokenSecrets:
    access: str
    refresh: str
    email_verification: str
    magic_link: str
    password_reset: str


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process configuration, read once at startup and immutable afterwards."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "APP_ENV")

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_key_prefix: str = env_field("lawrose:user:", "REDIS_KEY_PREFIX")
    redis_socket_timeout: float = env_field(
        5.0,
        "REDIS_SOCKET_TIMEOUT",
        gt=0,
        description="Per-command timeout in seconds for store round-trips",
    )
    use_memory_store: bool = env_field(
        False,
        "USE_MEMORY_STORE",
        description="Single-process in-memory store for tests and local development",
    )

    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    jwt_email_secret: str | None = env_field(None, "JWT_EMAIL_SECRET")
    jwt_magic_secret: str | None = env_field(None, "JWT_MAGIC_SECRET")
    jwt_reset_secret: str | None = env_field(None, "JWT_RESET_SECRET")
    jwt_issuer: str = env_field("lawrose-user-service", "JWT_ISSUER")
    jwt_audience: str = env_field("lawrose-app", "JWT_AUDIENCE")
    clock_skew_leeway_seconds: int = env_field(60, "JWT_CLOCK_SKEW_LEEWAY_SECONDS", ge=0)

    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", gt=0)
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES", gt=0
    )
    magic_link_ttl_minutes: int = env_field(10, "MAGIC_LINK_TTL_MINUTES", gt=0)
    email_verification_ttl_minutes: int = env_field(
        24 * 60, "EMAIL_VERIFICATION_TTL_MINUTES", gt=0
    )
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES", gt=0)

    cleanup_enabled: bool = env_field(True, "TOKEN_CLEANUP_ENABLED")
    cleanup_interval_seconds: int = env_field(
        60 * 60, "TOKEN_CLEANUP_INTERVAL_SECONDS", gt=0
    )
    cleanup_batch_size: int = env_field(100, "TOKEN_CLEANUP_BATCH_SIZE", gt=0)

    model_config = ConfigDict(extra="ignore", frozen=True)

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
    def _validate_environment(cls, value: Environment) -> Environment:
        return Environment(value)

    @field_validator(
        "jwt_secret",
        "jwt_refresh_secret",
        "jwt_email_secret",
        "jwt_magic_secret",
        "jwt_reset_secret",
    )
    @classmethod
    def _blank_secret_is_unset(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value

    @model_validator(mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        if data.get("jwt_secret"):
            return data
        environment = data.get("environment", Environment.DEVELOPMENT)
        if isinstance(environment, Environment):
            environment = environment.value
        if environment == Environment.PRODUCTION.value:
            raise ValueError("JWT_SECRET must be set in production")
        logger.warning(
            "jwt_secret_generated_ephemeral",
            message="JWT_SECRET not set; tokens will not survive a restart",
        )
        return {**data, "jwt_secret": secrets.token_urlsafe(64)}

    @model_validator(mode="after")
    def _validate_production(self) -> "Settings":
        if self.environment != Environment.PRODUCTION:
            return self
        if self.use_memory_store:
            raise ValueError("USE_MEMORY_STORE is not allowed in production")
        configured = {
            "JWT_SECRET": self.jwt_secret,
            "JWT_REFRESH_SECRET": self.jwt_refresh_secret,
            "JWT_EMAIL_SECRET": self.jwt_email_secret,
            "JWT_MAGIC_SECRET": self.jwt_magic_secret,
            "JWT_RESET_SECRET": self.jwt_reset_secret,
        }
        missing = [name for name, value in configured.items() if not value]
        if missing:
            raise ValueError(
                "Secret derivation is disabled in production; set " + ", ".join(missing)
            )
        short = [
            name
            for name, value in configured.items()
            if len(value) < _MIN_PRODUCTION_SECRET_LENGTH
        ]
        if short:
            raise ValueError(
                f"Secrets must be at least {_MIN_PRODUCTION_SECRET_LENGTH} characters: "
                + ", ".join(short)
            )
        if len(set(configured.values())) != len(configured):
            raise ValueError("Each token kind must use a distinct secret in production")
        return self

    def token_secrets(self) -> TokenSecrets:
        """Resolve per-kind signing secrets, deriving unset ones outside production."""
        base = self.jwt_secret
        return TokenSecrets(
            access=base,
            refresh=self.jwt_refresh_secret or derive_secret(base, "refresh"),
            email_verification=self.jwt_email_secret or derive_secret(base, "email"),
            magic_link=self.jwt_magic_secret or derive_secret(base, "magic"),
            password_reset=self.jwt_reset_secret or derive_secret(base, "reset"),
        )

    @property
    def access_token_ttl(self) -> timedelta:
        return timedelta(minutes=self.access_token_ttl_minutes)

    @property
    def refresh_token_ttl(self) -> timedelta:
        return timedelta(minutes=self.refresh_token_ttl_minutes)

    @property
    def clock_skew_leeway(self) -> timedelta:
        return timedelta(seconds=self.clock_skew_leeway_seconds)


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
