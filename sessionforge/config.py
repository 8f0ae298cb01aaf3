from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, Field, field_validator, model_validator

from sessionforge.logging import get_logger

logger = get_logger(__name__)

MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class RetiringKeyConfig(BaseModel):
    """A signing key that still verifies tokens until ``retire_at``."""

    kid: str
    secret: str
    retire_at: datetime

    @field_validator("retire_at")
    @classmethod
    def _ensure_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


def _split_csv(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(item).strip() for item in value if str(item).strip()]
    return [part.strip() for part in str(value).split(",") if part.strip()]


class Settings(BaseModel):
    """Runtime settings for the credential issuance service.

    Token lifetimes and the password policy have no universally correct
    value; the defaults below are deliberately conservative and every one of
    them can be overridden from the environment.
    """

    database_url: str = env_field(
        "postgresql://localhost:5432/sessionforge", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    state_path: str | None = env_field(
        None,
        "STATE_PATH",
        description="JSON file the in-memory store persists to; unset keeps state in process only",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (in-process rate limiting, memory store)",
    )
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_key_id: str = env_field("primary", "JWT_KEY_ID")
    jwt_retiring_keys: list[RetiringKeyConfig] = env_field(
        [],
        "JWT_RETIRING_KEYS",
        description='JSON list of {"kid", "secret", "retire_at"} objects accepted for verification only',
    )
    jwt_issuer: str = env_field("sessionforge", "JWT_ISSUER")
    jwt_audience: str = env_field("sessionforge-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        15,
        "ACCESS_TOKEN_TTL_MINUTES",
        description="Access token lifetime in minutes",
    )
    refresh_token_ttl_minutes: int = env_field(
        14 * 24 * 60,
        "REFRESH_TOKEN_TTL_MINUTES",
        description="Absolute refresh token lifetime in minutes",
    )
    clock_skew_seconds: int = env_field(
        0,
        "CLOCK_SKEW_SECONDS",
        description="Tolerance applied after access token expiry",
    )
    password_min_length: int = env_field(10, "PASSWORD_MIN_LENGTH")
    password_max_length: int = env_field(128, "PASSWORD_MAX_LENGTH")
    password_min_character_classes: int = env_field(
        3,
        "PASSWORD_MIN_CHARACTER_CLASSES",
        description="How many of lowercase, uppercase, digit, symbol a password must contain",
    )
    allowed_roles: list[str] = env_field(
        [],
        "ALLOWED_ROLES",
        description="Comma-separated role allow-list; empty accepts any well-formed role",
    )
    default_roles: list[str] = env_field(["user"], "DEFAULT_ROLES")
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    register_rate_limit_per_minute: int = env_field(5, "REGISTER_RATE_LIMIT_PER_MINUTE")
    security_event_stream: str = env_field("security:events", "SECURITY_EVENT_STREAM")
    token_purge_interval_seconds: int = env_field(
        3600,
        "TOKEN_PURGE_INTERVAL_SECONDS",
        description="How often expired refresh tokens are deleted; 0 disables the sweep",
    )
    token_retention_hours: int = env_field(
        24,
        "TOKEN_RETENTION_HOURS",
        description="How long expired refresh tokens are kept before the sweep deletes them",
    )

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

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if not value:
            raise ValueError("JWT_SECRET must be set")
        if len(value) < MIN_SECRET_LENGTH:
            raise ValueError(
                f"JWT_SECRET must be at least {MIN_SECRET_LENGTH} characters"
            )
        return value

    @field_validator("jwt_retiring_keys", mode="before")
    @classmethod
    def _parse_retiring_keys(cls, value: Any) -> Any:
        if value is None or value == "":
            return []
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError as exc:
                raise ValueError(f"JWT_RETIRING_KEYS is not valid JSON: {exc.msg}") from exc
        if not isinstance(value, list):
            raise ValueError("JWT_RETIRING_KEYS must be a JSON list")
        return value

    @field_validator("jwt_retiring_keys")
    @classmethod
    def _check_retiring_secrets(
        cls, value: list[RetiringKeyConfig]
    ) -> list[RetiringKeyConfig]:
        for key in value:
            if len(key.secret) < MIN_SECRET_LENGTH:
                raise ValueError(
                    f"retiring key {key.kid!r} secret must be at least {MIN_SECRET_LENGTH} characters"
                )
        return value

    @field_validator("allowed_roles", "default_roles", mode="before")
    @classmethod
    def _parse_roles(cls, value: Any) -> list[str]:
        return _split_csv(value)

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "password_min_length",
        "login_rate_limit_per_minute",
        "register_rate_limit_per_minute",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be greater than zero")
        return value

    @field_validator("clock_skew_seconds", "token_purge_interval_seconds", "token_retention_hours")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("password_min_character_classes")
    @classmethod
    def _character_classes(cls, value: int) -> int:
        if not 0 <= value <= 4:
            raise ValueError("must be between 0 and 4")
        return value

    @model_validator(mode="after")
    def _check_consistency(self) -> "Settings":
        if self.password_max_length < self.password_min_length:
            raise ValueError("PASSWORD_MAX_LENGTH must not be below PASSWORD_MIN_LENGTH")
        if self.refresh_token_ttl_minutes <= self.access_token_ttl_minutes:
            logger.warning(
                "refresh_ttl_not_longer_than_access_ttl",
                access_token_ttl_minutes=self.access_token_ttl_minutes,
                refresh_token_ttl_minutes=self.refresh_token_ttl_minutes,
            )
        kids = [self.jwt_key_id] + [key.kid for key in self.jwt_retiring_keys]
        if len(set(kids)) != len(kids):
            raise ValueError("signing key ids must be unique")
        if self.allowed_roles:
            unknown = [role for role in self.default_roles if role not in self.allowed_roles]
            if unknown:
                raise ValueError(f"DEFAULT_ROLES not in ALLOWED_ROLES: {', '.join(unknown)}")
        return self


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
