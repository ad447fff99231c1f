from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from harbinger.logging import get_logger

logger = get_logger(__name__)

# HS256 keys shorter than the digest size weaken the signature
MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth/session service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/harbinger", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Run without Redis/Postgres using in-process backends",
    )
    server_port: int = env_field(8080, "SERVER_PORT")
    environment: str = env_field("development", "ENVIRONMENT")
    jwt_secret: str = env_field(None, "JWT_SECRET", repr=False, validate_default=True)
    jwt_issuer: str = env_field("Project Harbinger", "JWT_ISSUER")
    token_ttl_hours: int = env_field(
        24, "TOKEN_TTL_HOURS", description="Lifetime of issued access tokens"
    )
    blacklist_floor_seconds: int = env_field(
        300,
        "BLACKLIST_FLOOR_SECONDS",
        description="Minimum blacklist TTL when a token is at or near expiry",
    )
    profile_cache_ttl_seconds: int = env_field(300, "PROFILE_CACHE_TTL_SECONDS")
    redis_operation_timeout: float = env_field(
        5.0,
        "REDIS_OPERATION_TIMEOUT",
        description="Upper bound in seconds for any single cache command",
    )
    session_scan_count: int = env_field(
        100, "SESSION_SCAN_COUNT", description="SCAN COUNT hint for session purges"
    )
    logout_deadline_seconds: float = env_field(
        10.0,
        "LOGOUT_DEADLINE_SECONDS",
        description="Overall budget in seconds for the blacklist write and session sweep of one logout",
    )

    # Keep the signing secret out of validation error messages
    model_config = ConfigDict(extra="ignore", hide_input_in_errors=True)

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
        if len(value.encode()) < MIN_SECRET_LENGTH:
            # Never echo the value itself
            logger.error("jwt_secret_too_short", min_length=MIN_SECRET_LENGTH)
            raise ValueError(
                f"JWT_SECRET must be at least {MIN_SECRET_LENGTH} bytes"
            )
        return value

    @field_validator(
        "token_ttl_hours",
        "blacklist_floor_seconds",
        "profile_cache_ttl_seconds",
        "session_scan_count",
    )
    @classmethod
    def _positive_int(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("redis_operation_timeout", "logout_deadline_seconds")
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be a positive number of seconds")
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
