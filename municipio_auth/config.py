from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from municipio_auth.logging import get_logger

logger = get_logger(__name__)

MIN_JWT_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session and credential core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/municipio", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/municipio-auth", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Use the synchronous Redis client and relax startup checks.",
    )
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("municipio", "JWT_ISSUER")
    access_token_ttl_minutes: int = env_field(15, "JWT_ACCESS_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(
        30 * 24 * 60, "JWT_REFRESH_TTL_MINUTES"
    )
    clock_skew_leeway_seconds: int = env_field(
        30,
        "CLOCK_SKEW_LEEWAY_SECONDS",
        description="Tolerance applied when checking access token expiry.",
    )
    operation_timeout_seconds: float = env_field(
        10.0,
        "AUTH_OPERATION_TIMEOUT_SECONDS",
        description="Default upper bound for a login/refresh/logout call.",
    )
    db_statement_timeout_ms: int = env_field(5000, "DB_STATEMENT_TIMEOUT_MS")
    db_pool_min_size: int = env_field(2, "DB_POOL_MIN_SIZE")
    db_pool_max_size: int = env_field(10, "DB_POOL_MAX_SIZE")
    redis_socket_timeout_seconds: float = env_field(5.0, "REDIS_SOCKET_TIMEOUT_SECONDS")
    passkey_ceremony_ttl_seconds: int = env_field(300, "PASSKEY_CEREMONY_TTL_SECONDS")

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

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        # Key management is external; refuse to start with a weak or missing key
        secret = (value or "").strip()
        if len(secret) < MIN_JWT_SECRET_LENGTH:
            logger.error("jwt_secret_invalid", length=len(secret))
            raise ValueError(
                f"JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters"
            )
        return secret

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "db_statement_timeout_ms",
        "passkey_ceremony_ttl_seconds",
    )
    @classmethod
    def _positive_int(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("operation_timeout_seconds", "redis_socket_timeout_seconds")
    @classmethod
    def _positive_float(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be positive")
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
