from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tripauth.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth engine, read from the environment."""

    database_url: str = env_field(
        "postgresql://localhost:5432/jointrip", "DATABASE_URL"
    )
    shared_fs_root: str = env_field("/srv/tripauth", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(False, "TEST_MODE")

    # Token codec
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("jointrip", "JWT_ISSUER")
    access_token_ttl_minutes: int = env_field(
        24 * 60,
        "ACCESS_TOKEN_TTL_MINUTES",
        description="Access token lifetime; also bounds the session it belongs to",
    )
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60,
        "REFRESH_TOKEN_TTL_MINUTES",
        description="Refresh token lifetime",
    )
    clock_skew_seconds: int = env_field(0, "JWT_CLOCK_SKEW_SECONDS")

    # Session quota and bounded waits
    max_sessions_per_user: int = env_field(5, "MAX_SESSIONS_PER_USER")
    store_timeout_seconds: float = env_field(5.0, "STORE_TIMEOUT_SECONDS")
    identity_timeout_seconds: float = env_field(30.0, "IDENTITY_TIMEOUT_SECONDS")

    # Google OAuth
    google_client_id: str | None = env_field(None, "GOOGLE_CLIENT_ID")
    google_client_secret: str | None = env_field(None, "GOOGLE_CLIENT_SECRET")
    google_redirect_url: str | None = env_field(None, "GOOGLE_REDIRECT_URL")

    # Fernet key sealing provider tokens at rest; derived from jwt_secret when unset
    token_encryption_key: str | None = env_field(None, "TOKEN_ENCRYPTION_KEY")

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
    def _require_jwt_secret(cls, value: str | None) -> str:
        if not value:
            raise ValueError("JWT_SECRET must be set to a non-empty value")
        if len(value) < 16:
            logger.warning("jwt_secret_short", length=len(value))
        return value

    @field_validator("access_token_ttl_minutes", "refresh_token_ttl_minutes")
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("token lifetimes must be positive")
        return value

    @field_validator("max_sessions_per_user")
    @classmethod
    def _validate_quota(cls, value: int) -> int:
        if value < 1:
            raise ValueError("MAX_SESSIONS_PER_USER must be at least 1")
        return value

    @field_validator("store_timeout_seconds", "identity_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeouts must be positive")
        return value

    @model_validator(mode="after")
    def _refresh_outlives_access(self) -> "Settings":
        if self.refresh_token_ttl_minutes < self.access_token_ttl_minutes:
            raise ValueError(
                "REFRESH_TOKEN_TTL_MINUTES must not be shorter than ACCESS_TOKEN_TTL_MINUTES"
            )
        return self

    @property
    def google_configured(self) -> bool:
        return bool(self.google_client_id and self.google_client_secret)


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
