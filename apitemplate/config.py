from __future__ import annotations

import os
import secrets
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from apitemplate.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


_LIST_FIELDS = {"cors_allow_origins"}


class Settings(BaseModel):
    """Runtime settings for the API, stores and token lifetimes."""

    database_url: str = env_field(
        "postgresql://localhost:5432/apitemplate", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_socket_timeout: float = env_field(5.0, "REDIS_SOCKET_TIMEOUT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allows generated signing secrets and in-memory fallbacks.",
    )
    port: int = env_field(8080, "PORT")

    # Token signing. Access and refresh tokens never share a secret.
    jwt_access_secret: str | None = env_field(None, "JWT_ACCESS_SECRET")
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    access_token_expire_minutes: int = env_field(
        15, "ACCESS_TOKEN_EXPIRE_MIN", ge=1
    )
    refresh_token_expire_hours: int = env_field(
        72, "REFRESH_TOKEN_EXPIRE_HOUR", ge=1
    )
    rotate_refresh_tokens: bool = env_field(
        False,
        "ROTATE_REFRESH_TOKENS",
        description="Issue a new refresh token on every refresh and revoke the old one.",
    )
    presence_ttl_minutes: int = env_field(15, "PRESENCE_TTL_MIN", ge=1)
    reset_token_expiry_minutes: int = env_field(15, "RESET_TOKEN_EXPIRY_MIN", ge=1)

    # Password hashing work factor (argon2id)
    password_time_cost: int = env_field(3, "PASSWORD_TIME_COST", ge=1)
    password_memory_cost: int = env_field(65536, "PASSWORD_MEMORY_COST", ge=8)
    password_parallelism: int = env_field(4, "PASSWORD_PARALLELISM", ge=1)

    # Outbound email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("API Template", "EMAIL_FROM_NAME")
    password_reset_url: str = env_field(
        "http://localhost:8080/reset_password", "PASSWORD_RESET_URL"
    )

    default_locale: str = env_field("en", "DEFAULT_LOCALE")
    default_page_size: int = env_field(10, "DEFAULT_PAGE_SIZE", ge=1)
    max_page_size: int = env_field(100, "MAX_PAGE_SIZE", ge=1)
    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")
    build_sha: str = env_field("dev", "BUILD_SHA")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                raw = os.environ[env_name]
            elif env_name in env_file_values:
                raw = env_file_values[env_name]
            else:
                continue
            if name in _LIST_FIELDS:
                merged[name] = [item.strip() for item in (raw or "").split(",") if item.strip()]
            else:
                merged[name] = raw
        return cls(**merged)

    @field_validator("default_locale")
    @classmethod
    def _normalize_locale(cls, value: str) -> str:
        return (value or "en").strip().lower()[:2] or "en"

    @model_validator(mode="after")
    def _ensure_signing_secrets(self) -> "Settings":
        if not self.jwt_access_secret or not self.jwt_refresh_secret:
            if not self.test_mode:
                raise ValueError(
                    "JWT_ACCESS_SECRET and JWT_REFRESH_SECRET must be set outside TEST_MODE"
                )
            # Generated secrets only live for this process; tokens die on restart.
            if not self.jwt_access_secret:
                self.jwt_access_secret = secrets.token_urlsafe(48)
            if not self.jwt_refresh_secret:
                self.jwt_refresh_secret = secrets.token_urlsafe(48)
            logger.warning("jwt_secrets_generated", test_mode=self.test_mode)
        if self.jwt_access_secret == self.jwt_refresh_secret:
            raise ValueError("access and refresh tokens must use different signing secrets")
        if self.default_page_size > self.max_page_size:
            self.default_page_size = self.max_page_size
        return self

    @property
    def access_token_ttl_seconds(self) -> int:
        return self.access_token_expire_minutes * 60

    @property
    def refresh_token_ttl_seconds(self) -> int:
        return self.refresh_token_expire_hours * 3600

    @property
    def presence_ttl_seconds(self) -> int:
        return self.presence_ttl_minutes * 60


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
