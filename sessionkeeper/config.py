from __future__ import annotations

import os
import re
from datetime import timedelta
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from sessionkeeper.logging import get_logger

logger = get_logger(__name__)


class Environment(str, Enum):
    """Deployment environments; controls cookie hardening."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"


_DURATION_RE = re.compile(r"^\s*(\d+)\s*([smhdw]?)\s*$", re.IGNORECASE)
_DURATION_UNITS = {
    "": "seconds",
    "s": "seconds",
    "m": "minutes",
    "h": "hours",
    "d": "days",
    "w": "weeks",
}


def parse_duration(value: Any) -> timedelta:
    """Parse ``15m`` / ``3d`` / ``3600`` style durations into a timedelta."""

    if isinstance(value, timedelta):
        return value
    if isinstance(value, bool):
        raise ValueError("duration must be a string like '3d' or a number of seconds")
    if isinstance(value, (int, float)):
        if value <= 0:
            raise ValueError("duration must be positive")
        return timedelta(seconds=value)
    if not isinstance(value, str):
        raise ValueError("duration must be a string like '3d' or a number of seconds")
    match = _DURATION_RE.match(value)
    if not match:
        raise ValueError(f"invalid duration '{value}'; expected <int>[s|m|h|d|w]")
    amount = int(match.group(1))
    if amount <= 0:
        raise ValueError("duration must be positive")
    unit = _DURATION_UNITS[match.group(2).lower()]
    return timedelta(**{unit: amount})


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process-wide settings, loaded once at startup."""

    app_name: str = env_field("sessionkeeper", "APP_NAME")
    environment: Environment = env_field(Environment.DEVELOPMENT, "APP_ENV")
    database_url: str = env_field(
        "postgresql://localhost:5432/sessionkeeper", "DATABASE_URL"
    )
    db_pool_min_size: int = env_field(2, "DB_POOL_MIN_SIZE", ge=1)
    db_pool_max_size: int = env_field(10, "DB_POOL_MAX_SIZE", ge=1)
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    memory_store_path: str | None = env_field(
        None, "MEMORY_STORE_PATH", description="Mirror the in-memory store to this directory"
    )
    test_mode: bool = env_field(False, "TEST_MODE")

    jwt_secret: str = env_field(
        None, "JWT_SECRET", validate_default=True, description="HS256 signing secret"
    )
    jwt_issuer: str = env_field("", "JWT_ISSUER", description="Defaults to APP_NAME")
    jwt_audience: str = env_field("", "JWT_AUDIENCE", description="Defaults to APP_NAME")
    access_token_ttl: timedelta = env_field(
        timedelta(days=3),
        "JWT_ACCESS_EXPIRY",
        description="Access token lifetime, e.g. 15m or 3d",
    )
    refresh_token_ttl: timedelta = env_field(
        timedelta(days=30),
        "JWT_REFRESH_EXPIRY",
        description="Lifetime of the signed refresh claim; the stored row expiry governs reuse",
    )
    refresh_ttl_days: int = env_field(7, "REFRESH_TTL_DAYS", ge=1)
    remember_me_refresh_ttl_days: int = env_field(
        30, "REMEMBER_ME_REFRESH_TTL_DAYS", ge=1
    )
    revoked_retention_days: int = env_field(
        30,
        "REVOKED_RETENTION_DAYS",
        ge=0,
        description="How long revoked rows are kept as evidence before the sweeper deletes them",
    )
    cleanup_interval_seconds: int = env_field(
        3600,
        "TOKEN_CLEANUP_INTERVAL_SECONDS",
        ge=0,
        description="Interval of the in-process sweeper; 0 disables it",
    )
    refresh_cookie_path: str = env_field("/v1/auth/refresh-tokens", "REFRESH_COOKIE_PATH")
    default_page_size: int = env_field(20, "DEFAULT_PAGE_SIZE", ge=1)
    max_page_size: int = env_field(100, "MAX_PAGE_SIZE", ge=1)

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

    @field_validator("environment", mode="before")
    @classmethod
    def _validate_environment(cls, value: Any) -> Environment:
        if isinstance(value, str):
            value = value.strip().lower()
        return Environment(value)

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _require_jwt_secret(cls, value: str | None) -> str:
        if value is None or not str(value).strip():
            raise ValueError("JWT_SECRET is required")
        return str(value)

    @field_validator("access_token_ttl", "refresh_token_ttl", mode="before")
    @classmethod
    def _parse_ttl(cls, value: Any) -> timedelta:
        return parse_duration(value)

    @model_validator(mode="after")
    def _default_issuer_and_audience(self) -> "Settings":
        if not self.jwt_issuer:
            self.jwt_issuer = self.app_name
        if not self.jwt_audience:
            self.jwt_audience = self.app_name
        if self.default_page_size > self.max_page_size:
            raise ValueError("DEFAULT_PAGE_SIZE must not exceed MAX_PAGE_SIZE")
        if self.db_pool_min_size > self.db_pool_max_size:
            raise ValueError("DB_POOL_MIN_SIZE must not exceed DB_POOL_MAX_SIZE")
        return self

    @property
    def is_development(self) -> bool:
        return self.environment == Environment.DEVELOPMENT

    @property
    def secure_cookies(self) -> bool:
        return not self.is_development

    @property
    def cookie_samesite(self) -> str:
        # Production frontends are served cross-site
        return "lax" if self.is_development else "none"

    def refresh_ttl_for(self, remember_me: bool) -> timedelta:
        """Persisted refresh lifetime for the remember-me policy."""

        days = self.remember_me_refresh_ttl_days if remember_me else self.refresh_ttl_days
        return timedelta(days=days)

    @property
    def revoked_retention(self) -> timedelta:
        return timedelta(days=self.revoked_retention_days)


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.info(
            "settings_loaded",
            app_name=_settings_cache.app_name,
            environment=_settings_cache.environment.value,
            use_memory_store=_settings_cache.use_memory_store,
        )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
