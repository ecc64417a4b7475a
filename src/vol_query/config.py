"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
VOL query service, loading and validating environment variables at
startup.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        default="sqlite+aiosqlite:///vol_query.sqlite",
        alias="DATABASE_URL",
        description="SQLite (aiosqlite) or PostgreSQL connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("sqlite+aiosqlite://", "postgresql://", "postgresql+asyncpg://")):
            raise ValueError("DATABASE_URL must be an aiosqlite or PostgreSQL connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings (optional shared cache)."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string; caching is disabled when unset",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate Redis URL format."""
        if v is None:
            return v
        if not v.startswith("redis://"):
            raise ValueError("REDIS_URL must start with redis://")
        return v

    @property
    def enabled(self) -> bool:
        return self.url is not None


class LedgerSettings(BaseSettings):
    """Upstream ledger node and ingestion loop settings."""

    model_config = SettingsConfigDict(env_prefix="LEDGER_", extra="ignore")

    url: str = Field(
        default="http://localhost:9090",
        alias="LEDGER_URL",
        description="Base URL of the ledger node serving blocks, offers, accounts and assets",
    )
    request_timeout_seconds: float = Field(
        default=5.0,
        alias="LEDGER_REQUEST_TIMEOUT_SECONDS",
        gt=0,
        le=120,
        description="Fixed per-request timeout for ledger calls",
    )
    fetch_batch_size: int = Field(
        default=32,
        alias="LEDGER_FETCH_BATCH_SIZE",
        ge=1,
        le=1024,
        description="Maximum concurrent block fetches and asset refresh batch size",
    )
    fetch_delay_seconds: float = Field(
        default=5.0,
        alias="LEDGER_FETCH_DELAY_SECONDS",
        ge=0,
        description="Delay between block discovery passes",
    )
    ingest_delay_seconds: float = Field(
        default=5.0,
        alias="LEDGER_INGEST_DELAY_SECONDS",
        ge=0,
        description="Delay between ingestion passes",
    )
    asset_fetch_attempts: int = Field(
        default=5,
        alias="LEDGER_ASSET_FETCH_ATTEMPTS",
        ge=1,
        le=100,
        description="Attempts per asset refresh batch before the ingestion run is aborted",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("LEDGER_URL must be an HTTP(S) endpoint")
        return v.rstrip("/")


class ApiSettings(BaseSettings):
    """HTTP query API settings."""

    model_config = SettingsConfigDict(env_prefix="API_", extra="ignore")

    host: str = Field(default="0.0.0.0", alias="API_HOST")
    port: int = Field(default=7777, alias="API_PORT", ge=1, le=65535)
    admin_key: SecretStr | None = Field(
        default=None,
        alias="API_ADMIN_KEY",
        description="Shared secret for administrative commands; commands are refused when unset",
    )


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from vol_query.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.ledger.url)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # NOTE: Each nested BaseSettings must be given the same env_file, otherwise it
    # will only read from the process environment (and ignore `.env`).
    database: DatabaseSettings = Field(
        default_factory=lambda: DatabaseSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    redis: RedisSettings = Field(
        default_factory=lambda: RedisSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    ledger: LedgerSettings = Field(
        default_factory=lambda: LedgerSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    api: ApiSettings = Field(
        default_factory=lambda: ApiSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        return {
            "database_url": self._redact_url(self.database.url),
            "redis_url": self._redact_url(self.redis.url) if self.redis.url else "(not set)",
            "ledger": {
                "url": self.ledger.url,
                "request_timeout_seconds": str(self.ledger.request_timeout_seconds),
                "fetch_batch_size": str(self.ledger.fetch_batch_size),
                "fetch_delay_seconds": str(self.ledger.fetch_delay_seconds),
                "ingest_delay_seconds": str(self.ledger.ingest_delay_seconds),
            },
            "api": {
                "host": self.api.host,
                "port": str(self.api.port),
                "admin_key": "(set)" if self.api.admin_key else "(not set)",
            },
            "log_level": self.log_level,
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            protocol_end = url.index("://") + 3
            at_pos = url.index("@")
            creds_part = url[protocol_end:at_pos]
            if ":" in creds_part:
                username = creds_part.split(":")[0]
                return f"{url[:protocol_end]}{username}:***@{url[at_pos + 1 :]}"
        return url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        The Settings instance.

    Raises:
        ValidationError: If environment variables have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
