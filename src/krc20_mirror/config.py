"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
KRC20 mirror, loading and validating environment variables at startup.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"

DEFAULT_KASPLEX_API_BASE_URL = "https://api.kasplex.org/v1"
DEFAULT_PRICE_FEED_URL = "https://storage.googleapis.com/kspr-api-v1/marketplace/marketplace.json"


class ConfigurationError(Exception):
    """Raised when a required setting is missing or invalid."""


def _validate_http_url(v: str) -> str:
    if not v.startswith(("http://", "https://")):
        raise ValueError("URL must be an HTTP(S) endpoint")
    return v.rstrip("/")


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL or SQLite (aiosqlite) connection string",
    )
    echo: bool = Field(
        default=False,
        alias="DATABASE_ECHO",
        description="Echo SQL statements for debugging",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError(
                "DATABASE_URL must be a PostgreSQL or sqlite+aiosqlite connection string"
            )
        return v


class KasplexSettings(BaseSettings):
    """Kasplex indexer API settings."""

    model_config = SettingsConfigDict(env_prefix="KASPLEX_", extra="ignore")

    api_base_url: str = Field(
        default=DEFAULT_KASPLEX_API_BASE_URL,
        alias="KASPLEX_API_BASE_URL",
        description="Base URL of the Kasplex REST API",
    )
    batch_size: int = Field(
        default=50,
        alias="KASPLEX_BATCH_SIZE",
        ge=1,
        le=1000,
        description="Fixed page size of the upstream operation list",
    )
    request_timeout_seconds: float = Field(
        default=30.0,
        alias="KASPLEX_REQUEST_TIMEOUT_SECONDS",
        gt=0.0,
        le=600.0,
        description="Total timeout per upstream request",
    )
    requests_per_second: float = Field(
        default=5.0,
        alias="KASPLEX_REQUESTS_PER_SECOND",
        gt=0.0,
        le=100.0,
        description="Client-side rate limit for upstream requests",
    )
    token_cursor_param: str = Field(
        default="next",
        alias="KASPLEX_TOKEN_CURSOR_PARAM",
        description="Query parameter carrying the token list cursor",
    )
    op_cursor_param: str = Field(
        default="next",
        alias="KASPLEX_OP_CURSOR_PARAM",
        description="Query parameter carrying the operation list cursor",
    )

    @field_validator("api_base_url")
    @classmethod
    def validate_api_base_url(cls, v: str) -> str:
        return _validate_http_url(v)


class RetrySettings(BaseSettings):
    """Retry policy applied to upstream calls."""

    model_config = SettingsConfigDict(env_prefix="RETRY_", extra="ignore")

    max_attempts: int = Field(
        default=3,
        alias="RETRY_MAX_ATTEMPTS",
        ge=1,
        le=20,
        description="Attempts per upstream call, including the first",
    )
    base_delay_seconds: float = Field(
        default=1.0,
        alias="RETRY_BASE_DELAY_SECONDS",
        ge=0.0,
        le=300.0,
        description="Linear backoff base: attempt N sleeps N * base delay",
    )


class PriceSettings(BaseSettings):
    """Floor-price sampler settings."""

    model_config = SettingsConfigDict(env_prefix="PRICE_", extra="ignore")

    feed_url: str = Field(
        default=DEFAULT_PRICE_FEED_URL,
        alias="PRICE_FEED_URL",
        description="Floor-price feed returning quotes for all tickers",
    )
    base_asset_url: str | None = Field(
        default=None,
        alias="PRICE_BASE_ASSET_URL",
        description="Optional endpoint returning the USD price of the base asset",
    )
    update_interval_minutes: int = Field(
        default=15,
        alias="PRICE_UPDATE_INTERVAL_MINUTES",
        ge=1,
        le=24 * 60,
        description="Minutes between price samples",
    )
    enabled: bool = Field(
        default=True,
        alias="PRICE_SAMPLER_ENABLED",
        description="Run the price sampler as part of the service",
    )

    @field_validator("feed_url")
    @classmethod
    def validate_feed_url(cls, v: str) -> str:
        return _validate_http_url(v)

    @field_validator("base_asset_url")
    @classmethod
    def validate_base_asset_url(cls, v: str | None) -> str | None:
        if v is None or not v.strip():
            return None
        return _validate_http_url(v)


class SyncSettings(BaseSettings):
    """Reconciliation pass settings."""

    model_config = SettingsConfigDict(env_prefix="SYNC_", extra="ignore")

    historical_update: bool = Field(
        default=False,
        alias="SYNC_HISTORICAL_UPDATE",
        description="Walk transaction pages to the natural end instead of stopping at the first known hash",
    )
    scheduler_enabled: bool = Field(
        default=True,
        alias="SYNC_SCHEDULER_ENABLED",
        description="Fire a full pass at every wall-clock hour",
    )
    ticker_retry_cooldown_seconds: float = Field(
        default=60.0,
        alias="SYNC_TICKER_RETRY_COOLDOWN_SECONDS",
        ge=0.0,
        le=3600.0,
        description="Wait before retrying a failed page in a single-ticker pass",
    )


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from krc20_mirror.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.kasplex.api_base_url)
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
    kasplex: KasplexSettings = Field(
        default_factory=lambda: KasplexSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    retry: RetrySettings = Field(
        default_factory=lambda: RetrySettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    price: PriceSettings = Field(
        default_factory=lambda: PriceSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    sync: SyncSettings = Field(
        default_factory=lambda: SyncSettings(
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
            "kasplex": {
                "api_base_url": self.kasplex.api_base_url,
                "batch_size": str(self.kasplex.batch_size),
                "requests_per_second": str(self.kasplex.requests_per_second),
            },
            "retry": {
                "max_attempts": str(self.retry.max_attempts),
                "base_delay_seconds": str(self.retry.base_delay_seconds),
            },
            "price": {
                "feed_url": self.price.feed_url,
                "base_asset_url": self.price.base_asset_url or "(not set)",
                "update_interval_minutes": str(self.price.update_interval_minutes),
                "enabled": str(self.price.enabled),
            },
            "sync": {
                "historical_update": str(self.sync.historical_update),
                "scheduler_enabled": str(self.sync.scheduler_enabled),
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

    Uses LRU cache to ensure settings are loaded only once and
    reused across the application.

    Returns:
        The Settings instance.

    Raises:
        ConfigurationError: If required environment variables are missing
            or have invalid values.
    """
    try:
        return Settings()
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
