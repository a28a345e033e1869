"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
Smart Wallet Tracker application, loading and validating environment
variables at startup.
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
        alias="DATABASE_URL",
        description="PostgreSQL connection string",
    )
    pool_size: int = Field(
        default=5,
        alias="DATABASE_POOL_SIZE",
        ge=1,
        le=100,
        description="Connection pool size",
    )
    echo: bool = Field(
        default=False,
        alias="DATABASE_ECHO",
        description="Echo SQL statements",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        default="redis://localhost:6379",
        alias="REDIS_URL",
        description="Redis connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate Redis URL format."""
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class PricingSettings(BaseSettings):
    """Price source chain settings for the valuation resolver."""

    model_config = SettingsConfigDict(env_prefix="PRICING_", extra="ignore")

    binance_base_url: str = Field(
        default="https://api.binance.com",
        alias="PRICING_BINANCE_BASE_URL",
        description="Binance spot REST endpoint (klines + ticker)",
    )
    jupiter_base_url: str = Field(
        default="https://lite-api.jup.ag",
        alias="PRICING_JUPITER_BASE_URL",
        description="Jupiter price API endpoint",
    )
    coingecko_base_url: str = Field(
        default="https://api.coingecko.com",
        alias="PRICING_COINGECKO_BASE_URL",
        description="CoinGecko public API endpoint",
    )
    request_timeout_seconds: float = Field(
        default=3.0,
        alias="PRICING_REQUEST_TIMEOUT_SECONDS",
        gt=0.0,
        le=60.0,
        description="Per-source HTTP timeout before falling through to the next source",
    )
    cache_ttl_seconds: int = Field(
        default=120,
        alias="PRICING_CACHE_TTL_SECONDS",
        ge=1,
        le=24 * 3600,
        description="TTL for cached (source, minute) prices",
    )
    cache_backend: Literal["memory", "redis"] = Field(
        default="memory",
        alias="PRICING_CACHE_BACKEND",
        description="Where resolved prices are cached",
    )


class WebhookSettings(BaseSettings):
    """Webhook ingress settings."""

    model_config = SettingsConfigDict(env_prefix="WEBHOOK_", extra="ignore")

    auth_token: SecretStr | None = Field(
        default=None,
        alias="WEBHOOK_AUTH_TOKEN",
        description="Shared secret expected in the Authorization header",
    )

    @property
    def auth_enabled(self) -> bool:
        """Check if webhook authentication is enabled."""
        return self.auth_token is not None


class IngestionSettings(BaseSettings):
    """Staged trade ingestion worker settings."""

    model_config = SettingsConfigDict(env_prefix="INGESTION_", extra="ignore")

    batch_size: int = Field(
        default=10,
        alias="INGESTION_BATCH_SIZE",
        ge=1,
        le=1000,
        description="Maximum staged trades valued per poll",
    )
    idle_poll_seconds: float = Field(
        default=3.0,
        alias="INGESTION_IDLE_POLL_SECONDS",
        gt=0.0,
        le=300.0,
        description="Sleep between polls when no staged trades are pending",
    )
    debounce_seconds: float = Field(
        default=5.0,
        alias="INGESTION_DEBOUNCE_SECONDS",
        ge=0.0,
        le=600.0,
        description="Per-wallet quiet period before recomputing lots and metrics",
    )
    retry_delay_seconds: int = Field(
        default=60,
        alias="INGESTION_RETRY_DELAY_SECONDS",
        ge=0,
        le=24 * 3600,
        description="Minimum delay before a failed staged trade is valued again",
    )


class ConsensusSettings(BaseSettings):
    """Consensus detector settings."""

    model_config = SettingsConfigDict(env_prefix="CONSENSUS_", extra="ignore")

    window_minutes: int = Field(
        default=120,
        alias="CONSENSUS_WINDOW_MINUTES",
        ge=1,
        le=7 * 24 * 60,
        description="Maximum gap between consecutive buys chained into one cluster",
    )
    min_wallets: int = Field(
        default=2,
        alias="CONSENSUS_MIN_WALLETS",
        ge=2,
        le=100,
        description="Distinct wallets required for a consensus signal",
    )
    signal_ttl_hours: int = Field(
        default=24,
        alias="CONSENSUS_SIGNAL_TTL_HOURS",
        ge=1,
        le=24 * 30,
        description="Hours before an active signal expires",
    )
    expiry_interval_seconds: int = Field(
        default=300,
        alias="CONSENSUS_EXPIRY_INTERVAL_SECONDS",
        ge=5,
        le=24 * 3600,
        description="How often active signals are swept for expiry",
    )


class QueueSettings(BaseSettings):
    """Wallet processing queue settings."""

    model_config = SettingsConfigDict(env_prefix="QUEUE_", extra="ignore")

    poll_interval_seconds: float = Field(
        default=2.0,
        alias="QUEUE_POLL_INTERVAL_SECONDS",
        gt=0.0,
        le=300.0,
        description="Sleep between claims when the queue is empty",
    )
    retry_base_seconds: int = Field(
        default=30,
        alias="QUEUE_RETRY_BASE_SECONDS",
        ge=1,
        le=3600,
        description="Backoff step per failed attempt",
    )
    retry_max_seconds: int = Field(
        default=300,
        alias="QUEUE_RETRY_MAX_SECONDS",
        ge=1,
        le=24 * 3600,
        description="Upper bound on retry backoff",
    )
    max_attempts: int = Field(
        default=10,
        alias="QUEUE_MAX_ATTEMPTS",
        ge=1,
        le=1000,
        description="Attempts before a job is parked as failed",
    )
    stale_lease_minutes: int = Field(
        default=15,
        alias="QUEUE_STALE_LEASE_MINUTES",
        ge=1,
        le=24 * 60,
        description="Processing jobs older than this are returned to pending",
    )


class ApiSettings(BaseSettings):
    """HTTP API settings."""

    model_config = SettingsConfigDict(env_prefix="API_", extra="ignore")

    host: str = Field(
        default="0.0.0.0",
        alias="API_HOST",
        description="Bind address for webhook and read API",
    )
    port: int = Field(
        default=8080,
        alias="API_PORT",
        ge=1,
        le=65535,
        description="HTTP port for webhook and read API",
    )


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from smart_wallet_tracker.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.consensus.window_minutes)
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
    pricing: PricingSettings = Field(
        default_factory=lambda: PricingSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    webhook: WebhookSettings = Field(
        default_factory=lambda: WebhookSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    ingestion: IngestionSettings = Field(
        default_factory=lambda: IngestionSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    consensus: ConsensusSettings = Field(
        default_factory=lambda: ConsensusSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    queue: QueueSettings = Field(
        default_factory=lambda: QueueSettings(
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
    dry_run: bool = Field(
        default=False,
        alias="DRY_RUN",
        description="Accept webhooks and value trades without triggering recomputation",
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
            "redis_url": self._redact_url(self.redis.url),
            "pricing": {
                "binance_base_url": self.pricing.binance_base_url,
                "jupiter_base_url": self.pricing.jupiter_base_url,
                "coingecko_base_url": self.pricing.coingecko_base_url,
                "request_timeout_seconds": str(self.pricing.request_timeout_seconds),
                "cache_backend": self.pricing.cache_backend,
            },
            "webhook": {
                "auth_token": "(set)" if self.webhook.auth_enabled else "(not set)",
            },
            "ingestion": {
                "batch_size": str(self.ingestion.batch_size),
                "debounce_seconds": str(self.ingestion.debounce_seconds),
            },
            "consensus": {
                "window_minutes": str(self.consensus.window_minutes),
                "min_wallets": str(self.consensus.min_wallets),
            },
            "queue": {
                "max_attempts": str(self.queue.max_attempts),
            },
            "log_level": self.log_level,
            "api_port": str(self.api.port),
            "dry_run": str(self.dry_run),
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
        ValidationError: If required environment variables are missing
            or have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
