"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
Odometer Guard service, loading and validating environment variables
at startup.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr, field_validator, model_validator
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
    trust_channel: str = Field(
        default="odometer:trust",
        alias="REDIS_TRUST_CHANNEL",
        description="Pub/sub channel for trust score change notifications",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate Redis URL format."""
        if not v.startswith("redis://"):
            raise ValueError("REDIS_URL must start with redis://")
        return v


class PolygonSettings(BaseSettings):
    """Polygon RPC settings for digest anchoring."""

    model_config = SettingsConfigDict(env_prefix="POLYGON_", extra="ignore")

    rpc_url: str = Field(
        default="https://polygon-rpc.com",
        alias="POLYGON_RPC_URL",
        description="Polygon RPC endpoint used to submit anchor transactions",
    )
    anchor_private_key: SecretStr | None = Field(
        default=None,
        alias="POLYGON_ANCHOR_PRIVATE_KEY",
        description="Private key of the account that signs anchor transactions",
    )
    chain_id: int | None = Field(
        default=None,
        alias="POLYGON_CHAIN_ID",
        description="Chain ID override (fetched from the node when unset)",
    )
    receipt_timeout_seconds: int = Field(
        default=120,
        alias="POLYGON_RECEIPT_TIMEOUT_SECONDS",
        ge=5,
        le=3600,
        description="How long to wait for an anchor transaction receipt",
    )

    @field_validator("rpc_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate RPC URL format."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("RPC URL must be an HTTP(S) endpoint")
        return v


class ValidationSettings(BaseSettings):
    """Mileage classification and trust penalty settings."""

    model_config = SettingsConfigDict(env_prefix="VALIDATION_", extra="ignore")

    rollback_tolerance: int = Field(
        default=5,
        alias="VALIDATION_ROLLBACK_TOLERANCE",
        ge=0,
        le=1000,
        description="Decrease (km) tolerated before a reading is treated as rollback",
    )
    suspicious_threshold: int = Field(
        default=1000,
        alias="VALIDATION_SUSPICIOUS_THRESHOLD",
        ge=1,
        le=1_000_000,
        description="Increase (km) above which a reading is accepted but flagged",
    )
    rollback_penalty: int = Field(
        default=-30,
        alias="VALIDATION_ROLLBACK_PENALTY",
        ge=-100,
        le=0,
        description="Trust score change applied on rollback detection",
    )
    cas_retries: int = Field(
        default=1,
        alias="VALIDATION_CAS_RETRIES",
        ge=0,
        le=10,
        description="Re-read/retry rounds after a mileage compare-and-swap conflict",
    )


class ConsolidationSettings(BaseSettings):
    """Daily consolidation and anchoring settings."""

    model_config = SettingsConfigDict(env_prefix="CONSOLIDATION_", extra="ignore")

    run_hour: int = Field(
        default=2,
        alias="CONSOLIDATION_RUN_HOUR",
        ge=0,
        le=23,
        description="UTC hour of the daily consolidation run",
    )
    run_minute: int = Field(
        default=0,
        alias="CONSOLIDATION_RUN_MINUTE",
        ge=0,
        le=59,
        description="UTC minute of the daily consolidation run",
    )
    max_concurrency: int = Field(
        default=5,
        alias="CONSOLIDATION_MAX_CONCURRENCY",
        ge=1,
        le=100,
        description="Vehicles consolidated in parallel",
    )
    anchor_timeout_seconds: float = Field(
        default=60.0,
        alias="CONSOLIDATION_ANCHOR_TIMEOUT_SECONDS",
        gt=0.0,
        le=3600.0,
        description="Timeout for a single anchor submission",
    )
    vehicle_timeout_seconds: float = Field(
        default=180.0,
        alias="CONSOLIDATION_VEHICLE_TIMEOUT_SECONDS",
        gt=0.0,
        le=7200.0,
        description="Timeout for one vehicle's whole consolidation unit",
    )
    max_anchor_attempts: int = Field(
        default=5,
        alias="CONSOLIDATION_MAX_ANCHOR_ATTEMPTS",
        ge=1,
        le=100,
        description="Anchor attempts before a batch is left failed for manual action",
    )
    sweep_limit: int = Field(
        default=10,
        alias="CONSOLIDATION_SWEEP_LIMIT",
        ge=1,
        le=10_000,
        description="Max failed/pending batches re-processed per sweep",
    )
    eod_hint_enabled: bool = Field(
        default=True,
        alias="CONSOLIDATION_EOD_HINT_ENABLED",
        description="Trigger consolidation from late-night/early-morning readings",
    )
    eod_evening_hour: int = Field(
        default=22,
        alias="CONSOLIDATION_EOD_EVENING_HOUR",
        ge=0,
        le=23,
        description="Readings at or after this UTC hour close out the current day",
    )
    eod_morning_hour: int = Field(
        default=6,
        alias="CONSOLIDATION_EOD_MORNING_HOUR",
        ge=0,
        le=23,
        description="Readings at or before this UTC hour close out the previous day",
    )
    eod_dedup_ttl_seconds: int = Field(
        default=6 * 3600,
        alias="CONSOLIDATION_EOD_DEDUP_TTL_SECONDS",
        ge=60,
        le=7 * 24 * 3600,
        description="How long an end-of-day trigger is suppressed per vehicle/date",
    )

    @model_validator(mode="after")
    def validate_timeouts(self) -> ConsolidationSettings:
        if self.vehicle_timeout_seconds < self.anchor_timeout_seconds:
            raise ValueError(
                "CONSOLIDATION_VEHICLE_TIMEOUT_SECONDS must be >= CONSOLIDATION_ANCHOR_TIMEOUT_SECONDS"
            )
        return self


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from odometer_guard.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.validation.rollback_tolerance)
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
    polygon: PolygonSettings = Field(
        default_factory=lambda: PolygonSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    validation: ValidationSettings = Field(
        default_factory=lambda: ValidationSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    consolidation: ConsolidationSettings = Field(
        default_factory=lambda: ConsolidationSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )
    log_format: Literal["text", "json"] = Field(
        default="text",
        alias="LOG_FORMAT",
        description="Log output format",
    )
    dry_run: bool = Field(
        default=False,
        alias="DRY_RUN",
        description="Compute daily digests without submitting anchor transactions",
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
            "polygon": {
                "rpc_url": self.polygon.rpc_url,
                "anchor_private_key": "(set)" if self.polygon.anchor_private_key else "(not set)",
                "chain_id": str(self.polygon.chain_id) if self.polygon.chain_id else "(from node)",
            },
            "validation": {
                "rollback_tolerance": str(self.validation.rollback_tolerance),
                "suspicious_threshold": str(self.validation.suspicious_threshold),
                "rollback_penalty": str(self.validation.rollback_penalty),
            },
            "consolidation": {
                "schedule_utc": f"{self.consolidation.run_hour:02d}:{self.consolidation.run_minute:02d}",
                "max_concurrency": str(self.consolidation.max_concurrency),
                "max_anchor_attempts": str(self.consolidation.max_anchor_attempts),
            },
            "log_level": self.log_level,
            "log_format": self.log_format,
            "dry_run": str(self.dry_run),
        }

    def validate_requirements(self, *, command: Literal["run", "consolidate"]) -> None:
        """Validate command-specific requirements.

        Anchoring needs a signing key unless running in dry-run mode.
        """
        if command in ("run", "consolidate") and not self.dry_run:
            if not self.polygon.anchor_private_key:
                raise ValueError("POLYGON_ANCHOR_PRIVATE_KEY is required unless DRY_RUN=true")

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
