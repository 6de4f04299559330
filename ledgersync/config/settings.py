"""
Configuration Management for LedgerSync

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
Cache lifetimes, sync intervals and retry policy are all tunable
without touching the cache or sync code.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# Freshness windows tuned to how often each table changes.
# Frequently mutated data gets short lifetimes, reference data long ones.
DEFAULT_NAMESPACE_TTLS: dict[str, float] = {
    "transactions": 2 * 60,
    "debts": 3 * 60,
    "products": 5 * 60,
    "scheduled_payments": 5 * 60,
    "contacts": 10 * 60,
    "accounts": 10 * 60,
    "categories": 15 * 60,
    "tags": 15 * 60,
}


class CacheSettings(BaseSettings):
    """Local cache storage configuration."""

    model_config = SettingsConfigDict(
        env_prefix="LEDGERSYNC_CACHE_",
        extra="ignore"
    )

    backend: str = Field(
        default="sqlite",
        description="Storage backend for the local cache: 'sqlite' or 'memory'"
    )
    db_path: str = Field(
        default=".ledgersync/cache.db",
        description="Path to the SQLite cache database"
    )
    freshness_window_seconds: float = Field(
        default=5 * 60,
        gt=0,
        description="How long a bulk-fetched snapshot is served without refetching"
    )
    default_ttl_seconds: float = Field(
        default=24 * 60 * 60,
        gt=0,
        description="TTL for list caches whose namespace has no specific TTL"
    )
    namespace_ttls: dict[str, float] = Field(
        default_factory=lambda: dict(DEFAULT_NAMESPACE_TTLS),
        description="Per-namespace TTL in seconds"
    )

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("sqlite", "memory"):
            raise ValueError(f"Unsupported cache backend: {v}")
        return v

    def ttl_for(self, namespace: str) -> float:
        """Get the TTL (seconds) for a cache namespace."""
        key = getattr(namespace, "value", namespace)
        return self.namespace_ttls.get(key, self.default_ttl_seconds)


class SyncSettings(BaseSettings):
    """Synchronization and replay configuration."""

    model_config = SettingsConfigDict(
        env_prefix="LEDGERSYNC_SYNC_",
        extra="ignore"
    )

    pending_poll_interval_seconds: float = Field(
        default=30.0,
        gt=0,
        description="How often the pending-changes status is recomputed"
    )
    drain_max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts per change when replaying against the remote store"
    )
    drain_backoff_multiplier: float = Field(
        default=1.0,
        ge=0.0,
        description="Exponential backoff multiplier between replay attempts"
    )
    drain_backoff_min_seconds: float = Field(
        default=2.0,
        ge=0.0,
        description="Minimum wait between replay attempts"
    )
    drain_backoff_max_seconds: float = Field(
        default=10.0,
        ge=0.0,
        description="Maximum wait between replay attempts"
    )
    compare_versions: bool = Field(
        default=True,
        description="Reject realtime updates older than the cached record's updated_at"
    )


class LoggingSettings(BaseSettings):
    """Local logging configuration."""

    model_config = SettingsConfigDict(
        env_prefix="LEDGERSYNC_LOG_",
        extra="ignore"
    )

    level: str = Field(
        default="INFO",
        description="Minimum log level"
    )

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        v = v.strip().upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return v


class AppSettings(BaseSettings):
    """
    Main application settings.

    Loads configuration from environment variables and .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    app_environment: str = Field(
        default="development",
        description="Application environment"
    )
    debug_mode: bool = Field(
        default=False,
        description="Enable debug mode"
    )


class Settings(BaseSettings):
    """
    Root settings container.

    Aggregates all sub-settings for easy access.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Note: These are loaded lazily to allow partial configuration

    @property
    def cache(self) -> CacheSettings:
        return CacheSettings()

    @property
    def sync(self) -> SyncSettings:
        return SyncSettings()

    @property
    def logging(self) -> LoggingSettings:
        return LoggingSettings()

    @property
    def app(self) -> AppSettings:
        return AppSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Uses LRU cache to ensure settings are only loaded once.
    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings(settings: Optional[Settings] = None) -> dict[str, bool]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid}.
    Useful for startup checks.
    """
    results = {}
    settings = settings or get_settings()

    for name in ("cache", "sync", "logging", "app"):
        try:
            _ = getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results
