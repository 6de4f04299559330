"""Configuration package."""

from ledgersync.config.settings import (
    DEFAULT_NAMESPACE_TTLS,
    AppSettings,
    CacheSettings,
    LoggingSettings,
    Settings,
    SyncSettings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "DEFAULT_NAMESPACE_TTLS",
    "AppSettings",
    "CacheSettings",
    "LoggingSettings",
    "Settings",
    "SyncSettings",
    "get_settings",
    "validate_all_settings",
]
