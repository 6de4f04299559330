"""Realtime change-feed merging and in-process notifications."""

from ledgersync.realtime.bus import CacheEventBus, CacheUpdateHandler
from ledgersync.realtime.listener import (
    DEFAULT_OWNERSHIP,
    OwnershipRule,
    RealtimeMergeListener,
    parse_version,
)

__all__ = [
    "CacheEventBus",
    "CacheUpdateHandler",
    "DEFAULT_OWNERSHIP",
    "OwnershipRule",
    "RealtimeMergeListener",
    "parse_version",
]
