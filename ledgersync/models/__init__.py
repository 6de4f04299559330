"""
Data Models Package

This package contains the Pydantic models used by the cache and sync layer.
"""

from ledgersync.models.cache import (
    PRIMARY_NAMESPACES,
    CacheEntry,
    CacheNamespace,
    CacheSummary,
    Record,
    make_cache_key,
    record_id_of,
)
from ledgersync.models.changes import (
    ChangeOperation,
    PendingChange,
    PendingChangesStatus,
)
from ledgersync.models.realtime import (
    CacheUpdate,
    RealtimeEvent,
    RealtimeEventType,
    SubscriptionState,
)
from ledgersync.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Cache models
    "PRIMARY_NAMESPACES",
    "CacheEntry",
    "CacheNamespace",
    "CacheSummary",
    "Record",
    "make_cache_key",
    "record_id_of",
    # Change models
    "ChangeOperation",
    "PendingChange",
    "PendingChangesStatus",
    # Realtime models
    "CacheUpdate",
    "RealtimeEvent",
    "RealtimeEventType",
    "SubscriptionState",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
