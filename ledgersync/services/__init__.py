"""Services package."""

from ledgersync.services.remote import (
    ChangeFeed,
    FeedSubscription,
    RemoteError,
    RemoteStore,
)
from ledgersync.services.storage import (
    AuditStorageInterface,
    CorruptedDataError,
    InMemoryAuditStorage,
    InMemoryStorageBackend,
    SQLiteAuditStorage,
    SQLiteStorageBackend,
    StorageBackend,
    StorageError,
    StorageUnavailableError,
)

__all__ = [
    # Remote store
    "ChangeFeed",
    "FeedSubscription",
    "RemoteError",
    "RemoteStore",
    # Storage services
    "AuditStorageInterface",
    "CorruptedDataError",
    "InMemoryAuditStorage",
    "InMemoryStorageBackend",
    "SQLiteAuditStorage",
    "SQLiteStorageBackend",
    "StorageBackend",
    "StorageError",
    "StorageUnavailableError",
]
