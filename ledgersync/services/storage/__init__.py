"""
Storage Services Package

Provides the abstract local storage interface and concrete implementations.
SQLite is the durable backend; the in-memory backend serves tests and
ephemeral sessions.
"""

from ledgersync.services.storage.interface import (
    AuditStorageInterface,
    CorruptedDataError,
    StorageBackend,
    StorageError,
    StorageUnavailableError,
)
from ledgersync.services.storage.memory import (
    InMemoryAuditStorage,
    InMemoryStorageBackend,
)
from ledgersync.services.storage.sqlite import (
    SQLiteAuditStorage,
    SQLiteConnection,
    SQLiteStorageBackend,
    init_database,
)

__all__ = [
    # Interfaces
    "AuditStorageInterface",
    "StorageBackend",
    # Exceptions
    "CorruptedDataError",
    "StorageError",
    "StorageUnavailableError",
    # In-memory implementation
    "InMemoryAuditStorage",
    "InMemoryStorageBackend",
    # SQLite implementation
    "SQLiteAuditStorage",
    "SQLiteConnection",
    "SQLiteStorageBackend",
    "init_database",
]
