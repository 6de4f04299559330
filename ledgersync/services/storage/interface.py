"""
Abstract Storage Interface

DESIGN DECISION: We define an abstract interface for local storage.
This allows us to:
1. Use SQLite on disk for real sessions
2. Use in-memory storage for tests and ephemeral sessions
3. Keep cache and sync logic decoupled from the storage engine

Three kinds of data live in a backend:
- Full-record collections, one per (owner, table), indexed by record id
- List-level entries (CacheEntry), addressed by (area, key) and tagged with an owner
- The pending-changes log, in append order

Backends RAISE on failure. Degrading to empty results is the job of the
layers above (PersistentRecordStore, FreshnessCache, ChangeQueue).
"""

from abc import ABC, abstractmethod
from typing import Iterable, Optional
from uuid import UUID

from ledgersync.models.audit import AuditEvent
from ledgersync.models.cache import CacheEntry, Record
from ledgersync.models.changes import PendingChange


class StorageBackend(ABC):
    """
    Abstract interface for local cache storage.

    Any storage implementation (SQLite, in-memory, ...)
    must implement these methods.
    """

    # ------------------------------------------------------------------
    # Full-record collections
    # ------------------------------------------------------------------

    @abstractmethod
    async def read_collection(self, owner: str, table: str) -> list[Record]:
        """
        Read every record of one table for one owner.

        Returns:
            Records in insertion order (empty if the collection does not exist)
        """
        pass

    @abstractmethod
    async def read_record(
        self,
        owner: str,
        table: str,
        record_id: str,
    ) -> Optional[Record]:
        """
        Read one record by id.

        Returns:
            The record if found, None otherwise
        """
        pass

    @abstractmethod
    async def replace_collection(
        self,
        owner: str,
        table: str,
        records: list[Record],
    ) -> None:
        """
        Replace a whole collection.

        Raises:
            StorageError: If a record has no id or the write fails
        """
        pass

    @abstractmethod
    async def put_record(self, owner: str, table: str, record: Record) -> None:
        """
        Insert or replace one record by id.

        Raises:
            StorageError: If the record has no id or the write fails
        """
        pass

    @abstractmethod
    async def delete_record(self, owner: str, table: str, record_id: str) -> bool:
        """
        Delete one record by id.

        Returns:
            True if a record was removed
        """
        pass

    @abstractmethod
    async def purge_collections(self, owner: Optional[str] = None) -> int:
        """
        Remove every collection of one owner (or of everyone if owner is None).

        Returns:
            Number of records removed
        """
        pass

    # ------------------------------------------------------------------
    # List-level entries
    # ------------------------------------------------------------------

    @abstractmethod
    async def read_entry(self, area: str, key: str) -> Optional[CacheEntry]:
        """
        Read a list-level entry.

        Returns:
            The entry if present, None otherwise (freshness is not checked here)

        Raises:
            CorruptedDataError: If the stored entry cannot be decoded
        """
        pass

    @abstractmethod
    async def write_entry(
        self,
        area: str,
        key: str,
        entry: CacheEntry,
        owner: str,
    ) -> None:
        """Store a list-level entry, replacing any previous one."""
        pass

    @abstractmethod
    async def delete_entry(self, area: str, key: str) -> bool:
        """
        Delete a list-level entry.

        Returns:
            True if an entry was removed
        """
        pass

    @abstractmethod
    async def purge_entries(
        self,
        owner: Optional[str] = None,
        area: Optional[str] = None,
    ) -> int:
        """
        Delete entries matching every given filter (all entries if none given).

        Returns:
            Number of entries removed
        """
        pass

    # ------------------------------------------------------------------
    # Pending changes
    # ------------------------------------------------------------------

    @abstractmethod
    async def append_change(self, change: PendingChange) -> None:
        """Append one change at the end of the log."""
        pass

    @abstractmethod
    async def read_changes(self) -> list[PendingChange]:
        """
        Read the whole pending-changes log.

        Returns:
            Changes in append order
        """
        pass

    @abstractmethod
    async def remove_changes(self, change_ids: Iterable[UUID]) -> int:
        """
        Remove exactly the given changes.

        Returns:
            Number of changes removed
        """
        pass

    async def close(self) -> None:
        """Release any resources held by the backend."""
        return None


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Returns:
            True if logged successfully
        """
        pass

    @abstractmethod
    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """
        Get all events for a correlation ID (e.g., one sync run).

        Returns:
            List of related events in chronological order
        """
        pass

    @abstractmethod
    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """
        Get the most recent audit events.

        Returns:
            List of recent events (newest first)
        """
        pass


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class CorruptedDataError(StorageError):
    """Stored data could not be decoded."""
    pass


class StorageUnavailableError(StorageError):
    """Could not open or reach the storage backend."""
    pass
