"""
Persistent Record Store

Durable per-table storage of full records for the current user.

DESIGN DECISION: Every operation degrades to "empty" instead of raising.
A cold or corrupted cache must never block the UI, so storage errors are
logged and turned into empty results / False return values.

Records are scoped to the session's user: the backend collection is
addressed by (user_id, table). With no authenticated user every
operation is a no-op.
"""

from functools import wraps
from typing import Any, Optional, Union

import structlog

from ledgersync.models.cache import (
    PRIMARY_NAMESPACES,
    CacheNamespace,
    CacheSummary,
    Record,
    record_id_of,
)
from ledgersync.models.changes import PendingChange
from ledgersync.services.storage import StorageBackend
from ledgersync.session import Session


logger = structlog.get_logger(__name__)


Table = Union[CacheNamespace, str]


def _table_name(table: Table) -> str:
    return getattr(table, "value", table)


def degrades_to(default: Any):
    """
    Decorator: log any failure of a store operation and return `default`.

    `default` may be a zero-argument callable for mutable defaults.
    """
    def decorator(func):
        @wraps(func)
        async def wrapper(self, *args, **kwargs):
            try:
                return await func(self, *args, **kwargs)
            except Exception as e:
                logger.warning(
                    "record_store_degraded",
                    operation=func.__name__,
                    table=_table_name(args[0]) if args and isinstance(args[0], (str, CacheNamespace)) else None,
                    error=str(e),
                )
                return default() if callable(default) else default
        return wrapper
    return decorator


class PersistentRecordStore:
    """
    Durable key/value storage of full records, one collection per table.

    Usage:
        store = PersistentRecordStore(backend, session)
        await store.set(CacheNamespace.ACCOUNTS, accounts)
        account = await store.get(CacheNamespace.ACCOUNTS, "acc-1")
    """

    def __init__(self, backend: StorageBackend, session: Session):
        self._backend = backend
        self._session = session

    @property
    def backend(self) -> StorageBackend:
        return self._backend

    @property
    def user_id(self) -> Optional[str]:
        return self._session.user_id

    async def get(
        self,
        table: Table,
        record_id: Optional[str] = None,
    ) -> Union[list[Record], Optional[Record]]:
        """
        Read a whole table, or one record when `record_id` is given.

        Returns:
            The records ([] on failure), or the record (None if missing or on failure)
        """
        if record_id is not None:
            return await self.get_record(table, record_id)
        return await self.get_all(table)

    @degrades_to(list)
    async def get_all(self, table: Table) -> list[Record]:
        """Read every cached record of a table."""
        if not self.user_id:
            return []
        return await self._backend.read_collection(self.user_id, _table_name(table))

    @degrades_to(None)
    async def get_record(self, table: Table, record_id: str) -> Optional[Record]:
        """Single-item fast path."""
        if not self.user_id:
            return None
        return await self._backend.read_record(self.user_id, _table_name(table), str(record_id))

    @degrades_to(False)
    async def set(self, table: Table, records: list[Record]) -> bool:
        """
        Replace the whole collection of a table.

        Returns:
            True if the collection was written
        """
        if not self.user_id:
            return False
        await self._backend.replace_collection(self.user_id, _table_name(table), records)
        return True

    @degrades_to(False)
    async def update_cache_item(self, table: Table, record: Record) -> bool:
        """Upsert one record by id."""
        if not self.user_id:
            return False
        if record_id_of(record) is None:
            logger.warning("record_without_id", table=_table_name(table))
            return False
        await self._backend.put_record(self.user_id, _table_name(table), record)
        return True

    @degrades_to(False)
    async def delete_cache_item(self, table: Table, record_id: str) -> bool:
        """Delete one record by id. Returns True if it existed."""
        if not self.user_id:
            return False
        return await self._backend.delete_record(self.user_id, _table_name(table), str(record_id))

    @degrades_to(None)
    async def update_record(
        self,
        table: Table,
        record_id: str,
        updates: Record,
    ) -> Optional[Record]:
        """
        Merge field updates into an existing record.

        Returns:
            The merged record, or None if the record is not cached
        """
        if not self.user_id:
            return None
        existing = await self._backend.read_record(self.user_id, _table_name(table), str(record_id))
        if existing is None:
            logger.warning("update_record_missing", table=_table_name(table), record_id=str(record_id))
            return None
        merged = {**existing, **updates, "id": existing["id"]}
        await self._backend.put_record(self.user_id, _table_name(table), merged)
        return merged

    @degrades_to(False)
    async def add_pending_change(self, change: PendingChange) -> bool:
        """
        Persist one pending change at the end of the log.

        Returns:
            True if the change was written durably
        """
        await self._backend.append_change(change)
        return True

    @degrades_to(list)
    async def get_pending_changes(self) -> list[PendingChange]:
        """Read the whole durable pending-changes log, in append order."""
        return await self._backend.read_changes()

    @degrades_to(0)
    async def remove_pending_changes(self, change_ids: list) -> int:
        return await self._backend.remove_changes(change_ids)

    @degrades_to(0)
    async def clear_user(self, user_id: Optional[str] = None) -> int:
        """
        Purge every table's records and list-level entries for one identity.

        Defaults to the current user. Pending changes are kept.

        Returns:
            Number of records and entries removed
        """
        user_id = user_id or self.user_id
        if not user_id:
            return 0
        removed = await self._backend.purge_collections(owner=user_id)
        removed += await self._backend.purge_entries(owner=user_id)
        logger.info("user_cache_cleared", user_id=user_id, removed=removed)
        return removed

    async def inspect(
        self,
        tables: tuple[CacheNamespace, ...] = PRIMARY_NAMESPACES,
    ) -> CacheSummary:
        """
        Count cached records for the given tables.

        Used at start-up to decide whether the UI can render from cache.
        """
        counts = {}
        for table in tables:
            counts[_table_name(table)] = len(await self.get_all(table))
        summary = CacheSummary(counts=counts)
        logger.info(
            "cache_inspected",
            user_id=self.user_id,
            has_cached_data=summary.has_cached_data,
            **counts,
        )
        return summary
