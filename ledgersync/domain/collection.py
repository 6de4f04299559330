"""
Local Collection

UI-facing wrapper over one table: an id-indexed list kept consistent with
every cache tier, with optimistic create/update/delete.

Mutation order, per call:
1. Apply to the in-memory list (optimistic)
2. Await the write-through (record store, list cache, freshness snapshot)
3. Append to the Change Queue

None of the cache writes raise, so step 3 always runs: a failing cache
never prevents local intent from being recorded.
"""

from typing import Any, Awaitable, Callable, Iterable, Optional
from uuid import uuid4

import structlog

from ledgersync.cache import FreshnessCache, PersistentRecordStore, RecordIndex, TTLListCache
from ledgersync.changes import ChangeQueue
from ledgersync.models.cache import CacheNamespace, Record
from ledgersync.models.changes import ChangeOperation
from ledgersync.models.realtime import CacheUpdate, RealtimeEventType
from ledgersync.realtime import CacheEventBus
from ledgersync.services.remote import RemoteStore
from ledgersync.session import Session


logger = structlog.get_logger(__name__)


def remote_fetch(
    remote: RemoteStore,
    session: Session,
    namespace: CacheNamespace,
    filter_by_user: bool = True,
) -> Callable[[], Awaitable[list[Record]]]:
    """
    Build the default fetch for a table: all rows owned by the current user.

    Tables owned through a parent row are read without a user filter.
    """
    async def fetch() -> list[Record]:
        user_id = session.user_id if filter_by_user else None
        return await remote.select(namespace.value, user_id=user_id)

    return fetch


class LocalCollection:
    """
    Optimistic, cache-backed view of one table.

    Usage:
        accounts = LocalCollection(CacheNamespace.ACCOUNTS, store, queue, list_cache, session)
        await accounts.load()
        await accounts.create({"name": "Wallet", "balance": 0})
    """

    def __init__(
        self,
        namespace: CacheNamespace,
        record_store: PersistentRecordStore,
        queue: ChangeQueue,
        list_cache: TTLListCache,
        session: Session,
        bus: Optional[CacheEventBus] = None,
        freshness: Optional[FreshnessCache] = None,
    ):
        self.namespace = namespace
        self._store = record_store
        self._queue = queue
        self._cache = list_cache
        self._session = session
        self._freshness = freshness
        self._index = RecordIndex()
        self._unsubscribe = bus.subscribe(namespace, self._on_cache_update) if bus else None

    @property
    def items(self) -> list[Record]:
        """Records in display order, newest local creates first."""
        return self._index.to_list()

    @property
    def loading(self) -> bool:
        return self._cache.loading

    @property
    def error(self) -> Optional[Exception]:
        return self._cache.error

    def get(self, record_id: str) -> Optional[Record]:
        return self._index.get(record_id)

    def close(self) -> None:
        """Stop receiving realtime updates."""
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

    def _replace_all(self, records: Iterable[Record]) -> list[Record]:
        self._index = RecordIndex(records)
        if self._index.skipped:
            logger.warning(
                "collection_rows_without_id",
                namespace=self.namespace.value,
                skipped=self._index.skipped,
            )
        return self.items

    # =========================================================================
    # Reads
    # =========================================================================

    async def load(self) -> list[Record]:
        """
        Serve from the list cache, fetching if it is stale.

        The rows are mirrored into the persistent store, so realtime
        ownership checks and offline reads see them. If the fetch fails,
        falls back to the records held in the persistent store; the failure
        stays visible through `error`.
        """
        try:
            rows = await self._cache.load()
        except Exception:
            return self._replace_all(await self._store.get_all(self.namespace))

        items = self._replace_all(rows or [])
        if rows is not None:
            await self._store.set(self.namespace, items)
        return items

    async def refresh(self) -> list[Record]:
        """
        Force a fetch and write the result through to every tier.

        Raises:
            Exception: Whatever the fetch raised
        """
        rows = await self._cache.refresh()
        if rows is None:
            return self.items
        items = self._replace_all(rows)
        await self._store.set(self.namespace, items)
        if self._freshness is not None:
            await self._freshness.set_cached_data(self.namespace, items)
        return items

    # =========================================================================
    # Optimistic mutations
    # =========================================================================

    def _stamp(self, record: Record) -> Record:
        record = dict(record)
        record.setdefault("id", str(uuid4()))
        if self._session.user_id and "user_id" not in record:
            record["user_id"] = self._session.user_id
        return record

    def _put_local(self, record: Record) -> None:
        # Existing rows keep their position; new ones go first
        if record["id"] in self._index:
            self._index.upsert(record)
        else:
            self._index.insert_first(record)

    async def _find(self, record_id: str) -> Optional[Record]:
        """Current full record: loaded items, then the record store, then the live snapshot."""
        existing = self.get(record_id)
        if existing is None:
            existing = await self._store.get_record(self.namespace, record_id)
        if existing is None and self._freshness is not None:
            if await self._freshness.is_cache_fresh(self.namespace):
                existing = (await self._freshness.get_index(self.namespace)).get(record_id)
        return existing

    async def _write_through(
        self,
        upserts: Iterable[Record] = (),
        deleted: Optional[str] = None,
    ) -> None:
        upserts = list(upserts)
        for record in upserts:
            await self._store.update_cache_item(self.namespace, record)
        if deleted is not None:
            await self._store.delete_cache_item(self.namespace, deleted)
        await self._cache.update_cache(self.items)

        # Only a live snapshot is patched; a stale or missing one is refetched later
        if self._freshness is not None and await self._freshness.is_cache_fresh(self.namespace):
            index = await self._freshness.get_index(self.namespace)
            for record in upserts:
                index.upsert(record)
            if deleted is not None:
                index.remove(deleted)
            await self._freshness.commit(self.namespace, index)

    async def create_many(self, records: list[Record]) -> list[Record]:
        """
        Create several records in one call.

        They are shown newest-first, and each gets its own create change,
        in the order given.
        """
        stamped = [self._stamp(r) for r in records]
        for record in reversed(stamped):
            self._put_local(record)
        await self._write_through(upserts=stamped)
        for record in stamped:
            await self._queue.add_pending_change(
                self.namespace, ChangeOperation.CREATE, record["id"], record
            )
        return stamped

    async def create(self, record: Record) -> Record:
        """Create one record. An id is generated if missing."""
        return (await self.create_many([record]))[0]

    async def update(self, record_id: str, updates: dict[str, Any]) -> Record:
        """
        Merge field updates into a record.

        A record that is not loaded is merged against its stored copy.
        The queued change carries only the updated fields.
        """
        record_id = str(record_id)
        existing = await self._find(record_id) or {}
        merged = {**existing, **updates, "id": existing.get("id", record_id)}
        self._put_local(merged)
        await self._write_through(upserts=[merged])
        await self._queue.add_pending_change(
            self.namespace, ChangeOperation.UPDATE, record_id, dict(updates)
        )
        return merged

    async def delete(self, record_id: str) -> Optional[Record]:
        """Delete a record. Returns the removed record, if it was loaded."""
        removed = self._index.remove(record_id)
        await self._write_through(deleted=str(record_id))
        await self._queue.add_pending_change(
            self.namespace, ChangeOperation.DELETE, str(record_id)
        )
        return removed

    # =========================================================================
    # Realtime
    # =========================================================================

    async def _on_cache_update(self, update: CacheUpdate) -> None:
        event = update.event
        if event is None:
            await self._store.set(self.namespace, self._replace_all(update.data))
        elif event.event_type == RealtimeEventType.DELETE:
            self._index.remove(event.record_id)
            await self._store.delete_cache_item(self.namespace, event.record_id)
        else:
            self._put_local(event.new)
            await self._store.update_cache_item(self.namespace, event.new)
        await self._cache.update_cache(self.items)
        logger.debug(
            "collection_synced_from_feed",
            namespace=self.namespace.value,
            count=len(self._index),
        )
