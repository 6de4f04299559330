"""
Freshness Cache

Bulk-fetch cache tier with a fixed staleness window (5 minutes by default)
and stale-fallback-on-error semantics.

DESIGN DECISION: Availability is prioritized over freshness.
If a refetch fails, the last known snapshot is returned instead of the error.

This is also the tier the realtime listener writes into. Each table's
snapshot is mirrored in an id-indexed RecordIndex so deltas apply in O(1);
the index is reloaded whenever the stored snapshot's timestamp differs
from the one it was built from, so writes made by someone else between
reads are picked up.
"""

import time
from typing import Awaitable, Callable, Iterable, Optional

import structlog

from ledgersync.cache.index import RecordIndex
from ledgersync.config import CacheSettings
from ledgersync.models.cache import CacheEntry, CacheNamespace, Record
from ledgersync.services.storage import StorageBackend
from ledgersync.session import Session


logger = structlog.get_logger(__name__)

FRESHNESS_AREA = "freshness"

Clock = Callable[[], float]


class FreshnessCache:
    """
    Snapshot cache keyed `{table}:{user_id}`.

    Usage:
        cache = FreshnessCache(backend, session)
        rows = await cache.fetch_with_cache(CacheNamespace.DEBTS, load_debts)
    """

    def __init__(
        self,
        backend: StorageBackend,
        session: Session,
        window: Optional[float] = None,
        clock: Clock = time.time,
        settings: Optional[CacheSettings] = None,
    ):
        settings = settings or CacheSettings()
        self._backend = backend
        self._session = session
        self.window = window if window is not None else settings.freshness_window_seconds
        self._clock = clock
        # (user_id, table) -> (last_updated of the snapshot it mirrors, index)
        self._indexes: dict[tuple[str, str], tuple[float, RecordIndex]] = {}

    def _key(self, namespace: CacheNamespace) -> Optional[str]:
        user_id = self._session.user_id
        if not user_id:
            return None
        return f"{namespace.value}:{user_id}"

    async def _read(self, namespace: CacheNamespace) -> Optional[CacheEntry]:
        key = self._key(namespace)
        if key is None:
            return None
        try:
            return await self._backend.read_entry(FRESHNESS_AREA, key)
        except Exception as e:
            logger.error("freshness_read_failed", namespace=namespace.value, error=str(e))
            return None

    async def get_cached_data(self, namespace: CacheNamespace) -> list[Record]:
        """Last stored snapshot, or [] if none (or no user)."""
        entry = await self._read(namespace)
        if entry is None or not isinstance(entry.data, list):
            return []
        return entry.data

    async def set_cached_data(self, namespace: CacheNamespace, data: list[Record]) -> bool:
        """Store a snapshot with a fresh timestamp."""
        key = self._key(namespace)
        if key is None:
            return False
        entry = CacheEntry(data=data, last_updated=self._clock(), ttl=self.window)
        try:
            await self._backend.write_entry(
                FRESHNESS_AREA, key, entry, owner=self._session.user_id
            )
        except Exception as e:
            logger.error("freshness_write_failed", namespace=namespace.value, error=str(e))
            # The index may hold unpersisted deltas; rebuild it from storage next time
            self._indexes.pop((self._session.user_id, namespace.value), None)
            return False
        self._indexes[(self._session.user_id, namespace.value)] = (
            entry.last_updated,
            RecordIndex(data),
        )
        return True

    async def is_cache_fresh(self, namespace: CacheNamespace) -> bool:
        """True while the freshness window has not elapsed since the last store."""
        entry = await self._read(namespace)
        if entry is None:
            return False
        return (self._clock() - entry.last_updated) < self.window

    async def fetch_with_cache(
        self,
        namespace: CacheNamespace,
        query_fn: Callable[[], Awaitable[list[Record]]],
        force_refresh: bool = False,
    ) -> list[Record]:
        """
        Return the stored snapshot if fresh, otherwise refetch.

        A fresh but empty snapshot is refetched. If `query_fn` fails, the
        last known snapshot is returned instead of raising.
        """
        if not self._session.user_id:
            return []

        if not force_refresh and await self.is_cache_fresh(namespace):
            cached = await self.get_cached_data(namespace)
            if cached:
                return cached

        try:
            data = await query_fn()
        except Exception as e:
            logger.error(
                "freshness_fetch_failed",
                namespace=namespace.value,
                error=str(e),
            )
            return await self.get_cached_data(namespace)

        await self.set_cached_data(namespace, data)
        return data

    async def get_index(self, namespace: CacheNamespace) -> RecordIndex:
        """
        Id-indexed view of a table's snapshot, for applying deltas.

        Reloaded from storage if the stored snapshot changed since it was built.
        """
        user_id = self._session.user_id
        if not user_id:
            return RecordIndex()

        entry = await self._read(namespace)
        stamp = entry.last_updated if entry is not None else None
        cached = self._indexes.get((user_id, namespace.value))
        if cached is not None and cached[0] == stamp:
            return cached[1]

        records = entry.data if entry is not None and isinstance(entry.data, list) else []
        index = RecordIndex(records)
        if index.skipped:
            logger.warning(
                "freshness_records_without_id",
                namespace=namespace.value,
                skipped=index.skipped,
            )
        if stamp is not None:
            self._indexes[(user_id, namespace.value)] = (stamp, index)
        return index

    async def commit(self, namespace: CacheNamespace, index: RecordIndex) -> list[Record]:
        """Persist an index after applying a delta. Returns the stored list."""
        data = index.to_list()
        await self.set_cached_data(namespace, data)
        return data

    async def clear_cache(
        self,
        namespaces: Optional[Iterable[CacheNamespace]] = None,
    ) -> list[str]:
        """
        Drop snapshots for the current user.

        Args:
            namespaces: Tables to clear (default: every namespace)

        Returns:
            Names of the cleared namespaces
        """
        user_id = self._session.user_id
        if not user_id:
            return []

        targets = list(namespaces) if namespaces is not None else list(CacheNamespace)
        cleared = []
        for namespace in targets:
            key = self._key(namespace)
            try:
                await self._backend.delete_entry(FRESHNESS_AREA, key)
            except Exception as e:
                logger.error("freshness_clear_failed", namespace=namespace.value, error=str(e))
                continue
            self._indexes.pop((user_id, namespace.value), None)
            cleared.append(namespace.value)
        return cleared

    def forget_user(self, user_id: str) -> None:
        """Drop in-memory indexes built for a user (storage is purged elsewhere)."""
        for address in [a for a in self._indexes if a[0] == user_id]:
            del self._indexes[address]
