"""
TTL List Cache

Wraps any async fetch with a per-namespace freshness window and an
explicit update/invalidate API.

Flow for a read:
1. No authenticated user -> no-op (nothing read, nothing written)
2. Cache entry present and younger than its TTL -> served, no fetch
3. Otherwise -> fetch, store with TTL, serve

DESIGN DECISION: Fetch failures are surfaced through `error` and re-raised
from `load()`; the caller decides how to render them. A failing cache read
or write is only logged, so a broken cache degrades to "always fetch".
"""

import time
from typing import Awaitable, Callable, Generic, Optional, TypeVar

import structlog

from ledgersync.config import CacheSettings
from ledgersync.models.cache import CacheEntry, CacheNamespace, make_cache_key
from ledgersync.services.storage import StorageBackend
from ledgersync.session import Session


logger = structlog.get_logger(__name__)

T = TypeVar("T")

Clock = Callable[[], float]


def ttl_area(namespace: CacheNamespace) -> str:
    """Storage area holding a namespace's list-level entries."""
    return f"ttl:{namespace.value}"


class TTLListCache(Generic[T]):
    """
    A cached value for one (namespace, logical key) and the current user.

    Mirrors a UI data hook: exposes `data`, `loading` and `error`, plus
    `refresh()`, `invalidate_cache()` and `update_cache()`.

    Usage:
        cache = TTLListCache(backend, session, CacheNamespace.TRANSACTIONS, "list", fetch)
        await cache.mount()
        cache.data  # served from cache or freshly fetched
    """

    def __init__(
        self,
        backend: StorageBackend,
        session: Session,
        namespace: CacheNamespace,
        key: str,
        fetch_fn: Callable[[], Awaitable[T]],
        ttl: Optional[float] = None,
        auto_load: bool = True,
        clock: Clock = time.time,
        settings: Optional[CacheSettings] = None,
    ):
        settings = settings or CacheSettings()
        self._backend = backend
        self._session = session
        self.namespace = namespace
        self.key = key
        self._fetch_fn = fetch_fn
        self.ttl = ttl if ttl is not None else settings.ttl_for(namespace)
        self.auto_load = auto_load
        self._clock = clock

        self.data: Optional[T] = None
        self.loading = False
        self.error: Optional[Exception] = None
        self._data_owner: Optional[str] = None

    @property
    def cache_key(self) -> Optional[str]:
        """`{user_id}:{key}`, or None when nobody is signed in."""
        user_id = self._session.user_id
        if not user_id:
            return None
        return make_cache_key(user_id, self.key)

    def _forget_other_users_data(self) -> None:
        if self._data_owner != self._session.user_id:
            self.data = None
            self.error = None
            self._data_owner = self._session.user_id

    async def _read_entry(self, cache_key: str) -> Optional[CacheEntry]:
        try:
            return await self._backend.read_entry(ttl_area(self.namespace), cache_key)
        except Exception as e:
            logger.warning(
                "ttl_cache_read_failed",
                namespace=self.namespace.value,
                key=cache_key,
                error=str(e),
            )
            return None

    async def _write_entry(self, cache_key: str, value: T) -> bool:
        entry = CacheEntry(data=value, last_updated=self._clock(), ttl=self.ttl)
        try:
            await self._backend.write_entry(
                ttl_area(self.namespace),
                cache_key,
                entry,
                owner=self._session.user_id,
            )
            return True
        except Exception as e:
            logger.warning(
                "ttl_cache_write_failed",
                namespace=self.namespace.value,
                key=cache_key,
                error=str(e),
            )
            return False

    async def mount(self) -> Optional[T]:
        """
        Initial load, if `auto_load` is set.

        Errors are recorded in `error` rather than raised.
        """
        if not self.auto_load:
            return None
        try:
            return await self.load()
        except Exception:
            # Already logged and recorded in self.error
            return None

    async def load(self, force_refresh: bool = False) -> Optional[T]:
        """
        Serve from cache if fresh, otherwise fetch and store.

        Raises:
            Exception: Whatever `fetch_fn` raised (also stored in `error`)
        """
        self._forget_other_users_data()
        cache_key = self.cache_key
        if cache_key is None:
            return None

        self.loading = True
        self.error = None
        try:
            if not force_refresh:
                entry = await self._read_entry(cache_key)
                if entry is not None and entry.is_fresh(self._clock()):
                    logger.debug("ttl_cache_hit", namespace=self.namespace.value, key=cache_key)
                    self.data = entry.data
                    return self.data

            logger.debug(
                "ttl_cache_fetch",
                namespace=self.namespace.value,
                key=cache_key,
                forced=force_refresh,
            )
            fresh = await self._fetch_fn()
            # Identity may have changed while the fetch was in flight
            if self.cache_key != cache_key:
                logger.info("ttl_cache_stale_fetch_dropped", namespace=self.namespace.value)
                return None

            self.data = fresh
            await self._write_entry(cache_key, fresh)
            return fresh
        except Exception as e:
            self.error = e
            logger.error(
                "ttl_cache_fetch_failed",
                namespace=self.namespace.value,
                key=cache_key,
                error=str(e),
            )
            raise
        finally:
            self.loading = False

    async def refresh(self) -> Optional[T]:
        """Force a fetch, bypassing any cached entry."""
        return await self.load(force_refresh=True)

    async def invalidate_cache(self) -> None:
        """Drop the stored entry so the next load fetches."""
        cache_key = self.cache_key
        if cache_key is None:
            return
        try:
            await self._backend.delete_entry(ttl_area(self.namespace), cache_key)
        except Exception as e:
            logger.warning(
                "ttl_cache_invalidate_failed",
                namespace=self.namespace.value,
                key=cache_key,
                error=str(e),
            )

    async def update_cache(self, value: T) -> None:
        """
        Write a value directly (optimistic mutations).

        Subsequent reads return it without a fetch until the TTL elapses.
        """
        cache_key = self.cache_key
        if cache_key is None:
            return
        self._forget_other_users_data()
        self.data = value
        await self._write_entry(cache_key, value)


def create_list_cache(
    backend: StorageBackend,
    session: Session,
    namespace: CacheNamespace,
    fetch_fn: Callable[[], Awaitable[T]],
    settings: Optional[CacheSettings] = None,
    key: str = "list",
    clock: Clock = time.time,
) -> TTLListCache[T]:
    """Build the standard list cache for a namespace, with its configured TTL."""
    return TTLListCache(
        backend,
        session,
        namespace,
        key,
        fetch_fn,
        settings=settings,
        clock=clock,
    )
