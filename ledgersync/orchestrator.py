"""
Sync Orchestrator for LedgerSync

This module ties the cache and sync components together and defines the
coarse-grained flows:
1. Force sync (clear local state -> refetch every consumer concurrently)
2. Full sync (upload pending changes -> force sync only if upload succeeded)
3. Pending-changes polling (approximately live "N changes pending" status)

DESIGN DECISION: sync_all trusts the server.
It discards the current user's snapshots and pending changes before the
refetch, so afterwards only changes appended after the clear remain.
Use full_sync to upload local intent first.

This is the "glue": create_sync_components wires every part to one
storage backend and one session, including the identity hooks.
"""

import asyncio
from typing import Awaitable, Callable, Optional
from uuid import UUID

import structlog
from pydantic import BaseModel, Field

from ledgersync.audit import AuditLogger, configure_log_level, create_correlation_id
from ledgersync.cache import FreshnessCache, PersistentRecordStore, create_list_cache
from ledgersync.changes import ChangeDrainer, ChangeQueue, DrainResult
from ledgersync.config import Settings, get_settings
from ledgersync.domain import LocalCollection, TransactionLedger, remote_fetch
from ledgersync.models.cache import CacheNamespace, Record
from ledgersync.models.changes import PendingChangesStatus
from ledgersync.realtime import DEFAULT_OWNERSHIP, CacheEventBus, RealtimeMergeListener
from ledgersync.services.remote import ChangeFeed, RemoteStore
from ledgersync.services.storage import (
    AuditStorageInterface,
    InMemoryAuditStorage,
    InMemoryStorageBackend,
    SQLiteAuditStorage,
    SQLiteConnection,
    SQLiteStorageBackend,
    StorageBackend,
    StorageUnavailableError,
)
from ledgersync.session import Session


logger = structlog.get_logger(__name__)


# A consumer's forced-refresh path
RefreshFn = Callable[[], Awaitable[object]]


class SyncResult(BaseModel):
    """Outcome of a sync_all or full_sync run."""

    success: bool = True
    correlation_id: Optional[UUID] = None
    cleared_namespaces: list[str] = Field(default_factory=list)
    discarded_changes: int = 0
    refreshed: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    skipped: bool = False
    drain: Optional[DrainResult] = None


class SyncOrchestrator:
    """
    Coarse "discard local state, trust the server" operation.

    Usage:
        orchestrator = SyncOrchestrator(session, freshness, queue)
        orchestrator.register_consumer("accounts", accounts.refresh)
        result = await orchestrator.sync_all()
    """

    def __init__(
        self,
        session: Session,
        freshness: FreshnessCache,
        queue: ChangeQueue,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._session = session
        self._freshness = freshness
        self._queue = queue
        self._audit_logger = audit_logger
        self._consumers: dict[str, RefreshFn] = {}
        self._is_syncing = False

    @property
    def is_syncing(self) -> bool:
        return self._is_syncing

    @property
    def consumers(self) -> list[str]:
        return list(self._consumers)

    def register_consumer(self, name: str, refresh_fn: RefreshFn) -> Callable[[], None]:
        """
        Register a consumer's forced-refresh path.

        Returns:
            A function that unregisters it
        """
        self._consumers[name] = refresh_fn

        def unregister() -> None:
            if self._consumers.get(name) is refresh_fn:
                del self._consumers[name]

        return unregister

    async def sync_all(self, correlation_id: Optional[UUID] = None) -> SyncResult:
        """
        Clear every namespace, then refresh every consumer concurrently.

        Idempotent; a call made while a sync is running returns immediately
        with `skipped=True`.
        """
        if self._is_syncing:
            logger.info("sync_already_running")
            return SyncResult(skipped=True)

        user_id = self._session.user_id
        correlation_id = correlation_id or create_correlation_id()
        self._is_syncing = True
        try:
            if self._audit_logger:
                await self._audit_logger.log_sync_started(
                    user_id, self.consumers, correlation_id
                )

            # Clear phase
            cleared = await self._freshness.clear_cache()
            discarded = await self._queue.discard()
            if self._audit_logger:
                await self._audit_logger.log_cache_cleared(user_id, cleared, correlation_id)
                if discarded:
                    await self._audit_logger.log_changes_discarded(
                        discarded, user_id, correlation_id
                    )

            # Refetch phase, no inter-namespace dependency
            names = list(self._consumers)
            outcomes = await asyncio.gather(
                *(self._consumers[name]() for name in names),
                return_exceptions=True,
            )

            result = SyncResult(
                correlation_id=correlation_id,
                cleared_namespaces=cleared,
                discarded_changes=discarded,
            )
            for name, outcome in zip(names, outcomes):
                if isinstance(outcome, BaseException):
                    result.errors.append(f"{name}: {outcome}")
                    logger.error("consumer_refresh_failed", consumer=name, error=str(outcome))
                else:
                    result.refreshed.append(name)
            result.success = not result.errors

            if self._audit_logger:
                if result.success:
                    await self._audit_logger.log_sync_completed(
                        user_id, result.refreshed, correlation_id
                    )
                else:
                    await self._audit_logger.log_sync_failed(
                        user_id, result.errors, correlation_id
                    )

            logger.info(
                "sync_all_finished",
                success=result.success,
                refreshed=len(result.refreshed),
                failed=len(result.errors),
            )
            return result
        finally:
            self._is_syncing = False

    async def full_sync(self, drainer: ChangeDrainer) -> SyncResult:
        """
        Upload pending changes, then download only if the upload succeeded.
        """
        correlation_id = create_correlation_id()
        drain = await drainer.drain(correlation_id=correlation_id)
        if not drain.success:
            logger.warning("upload_failed_skipping_download", errors=drain.errors)
            return SyncResult(
                success=False,
                correlation_id=correlation_id,
                errors=["upload failed, skipping download", *drain.errors],
                drain=drain,
            )

        result = await self.sync_all(correlation_id=correlation_id)
        result.drain = drain
        return result


class PendingChangesPoller:
    """
    Recomputes PendingChangesStatus on a fixed interval and on identity change.

    Usage:
        poller = PendingChangesPoller(queue, session)
        poller.start()
        poller.status.summary()  # "2 changes pending sync (2 created)"
    """

    def __init__(
        self,
        queue: ChangeQueue,
        session: Session,
        interval: float = 30.0,
    ):
        self._queue = queue
        self._session = session
        self.interval = interval
        self.status = PendingChangesStatus.empty()
        self.is_loading = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def refresh(self) -> PendingChangesStatus:
        """Recompute the status now."""
        self.is_loading = True
        try:
            self.status = await self._queue.get_status()
        except Exception as e:
            logger.error("pending_status_failed", error=str(e))
        finally:
            self.is_loading = False
        return self.status

    async def on_identity_change(
        self,
        previous_user_id: Optional[str],
        user_id: Optional[str],
    ) -> None:
        await self.refresh()

    async def _run(self) -> None:
        while True:
            await self.refresh()
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        """Start polling in the background (requires a running event loop)."""
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


class SyncComponents:
    """
    Every part of the cache and sync layer, wired to one backend and session.

    Built by create_sync_components().
    """

    def __init__(
        self,
        settings: Settings,
        remote: RemoteStore,
        backend: StorageBackend,
        audit_logger: AuditLogger,
        session: Session,
        record_store: PersistentRecordStore,
        freshness: FreshnessCache,
        queue: ChangeQueue,
        bus: CacheEventBus,
        listener: RealtimeMergeListener,
        drainer: ChangeDrainer,
        orchestrator: SyncOrchestrator,
        poller: PendingChangesPoller,
    ):
        self.settings = settings
        self.remote = remote
        self.backend = backend
        self.audit_logger = audit_logger
        self.session = session
        self.record_store = record_store
        self.freshness = freshness
        self.queue = queue
        self.bus = bus
        self.listener = listener
        self.drainer = drainer
        self.orchestrator = orchestrator
        self.poller = poller
        self.collections: dict[CacheNamespace, LocalCollection] = {}

    def collection(
        self,
        namespace: CacheNamespace,
        fetch_fn: Optional[Callable[[], Awaitable[list[Record]]]] = None,
    ) -> LocalCollection:
        """
        Get (or build) the LocalCollection for a table.

        New collections are registered with the orchestrator, so sync_all
        refreshes them.
        """
        if namespace in self.collections:
            return self.collections[namespace]

        if fetch_fn is None:
            fetch_fn = remote_fetch(
                self.remote,
                self.session,
                namespace,
                filter_by_user=namespace not in DEFAULT_OWNERSHIP,
            )
        list_cache = create_list_cache(
            self.backend,
            self.session,
            namespace,
            fetch_fn,
            settings=self.settings.cache,
        )
        collection = LocalCollection(
            namespace,
            self.record_store,
            self.queue,
            list_cache,
            self.session,
            bus=self.bus,
            freshness=self.freshness,
        )
        self.collections[namespace] = collection
        self.orchestrator.register_consumer(namespace.value, collection.refresh)
        return collection

    def transaction_ledger(self) -> TransactionLedger:
        return TransactionLedger(self.collection(CacheNamespace.TRANSACTIONS))

    async def full_sync(self) -> SyncResult:
        return await self.orchestrator.full_sync(self.drainer)

    async def start(self) -> None:
        """Open realtime channels and start the pending-changes poller."""
        await self.listener.start()
        self.poller.start()

    async def close(self) -> None:
        await self.poller.stop()
        await self.listener.stop()
        for collection in self.collections.values():
            collection.close()


def _create_storage(
    settings: Settings,
) -> tuple[StorageBackend, AuditStorageInterface]:
    cache_settings = settings.cache
    if cache_settings.backend == "memory":
        return InMemoryStorageBackend(), InMemoryAuditStorage()

    try:
        connection = SQLiteConnection(cache_settings.db_path)
    except StorageUnavailableError as e:
        # Cache not available on this device - continue in memory
        logger.warning("sqlite_unavailable_using_memory", error=str(e))
        return InMemoryStorageBackend(), InMemoryAuditStorage()

    return (
        SQLiteStorageBackend(cache_settings.db_path, connection=connection),
        SQLiteAuditStorage(cache_settings.db_path, connection=connection),
    )


def create_sync_components(
    remote: RemoteStore,
    feed: ChangeFeed,
    settings: Optional[Settings] = None,
    user_id: Optional[str] = None,
    backend: Optional[StorageBackend] = None,
    audit_storage: Optional[AuditStorageInterface] = None,
) -> SyncComponents:
    """
    Factory function to create all cache and sync components.

    Args:
        remote: Authoritative remote store client
        feed: Remote change feed
        settings: Settings (default: get_settings())
        user_id: Identity to start with (None = signed out)
        backend: Storage backend override (default: from settings)
        audit_storage: Audit storage override (default: from settings)

    Identity hooks run in this order on sign-in, sign-out and user switch:
    realtime teardown/resubscribe, purge of the previous user's cache,
    pending-status refresh.
    """
    settings = settings or get_settings()
    app_settings = settings.app
    configure_log_level("DEBUG" if app_settings.debug_mode else settings.logging.level)
    sync_settings = settings.sync

    if backend is None:
        backend, default_audit_storage = _create_storage(settings)
        audit_storage = audit_storage or default_audit_storage

    audit_logger = AuditLogger(audit_storage)
    session = Session(user_id, audit_logger=audit_logger)
    record_store = PersistentRecordStore(backend, session)
    freshness = FreshnessCache(backend, session, settings=settings.cache)
    queue = ChangeQueue(record_store, session, audit_logger=audit_logger)
    bus = CacheEventBus()
    listener = RealtimeMergeListener(
        feed,
        freshness,
        bus,
        session,
        compare_versions=sync_settings.compare_versions,
        audit_logger=audit_logger,
        record_store=record_store,
    )
    drainer = ChangeDrainer(queue, remote, settings=sync_settings, audit_logger=audit_logger)
    orchestrator = SyncOrchestrator(session, freshness, queue, audit_logger=audit_logger)
    poller = PendingChangesPoller(
        queue, session, interval=sync_settings.pending_poll_interval_seconds
    )

    async def purge_previous_identity(
        previous_user_id: Optional[str],
        user_id: Optional[str],
    ) -> None:
        if not previous_user_id:
            return
        await record_store.clear_user(previous_user_id)
        freshness.forget_user(previous_user_id)
        await audit_logger.log_cache_cleared(
            previous_user_id, [namespace.value for namespace in CacheNamespace]
        )

    session.on_identity_change(listener.on_identity_change)
    session.on_identity_change(purge_previous_identity)
    session.on_identity_change(poller.on_identity_change)

    logger.info(
        "sync_components_created",
        environment=app_settings.app_environment,
        backend=type(backend).__name__,
        user_id=user_id,
    )

    return SyncComponents(
        settings=settings,
        remote=remote,
        backend=backend,
        audit_logger=audit_logger,
        session=session,
        record_store=record_store,
        freshness=freshness,
        queue=queue,
        bus=bus,
        listener=listener,
        drainer=drainer,
        orchestrator=orchestrator,
        poller=poller,
    )
