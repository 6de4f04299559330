"""
Shared fixtures for LedgerSync tests.

No real network or remote backend: the remote store and change feed are
in-process fakes, and time is driven by a controllable clock.
"""

from typing import Optional

import pytest

from ledgersync.cache import FreshnessCache, PersistentRecordStore
from ledgersync.changes import ChangeQueue
from ledgersync.config import SyncSettings
from ledgersync.models.cache import CacheNamespace, Record
from ledgersync.models.realtime import RealtimeEvent, RealtimeEventType
from ledgersync.services.remote import (
    ChangeFeed,
    DropHandler,
    EventHandler,
    FeedSubscription,
    RemoteError,
    RemoteStore,
)
from ledgersync.services.storage import InMemoryStorageBackend, StorageError
from ledgersync.session import Session


class FakeClock:
    """Manually advanced replacement for time.time."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRemoteStore(RemoteStore):
    """Dictionary-backed remote store that records every call."""

    def __init__(self):
        self.tables: dict[str, dict[str, Record]] = {}
        self.calls: list[tuple] = []
        self.select_calls = 0
        self.fail_selects = False
        # (table, record_id) -> number of upcoming writes to fail (-1 = always)
        self.write_failures: dict[tuple[str, str], int] = {}

    def seed(self, table: str, records: list[Record]) -> None:
        self.tables[table] = {str(r["id"]): dict(r) for r in records}

    def _maybe_fail(self, table: str, record_id: str) -> None:
        remaining = self.write_failures.get((table, record_id), 0)
        if remaining == 0:
            return
        if remaining > 0:
            self.write_failures[(table, record_id)] = remaining - 1
        raise RemoteError(f"remote rejected {table}/{record_id}")

    async def select(self, table: str, user_id: Optional[str] = None) -> list[Record]:
        self.select_calls += 1
        self.calls.append(("select", table, user_id))
        if self.fail_selects:
            raise RemoteError("remote unavailable")
        rows = list(self.tables.get(table, {}).values())
        if user_id is not None:
            rows = [r for r in rows if r.get("user_id") == user_id]
        return [dict(r) for r in rows]

    async def upsert(self, table: str, record: Record) -> Record:
        record_id = str(record["id"])
        self.calls.append(("upsert", table, record_id))
        self._maybe_fail(table, record_id)
        self.tables.setdefault(table, {})[record_id] = dict(record)
        return dict(record)

    async def update(self, table: str, record_id: str, changes: Record) -> Optional[Record]:
        self.calls.append(("update", table, record_id))
        self._maybe_fail(table, record_id)
        row = self.tables.get(table, {}).get(record_id)
        if row is None:
            return None
        row.update(changes)
        return dict(row)

    async def delete(self, table: str, record_id: str) -> bool:
        self.calls.append(("delete", table, record_id))
        self._maybe_fail(table, record_id)
        return self.tables.get(table, {}).pop(record_id, None) is not None


class FakeSubscription(FeedSubscription):

    def __init__(self, feed: "FakeChangeFeed", table: str, user_filter: Optional[str],
                 on_event: EventHandler, on_drop: DropHandler):
        self.feed = feed
        self.table = table
        self.user_filter = user_filter
        self.on_event = on_event
        self.on_drop = on_drop
        self.closed = False

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.feed.log.append(("close", self.table, self.user_filter))


class FakeChangeFeed(ChangeFeed):
    """Change feed whose events are emitted by the test."""

    def __init__(self):
        self.subscriptions: list[FakeSubscription] = []
        self.log: list[tuple] = []
        self.fail_tables: set[str] = set()

    async def subscribe(self, table, user_filter, on_event, on_drop) -> FeedSubscription:
        if table in self.fail_tables:
            raise RemoteError(f"cannot subscribe to {table}")
        subscription = FakeSubscription(self, table, user_filter, on_event, on_drop)
        self.subscriptions.append(subscription)
        self.log.append(("open", table, user_filter))
        return subscription

    def open_subscriptions(self, table: Optional[str] = None) -> list[FakeSubscription]:
        return [
            s for s in self.subscriptions
            if not s.closed and (table is None or s.table == table)
        ]

    async def emit(
        self,
        table: CacheNamespace,
        event_type: RealtimeEventType,
        new: Optional[Record] = None,
        old: Optional[Record] = None,
    ) -> int:
        """Deliver an event to every open subscription whose filter matches."""
        event = RealtimeEvent(eventType=event_type, table=table, new=new, old=old)
        row = new or old or {}
        delivered = 0
        for subscription in self.open_subscriptions(table.value):
            if subscription.user_filter is not None and row.get("user_id") != subscription.user_filter:
                continue
            await subscription.on_event(event)
            delivered += 1
        return delivered

    async def drop(self, table: CacheNamespace, error: Optional[Exception] = None) -> None:
        for subscription in self.open_subscriptions(table.value):
            subscription.closed = True
            await subscription.on_drop(error)


class FlakyStorageBackend(InMemoryStorageBackend):
    """In-memory backend whose operations can be made to fail."""

    def __init__(self):
        super().__init__()
        self.fail_reads = False
        self.fail_writes = False
        self.fail_changes = False

    async def read_collection(self, owner, table):
        if self.fail_reads:
            raise StorageError("disk unreadable")
        return await super().read_collection(owner, table)

    async def read_record(self, owner, table, record_id):
        if self.fail_reads:
            raise StorageError("disk unreadable")
        return await super().read_record(owner, table, record_id)

    async def read_entry(self, area, key):
        if self.fail_reads:
            raise StorageError("disk unreadable")
        return await super().read_entry(area, key)

    async def replace_collection(self, owner, table, records):
        if self.fail_writes:
            raise StorageError("disk full")
        await super().replace_collection(owner, table, records)

    async def put_record(self, owner, table, record):
        if self.fail_writes:
            raise StorageError("disk full")
        await super().put_record(owner, table, record)

    async def write_entry(self, area, key, entry, owner):
        if self.fail_writes:
            raise StorageError("disk full")
        await super().write_entry(area, key, entry, owner)

    async def append_change(self, change):
        if self.fail_changes:
            raise StorageError("disk full")
        await super().append_change(change)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend():
    return FlakyStorageBackend()


@pytest.fixture
def session():
    return Session("user-a")


@pytest.fixture
def remote():
    return FakeRemoteStore()


@pytest.fixture
def feed():
    return FakeChangeFeed()


@pytest.fixture
def record_store(backend, session):
    return PersistentRecordStore(backend, session)


@pytest.fixture
def queue(record_store, session):
    return ChangeQueue(record_store, session)


@pytest.fixture
def freshness(backend, session, clock):
    return FreshnessCache(backend, session, window=300, clock=clock)


@pytest.fixture
def fast_sync_settings():
    """Replay settings without backoff waits."""
    return SyncSettings(
        drain_max_attempts=3,
        drain_backoff_multiplier=0,
        drain_backoff_min_seconds=0,
        drain_backoff_max_seconds=0,
    )
