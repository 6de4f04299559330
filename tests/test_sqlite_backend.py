"""Tests for the SQLite storage backend and audit storage."""

import sqlite3
from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from ledgersync.models.audit import AuditEventBuilder
from ledgersync.models.cache import CacheEntry
from ledgersync.models.changes import ChangeOperation, PendingChange
from ledgersync.services.storage import (
    CorruptedDataError,
    SQLiteAuditStorage,
    SQLiteConnection,
    SQLiteStorageBackend,
    StorageError,
)


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "cache" / "ledgersync.db"


@pytest.fixture
def sqlite_backend(db_path):
    return SQLiteStorageBackend(db_path)


def make_change(record_id: str, user_id: str = "user-a") -> PendingChange:
    return PendingChange(
        table="debts",
        operation=ChangeOperation.CREATE,
        record_id=record_id,
        data={"id": record_id},
        user_id=user_id,
    )


class TestCollections:
    """Tests for full-record storage."""

    @pytest.mark.asyncio
    async def test_replace_keeps_order(self, sqlite_backend):
        """Test a collection is read back in the order it was written."""
        records = [{"id": "b"}, {"id": "a"}, {"id": "c", "amount": 1.5}]

        await sqlite_backend.replace_collection("user-a", "debts", records)

        assert await sqlite_backend.read_collection("user-a", "debts") == records

    @pytest.mark.asyncio
    async def test_put_record_upserts_in_place(self, sqlite_backend):
        """Test an existing id is replaced and a new id is appended."""
        await sqlite_backend.replace_collection("user-a", "debts", [{"id": "a"}, {"id": "b"}])

        await sqlite_backend.put_record("user-a", "debts", {"id": "a", "paid": True})
        await sqlite_backend.put_record("user-a", "debts", {"id": "c"})

        assert await sqlite_backend.read_collection("user-a", "debts") == [
            {"id": "a", "paid": True},
            {"id": "b"},
            {"id": "c"},
        ]
        assert await sqlite_backend.read_record("user-a", "debts", "a") == {"id": "a", "paid": True}

    @pytest.mark.asyncio
    async def test_records_without_id_are_rejected(self, sqlite_backend):
        """Test an id-less record fails before anything is replaced."""
        await sqlite_backend.replace_collection("user-a", "debts", [{"id": "a"}])

        with pytest.raises(StorageError):
            await sqlite_backend.replace_collection("user-a", "debts", [{"name": "no id"}])
        with pytest.raises(StorageError):
            await sqlite_backend.put_record("user-a", "debts", {"name": "no id"})

        assert await sqlite_backend.read_collection("user-a", "debts") == [{"id": "a"}]

    @pytest.mark.asyncio
    async def test_delete_record(self, sqlite_backend):
        """Test deletion reports whether a row was removed."""
        await sqlite_backend.put_record("user-a", "debts", {"id": "a"})

        assert await sqlite_backend.delete_record("user-a", "debts", "a") is True
        assert await sqlite_backend.delete_record("user-a", "debts", "a") is False
        assert await sqlite_backend.read_record("user-a", "debts", "a") is None

    @pytest.mark.asyncio
    async def test_purge_by_owner(self, sqlite_backend):
        """Test purging one owner leaves the others intact."""
        await sqlite_backend.put_record("user-a", "debts", {"id": "a"})
        await sqlite_backend.put_record("user-b", "debts", {"id": "b"})

        assert await sqlite_backend.purge_collections("user-a") == 1

        assert await sqlite_backend.read_collection("user-a", "debts") == []
        assert await sqlite_backend.read_collection("user-b", "debts") == [{"id": "b"}]

    @pytest.mark.asyncio
    async def test_corrupted_row_raises(self, sqlite_backend, db_path):
        """Test an undecodable row surfaces as CorruptedDataError."""
        await sqlite_backend.put_record("user-a", "debts", {"id": "a"})
        with sqlite3.connect(db_path) as conn:
            conn.execute("UPDATE cached_records SET data = '{not json'")

        with pytest.raises(CorruptedDataError):
            await sqlite_backend.read_collection("user-a", "debts")

    @pytest.mark.asyncio
    async def test_data_survives_reopen(self, db_path):
        """Test records persist across backend instances."""
        await SQLiteStorageBackend(db_path).put_record("user-a", "debts", {"id": "a"})

        reopened = SQLiteStorageBackend(db_path)

        assert await reopened.read_collection("user-a", "debts") == [{"id": "a"}]


class TestEntries:
    """Tests for list-level entries."""

    @pytest.mark.asyncio
    async def test_write_read_delete(self, sqlite_backend):
        """Test an entry is stored with its timestamp and TTL."""
        entry = CacheEntry(data=[{"id": "a"}], last_updated=1000.0, ttl=120)

        await sqlite_backend.write_entry("ttl:debts", "user-a:list", entry, owner="user-a")
        stored = await sqlite_backend.read_entry("ttl:debts", "user-a:list")

        assert stored.data == [{"id": "a"}]
        assert stored.last_updated == 1000.0
        assert stored.ttl == 120
        assert await sqlite_backend.delete_entry("ttl:debts", "user-a:list") is True
        assert await sqlite_backend.read_entry("ttl:debts", "user-a:list") is None

    @pytest.mark.asyncio
    async def test_purge_entries_by_owner_and_area(self, sqlite_backend):
        """Test purge filters combine."""
        entry = CacheEntry(data=[], last_updated=1.0, ttl=1)
        await sqlite_backend.write_entry("ttl:debts", "user-a:list", entry, owner="user-a")
        await sqlite_backend.write_entry("ttl:accounts", "user-a:list", entry, owner="user-a")
        await sqlite_backend.write_entry("ttl:debts", "user-b:list", entry, owner="user-b")

        assert await sqlite_backend.purge_entries(owner="user-a", area="ttl:debts") == 1
        assert await sqlite_backend.purge_entries(owner="user-a") == 1
        assert await sqlite_backend.read_entry("ttl:debts", "user-b:list") is not None


class TestPendingChanges:
    """Tests for the durable change log."""

    @pytest.mark.asyncio
    async def test_append_order_and_remove(self, sqlite_backend):
        """Test changes are read in append order and removed by id."""
        changes = [make_change("d1"), make_change("d2"), make_change("d3", user_id="user-b")]
        for change in changes:
            await sqlite_backend.append_change(change)

        stored = await sqlite_backend.read_changes()
        assert [c.id for c in stored] == [c.id for c in changes]
        assert stored[2].user_id == "user-b"

        assert await sqlite_backend.remove_changes([changes[1].id, uuid4()]) == 1
        assert [c.record_id for c in await sqlite_backend.read_changes()] == ["d1", "d3"]

    @pytest.mark.asyncio
    async def test_remove_nothing(self, sqlite_backend):
        """Test an empty removal is a no-op."""
        assert await sqlite_backend.remove_changes([]) == 0


class TestSQLiteAuditStorage:
    """Tests for the append-only audit table."""

    @pytest.mark.asyncio
    async def test_shares_connection_with_backend(self, db_path):
        """Test audit events can be written next to the cache tables."""
        connection = SQLiteConnection(db_path)
        audit = SQLiteAuditStorage(db_path, connection=connection)
        correlation_id = uuid4()

        started = AuditEventBuilder.sync_started("user-a", ["debts"], correlation_id)
        completed = AuditEventBuilder.sync_completed("user-a", ["debts"], correlation_id)
        unrelated = AuditEventBuilder.identity_changed(None, "user-a")
        for event in (started, completed, unrelated):
            assert await audit.append_event(event) is True

        related = await audit.get_events_by_correlation_id(correlation_id)
        assert {e.event_id for e in related} == {started.event_id, completed.event_id}
        assert len(await audit.get_recent_events(limit=10)) == 3

    @pytest.mark.asyncio
    async def test_duplicate_event_is_ignored(self, db_path):
        """Test appending the same event twice stores it once."""
        audit = SQLiteAuditStorage(db_path)
        event = AuditEventBuilder.identity_changed("user-a", None)

        await audit.append_event(event)
        await audit.append_event(event)

        assert len(await audit.get_recent_events()) == 1


class TestEncoding:
    """Tests for values the json module does not handle natively."""

    @pytest.mark.asyncio
    async def test_decimal_and_datetime_are_stored_as_strings(self, sqlite_backend):
        """Test records and entries with Decimal and datetime values are written."""
        record = {
            "id": "t1",
            "amount": Decimal("12.50"),
            "created_at": datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc),
        }
        expected = {"id": "t1", "amount": "12.50", "created_at": "2024-05-01T10:00:00+00:00"}

        await sqlite_backend.replace_collection("user-a", "transactions", [record])
        await sqlite_backend.put_record("user-a", "transactions", {**record, "id": "t2"})
        await sqlite_backend.write_entry(
            "ttl:transactions",
            "user-a:list",
            CacheEntry(data=[record], last_updated=1.0, ttl=120),
            owner="user-a",
        )

        assert await sqlite_backend.read_collection("user-a", "transactions") == [
            expected,
            {**expected, "id": "t2"},
        ]
        entry = await sqlite_backend.read_entry("ttl:transactions", "user-a:list")
        assert entry.data == [expected]
