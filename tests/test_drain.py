"""Tests for replaying the Change Queue against the remote store."""

import pytest

from ledgersync.audit import AuditLogger
from ledgersync.changes import ChangeDrainer, clean_data_for_table
from ledgersync.models.audit import AuditEventType
from ledgersync.services.storage import InMemoryAuditStorage


class TestCleanData:
    """Tests for stripping client-only fields."""

    def test_strips_virtual_fields(self):
        """Test computed fields never reach the remote store."""
        contact = {"id": "c1", "name": "Ana", "tags": ["x"], "total_income": 10}
        assert clean_data_for_table("contacts", contact) == {"id": "c1", "name": "Ana"}

    def test_other_tables_untouched(self):
        """Test tables without virtual fields pass through."""
        assert clean_data_for_table("debts", {"id": "d1", "tags": []}) == {"id": "d1", "tags": []}
        assert clean_data_for_table("debts", None) == {}


class TestDrain:
    """Tests for the replay contract."""

    @pytest.mark.asyncio
    async def test_replays_in_order_and_acknowledges(self, queue, remote, fast_sync_settings):
        """Test create/update/delete map to upsert/update/delete and are acknowledged."""
        await queue.add_pending_change("transactions", "create", "t1", {"id": "t1", "amount": 5, "account": {"name": "x"}})
        await queue.add_pending_change("transactions", "update", "t1", {"amount": 7})
        await queue.add_pending_change("accounts", "delete", "a1")

        result = await ChangeDrainer(queue, remote, settings=fast_sync_settings).drain()

        assert result.success
        assert result.uploaded_changes == 3
        assert remote.calls == [
            ("upsert", "transactions", "t1"),
            ("update", "transactions", "t1"),
            ("delete", "accounts", "a1"),
        ]
        assert remote.tables["transactions"]["t1"] == {"id": "t1", "amount": 7}
        assert await queue.get_pending_changes() == []

    @pytest.mark.asyncio
    async def test_nothing_to_send(self, queue, remote, fast_sync_settings):
        """Test an empty queue is a successful no-op."""
        result = await ChangeDrainer(queue, remote, settings=fast_sync_settings).drain()
        assert result.success
        assert result.uploaded_changes == 0
        assert remote.calls == []

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, queue, remote, fast_sync_settings):
        """Test a change that fails once succeeds on retry."""
        await queue.add_pending_change("debts", "create", "d1", {"id": "d1"})
        remote.write_failures[("debts", "d1")] = 1

        result = await ChangeDrainer(queue, remote, settings=fast_sync_settings).drain()

        assert result.success
        assert remote.calls.count(("upsert", "debts", "d1")) == 2

    @pytest.mark.asyncio
    async def test_partial_failure_keeps_unacknowledged(self, queue, remote, fast_sync_settings):
        """Test a failing table stops at its first failure while other tables continue."""
        await queue.add_pending_change("debts", "create", "d1", {"id": "d1"})
        failing = await queue.add_pending_change("debts", "create", "d2", {"id": "d2"})
        after = await queue.add_pending_change("debts", "update", "d2", {"amount": 1})
        await queue.add_pending_change("accounts", "create", "a1", {"id": "a1"})
        remote.write_failures[("debts", "d2")] = -1

        result = await ChangeDrainer(queue, remote, settings=fast_sync_settings).drain()

        assert not result.success
        assert result.uploaded_changes == 2
        assert result.skipped_changes == 1
        assert len(result.errors) == 1
        remaining = await queue.get_pending_changes()
        assert [c.id for c in remaining] == [failing.id, after.id]
        assert remote.calls.count(("upsert", "debts", "d2")) == fast_sync_settings.drain_max_attempts

    @pytest.mark.asyncio
    async def test_replay_is_idempotent(self, queue, remote, fast_sync_settings):
        """Test re-applying a create does not duplicate the row."""
        await queue.add_pending_change("debts", "create", "d1", {"id": "d1", "amount": 3})
        await queue.add_pending_change("debts", "create", "d1", {"id": "d1", "amount": 3})
        await queue.add_pending_change("debts", "delete", "ghost")

        result = await ChangeDrainer(queue, remote, settings=fast_sync_settings).drain()

        assert result.success
        assert list(remote.tables["debts"]) == ["d1"]

    @pytest.mark.asyncio
    async def test_failure_is_audited(self, queue, remote, fast_sync_settings):
        """Test replay failures are audited under the run's correlation id."""
        audit_storage = InMemoryAuditStorage()
        drainer = ChangeDrainer(
            queue, remote, settings=fast_sync_settings, audit_logger=AuditLogger(audit_storage)
        )
        await queue.add_pending_change("debts", "create", "d1", {"id": "d1"})
        remote.write_failures[("debts", "d1")] = -1

        await drainer.drain()

        types = [e.event_type for e in await audit_storage.get_recent_events()]
        assert AuditEventType.REPLAY_FAILED in types
