"""Tests for the sync orchestrator, the pending-changes poller and the component factory."""

import asyncio

import pytest

from ledgersync.config import Settings, SyncSettings
from ledgersync.models.audit import AuditEventType
from ledgersync.models.cache import CacheNamespace
from ledgersync.orchestrator import (
    PendingChangesPoller,
    SyncOrchestrator,
    create_sync_components,
)
from ledgersync.services.storage import InMemoryAuditStorage, InMemoryStorageBackend


ACCOUNTS = CacheNamespace.ACCOUNTS
DEBTS = CacheNamespace.DEBTS


@pytest.fixture
def audit_storage():
    return InMemoryAuditStorage()


class FastReplaySettings(Settings):
    """Settings whose replay retries do not wait."""

    @property
    def sync(self) -> SyncSettings:
        return SyncSettings(
            drain_backoff_multiplier=0,
            drain_backoff_min_seconds=0,
            drain_backoff_max_seconds=0,
        )


@pytest.fixture
def components(remote, feed, audit_storage):
    return create_sync_components(
        remote,
        feed,
        settings=FastReplaySettings(),
        user_id="user-a",
        backend=InMemoryStorageBackend(),
        audit_storage=audit_storage,
    )


class TestSyncAll:
    """Tests for the discard-and-refetch operation."""

    @pytest.mark.asyncio
    async def test_clears_then_repopulates(self, components, remote):
        """Test local state is replaced by the remote store's truth."""
        remote.seed("accounts", [{"id": "a1", "user_id": "user-a"}])
        remote.seed("debts", [{"id": "d1", "user_id": "user-a"}])
        accounts = components.collection(ACCOUNTS)
        debts = components.collection(DEBTS)
        await accounts.create({"id": "local-only"})

        result = await components.orchestrator.sync_all()

        assert result.success
        assert sorted(result.refreshed) == ["accounts", "debts"]
        assert accounts.items == [{"id": "a1", "user_id": "user-a"}]
        assert debts.items == [{"id": "d1", "user_id": "user-a"}]
        assert await components.record_store.get(ACCOUNTS) == [{"id": "a1", "user_id": "user-a"}]
        assert await components.freshness.get_cached_data(DEBTS) == [{"id": "d1", "user_id": "user-a"}]

    @pytest.mark.asyncio
    async def test_pending_status_after_clear(self, components, remote):
        """Test only changes appended after the clear remain pending."""
        accounts = components.collection(ACCOUNTS)
        await accounts.create({"id": "before"})
        assert (await components.queue.get_status()).total == 1

        await components.orchestrator.sync_all()
        assert not await components.queue.has_pending_changes()

        await accounts.create({"id": "after"})
        status = await components.queue.get_status()
        assert status.total == 1
        assert status.creates == 1

    @pytest.mark.asyncio
    async def test_consumers_refresh_concurrently_after_clear(self, freshness, queue, session):
        """Test every consumer starts before any finishes, and after the clear."""
        await freshness.set_cached_data(DEBTS, [{"id": "stale"}])
        orchestrator = SyncOrchestrator(session, freshness, queue)
        started = []
        seen_during_refresh = []
        all_started = asyncio.Event()

        def consumer(name):
            async def refresh():
                started.append(name)
                seen_during_refresh.append(await freshness.get_cached_data(DEBTS))
                if len(started) == 2:
                    all_started.set()
                await asyncio.wait_for(all_started.wait(), timeout=1)
            return refresh

        orchestrator.register_consumer("debts", consumer("debts"))
        orchestrator.register_consumer("accounts", consumer("accounts"))

        result = await orchestrator.sync_all()

        assert result.success
        assert seen_during_refresh == [[], []]

    @pytest.mark.asyncio
    async def test_failing_consumer_is_reported(self, freshness, queue, session):
        """Test one failing consumer does not stop the others."""
        orchestrator = SyncOrchestrator(session, freshness, queue)
        refreshed = []

        async def broken():
            raise ConnectionError("offline")

        async def working():
            refreshed.append("accounts")

        orchestrator.register_consumer("debts", broken)
        orchestrator.register_consumer("accounts", working)

        result = await orchestrator.sync_all()

        assert not result.success
        assert result.refreshed == ["accounts"]
        assert result.errors[0].startswith("debts:")
        assert refreshed == ["accounts"]

    @pytest.mark.asyncio
    async def test_concurrent_calls_are_guarded(self, freshness, queue, session):
        """Test a sync started while one is running is skipped."""
        orchestrator = SyncOrchestrator(session, freshness, queue)

        async def slow():
            await asyncio.sleep(0.01)

        orchestrator.register_consumer("debts", slow)

        first, second = await asyncio.gather(orchestrator.sync_all(), orchestrator.sync_all())

        assert first.success and not first.skipped
        assert second.skipped
        assert not orchestrator.is_syncing

    @pytest.mark.asyncio
    async def test_repeatable(self, components, remote):
        """Test sync_all is safe to call repeatedly."""
        remote.seed("accounts", [{"id": "a1", "user_id": "user-a"}])
        accounts = components.collection(ACCOUNTS)

        await components.orchestrator.sync_all()
        first = list(accounts.items)
        await components.orchestrator.sync_all()

        assert accounts.items == first

    @pytest.mark.asyncio
    async def test_sync_run_is_audited(self, components, audit_storage):
        """Test all events of one run share a correlation id."""
        components.collection(ACCOUNTS)

        result = await components.orchestrator.sync_all()

        events = await audit_storage.get_events_by_correlation_id(result.correlation_id)
        types = [e.event_type for e in events]
        assert AuditEventType.SYNC_STARTED in types
        assert AuditEventType.CACHE_CLEARED in types
        assert AuditEventType.SYNC_COMPLETED in types


class TestFullSync:
    """Tests for upload-then-download."""

    @pytest.mark.asyncio
    async def test_uploads_then_downloads(self, components, remote):
        """Test pending changes reach the remote before the refetch."""
        accounts = components.collection(ACCOUNTS)
        await accounts.create({"id": "a-new", "name": "Savings"})

        result = await components.full_sync()

        assert result.success
        assert result.drain.uploaded_changes == 1
        assert "a-new" in remote.tables["accounts"]
        assert [a["id"] for a in accounts.items] == ["a-new"]
        assert not await components.queue.has_pending_changes()

    @pytest.mark.asyncio
    async def test_failed_upload_skips_download(self, components, remote):
        """Test local intent is kept when the upload fails."""
        accounts = components.collection(ACCOUNTS)
        await accounts.create({"id": "a-new"})
        remote.write_failures[("accounts", "a-new")] = -1
        selects_before = remote.select_calls

        result = await components.full_sync()

        assert not result.success
        assert result.errors[0] == "upload failed, skipping download"
        assert remote.select_calls == selects_before
        assert (await components.queue.get_status()).total == 1


class TestPendingChangesPoller:
    """Tests for the pending-sync indicator."""

    @pytest.mark.asyncio
    async def test_refresh(self, queue, session):
        """Test refresh() recomputes the status."""
        poller = PendingChangesPoller(queue, session, interval=30)
        await queue.add_pending_change("debts", "create", "d1")

        status = await poller.refresh()

        assert status.total == 1
        assert poller.status.has_pending_changes
        assert poller.is_loading is False

    @pytest.mark.asyncio
    async def test_start_and_stop(self, queue, session):
        """Test the background loop polls and stops cleanly."""
        poller = PendingChangesPoller(queue, session, interval=0.01)
        await queue.add_pending_change("debts", "create", "d1")

        poller.start()
        await asyncio.sleep(0.03)
        assert poller.running
        assert poller.status.total == 1

        await poller.stop()
        assert not poller.running

    @pytest.mark.asyncio
    async def test_identity_change_refreshes(self, queue, session):
        """Test the status follows the signed-in user."""
        poller = PendingChangesPoller(queue, session)
        session.on_identity_change(poller.on_identity_change)
        await queue.add_pending_change("debts", "create", "d1")
        await poller.refresh()

        await session.sign_in("user-b")

        assert poller.status.total == 0


class TestIdentityHooks:
    """Tests for the wiring done by create_sync_components."""

    @pytest.mark.asyncio
    async def test_logout_purges_cache_but_keeps_intent(self, components, feed):
        """Test sign-out closes channels, purges cached data and keeps pending changes."""
        await components.start()
        accounts = components.collection(ACCOUNTS)
        await accounts.create({"id": "a1"})

        await components.session.sign_out()

        assert feed.open_subscriptions() == []
        assert await components.backend.read_collection("user-a", "accounts") == []
        assert len(await components.queue.get_pending_changes(all_users=True)) == 1
        assert components.poller.status.total == 0
        await components.close()

    @pytest.mark.asyncio
    async def test_user_switch_resubscribes_for_new_user(self, components, feed):
        """Test switching users rebinds every channel to the new identity."""
        await components.start()

        await components.session.sign_in("user-b")

        filters = {s.user_filter for s in feed.open_subscriptions() if s.user_filter}
        assert filters == {"user-b"}
        await components.close()

    @pytest.mark.asyncio
    async def test_realtime_reaches_collection(self, components, feed):
        """Test a feed event updates the collection without a refetch."""
        await components.start()
        debts = components.collection(DEBTS)

        await feed.emit(DEBTS, "INSERT", new={"id": "d1", "user_id": "user-a"})

        assert debts.items == [{"id": "d1", "user_id": "user-a"}]
        assert await components.record_store.get(DEBTS, "d1") == {"id": "d1", "user_id": "user-a"}
        await components.close()

    @pytest.mark.asyncio
    async def test_child_row_accepted_after_parent_load(self, components, remote, feed):
        """Test a subcategory INSERT is applied once its category was loaded normally."""
        remote.seed("categories", [{"id": "c1", "user_id": "user-a"}])
        categories = components.collection(CacheNamespace.CATEGORIES)
        subcategories = components.collection(CacheNamespace.SUBCATEGORIES)
        await components.start()

        await categories.load()
        await feed.emit(CacheNamespace.SUBCATEGORIES, "INSERT", new={"id": "s1", "category_id": "c1"})

        assert subcategories.items == [{"id": "s1", "category_id": "c1"}]
        await components.close()

    @pytest.mark.asyncio
    async def test_transaction_ledger_is_refreshed_by_sync(self, components, remote):
        """Test the ledger's collection is registered with the orchestrator."""
        ledger = components.transaction_ledger()
        remote.seed("transactions", [{"id": "t1", "user_id": "user-a", "amount": 5, "account_id": "a"}])

        await components.orchestrator.sync_all()

        assert "transactions" in components.orchestrator.consumers
        assert ledger.balance("a") == 5

    def test_factory_defaults_to_memory_backend(self, remote, feed, monkeypatch):
        """Test the memory backend is selected from settings."""
        monkeypatch.setenv("LEDGERSYNC_CACHE_BACKEND", "memory")

        components = create_sync_components(remote, feed, settings=Settings())

        assert isinstance(components.backend, InMemoryStorageBackend)
        assert components.session.user_id is None
