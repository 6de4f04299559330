"""
Realtime Merge Listener

Subscribes to the remote change feed, one channel per (user, table),
applies each delta to the Freshness Cache and notifies consumers.

Per table: DISCONNECTED -> SUBSCRIBING -> SUBSCRIBED -> DISCONNECTED

Event handling:
- INSERT: added iff the row belongs to the current user, directly via
  `user_id` or transitively through a cached parent row
- UPDATE: replaces the cached row with the same id (an owned row that is
  not cached yet is inserted, since an INSERT may have been missed)
- DELETE: removes the cached row with the same id

DESIGN DECISION: Teardown always completes before anything is opened.
start/stop are serialized by a lock, and an identity change closes every
channel bound to the previous user before subscribing for the new one.
Events that still arrive on a channel bound to an old identity are dropped.

DESIGN DECISION: When version comparison is on and both rows carry a
parseable `updated_at`, an UPDATE older than the cached row is rejected.
Without timestamps, last write (in arrival order) wins.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

import structlog
from pydantic import BaseModel

from ledgersync.audit import AuditLogger
from ledgersync.cache.freshness import FreshnessCache
from ledgersync.cache.record_store import PersistentRecordStore
from ledgersync.models.cache import CacheNamespace, Record, record_id_of
from ledgersync.models.realtime import (
    CacheUpdate,
    RealtimeEvent,
    RealtimeEventType,
    SubscriptionState,
)
from ledgersync.realtime.bus import CacheEventBus
from ledgersync.services.remote import ChangeFeed, FeedSubscription
from ledgersync.session import Session


logger = structlog.get_logger(__name__)


class OwnershipRule(BaseModel):
    """
    How a table's rows are tied to a user.

    With no parent, the row's own `user_id` decides. Otherwise the row is
    owned iff `parent_key` points at a row cached for the user in `parent`,
    either in the freshness snapshot or in the persistent record store.
    """

    parent: Optional[CacheNamespace] = None
    parent_key: Optional[str] = None


# Tables without a user_id column
DEFAULT_OWNERSHIP: dict[CacheNamespace, OwnershipRule] = {
    CacheNamespace.SUBCATEGORIES: OwnershipRule(
        parent=CacheNamespace.CATEGORIES, parent_key="category_id"
    ),
    CacheNamespace.DEBT_PAYMENTS: OwnershipRule(
        parent=CacheNamespace.DEBTS, parent_key="debt_id"
    ),
    CacheNamespace.CONTACT_TAGS: OwnershipRule(
        parent=CacheNamespace.CONTACTS, parent_key="contact_id"
    ),
}


def parse_version(record: Optional[Record]) -> Optional[datetime]:
    """Read a row's `updated_at` as an aware datetime, or None if unusable."""
    if not record:
        return None
    value: Any = record.get("updated_at")
    if value is None:
        return None
    try:
        if isinstance(value, datetime):
            parsed = value
        elif isinstance(value, (int, float)):
            parsed = datetime.fromtimestamp(value, tz=timezone.utc)
        else:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except (TypeError, ValueError, OverflowError, OSError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class RealtimeMergeListener:
    """
    Keeps the Freshness Cache in step with the remote change feed.

    Usage:
        listener = RealtimeMergeListener(feed, freshness, bus, session)
        session.on_identity_change(listener.on_identity_change)
        await listener.start()
    """

    def __init__(
        self,
        feed: ChangeFeed,
        freshness: FreshnessCache,
        bus: CacheEventBus,
        session: Session,
        tables: Optional[Iterable[CacheNamespace]] = None,
        ownership: Optional[dict[CacheNamespace, OwnershipRule]] = None,
        compare_versions: bool = True,
        audit_logger: Optional[AuditLogger] = None,
        record_store: Optional[PersistentRecordStore] = None,
    ):
        self._feed = feed
        self._freshness = freshness
        self._record_store = record_store
        self._bus = bus
        self._session = session
        self.tables = list(tables) if tables is not None else list(CacheNamespace)
        self._ownership = ownership if ownership is not None else dict(DEFAULT_OWNERSHIP)
        self.compare_versions = compare_versions
        self._audit_logger = audit_logger

        self._lock = asyncio.Lock()
        self._bound_user: Optional[str] = None
        self._subscriptions: dict[CacheNamespace, FeedSubscription] = {}
        self._states: dict[CacheNamespace, SubscriptionState] = {}

    @property
    def bound_user(self) -> Optional[str]:
        """Identity the open channels were subscribed for."""
        return self._bound_user

    def state(self, table: CacheNamespace) -> SubscriptionState:
        return self._states.get(table, SubscriptionState.DISCONNECTED)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Open one channel per table for the current user."""
        async with self._lock:
            user_id = self._session.user_id
            if self._bound_user is not None and self._bound_user != user_id:
                await self._close_all()
            if not user_id:
                return
            self._bound_user = user_id
            for table in self.tables:
                if self.state(table) == SubscriptionState.DISCONNECTED:
                    await self._open(user_id, table)

    async def stop(self) -> None:
        """Close every channel."""
        async with self._lock:
            await self._close_all()

    async def on_identity_change(
        self,
        previous_user_id: Optional[str],
        user_id: Optional[str],
    ) -> None:
        """Session hook: close the previous identity's channels, then resubscribe."""
        await self.stop()
        if user_id:
            await self.start()

    async def _open(self, user_id: str, table: CacheNamespace) -> None:
        self._states[table] = SubscriptionState.SUBSCRIBING
        user_filter = None if table in self._ownership else user_id

        async def on_event(event: RealtimeEvent) -> None:
            await self.handle_event(event, user_id)

        async def on_drop(error: Optional[Exception]) -> None:
            await self._handle_drop(user_id, table, error)

        try:
            subscription = await self._feed.subscribe(
                table.value, user_filter, on_event, on_drop
            )
        except Exception as e:
            self._states[table] = SubscriptionState.DISCONNECTED
            logger.error("realtime_subscribe_failed", table=table.value, error=str(e))
            if self._audit_logger:
                await self._audit_logger.log_subscription_dropped(user_id, table.value, str(e))
            return

        self._subscriptions[table] = subscription
        self._states[table] = SubscriptionState.SUBSCRIBED
        logger.debug("realtime_subscribed", table=table.value, user_id=user_id)
        if self._audit_logger:
            await self._audit_logger.log_subscription_opened(user_id, table.value)

    async def _close_all(self) -> None:
        user_id = self._bound_user
        subscriptions, self._subscriptions = self._subscriptions, {}
        for table, subscription in subscriptions.items():
            try:
                await subscription.close()
            except Exception as e:
                logger.warning("realtime_close_failed", table=table.value, error=str(e))
            self._states[table] = SubscriptionState.DISCONNECTED
            if self._audit_logger and user_id:
                await self._audit_logger.log_subscription_closed(user_id, table.value)
        self._states = {table: SubscriptionState.DISCONNECTED for table in self._states}
        self._bound_user = None
        if subscriptions:
            logger.info("realtime_unsubscribed", user_id=user_id, channels=len(subscriptions))

    async def _handle_drop(
        self,
        user_id: str,
        table: CacheNamespace,
        error: Optional[Exception],
    ) -> None:
        if user_id != self._bound_user:
            return
        self._subscriptions.pop(table, None)
        self._states[table] = SubscriptionState.DISCONNECTED
        logger.warning(
            "realtime_subscription_dropped",
            table=table.value,
            user_id=user_id,
            error=str(error) if error else None,
        )
        if self._audit_logger:
            await self._audit_logger.log_subscription_dropped(
                user_id, table.value, str(error) if error else None
            )

    # =========================================================================
    # Delta application
    # =========================================================================

    async def _is_owned(self, table: CacheNamespace, record: Record, user_id: str) -> bool:
        rule = self._ownership.get(table)
        if rule is None or rule.parent is None:
            return record.get("user_id") == user_id
        parent_id = record.get(rule.parent_key) if rule.parent_key else None
        if parent_id is None:
            return False
        parents = await self._freshness.get_index(rule.parent)
        if parent_id in parents:
            return True
        if self._record_store is None:
            return False
        return await self._record_store.get_record(rule.parent, str(parent_id)) is not None

    async def _reject(self, user_id: str, table: CacheNamespace, record_id: str, reason: str) -> None:
        logger.info("realtime_delta_rejected", table=table.value, record_id=record_id, reason=reason)
        if self._audit_logger:
            await self._audit_logger.log_realtime_delta_rejected(
                user_id, table.value, record_id, reason
            )

    async def handle_event(self, event: RealtimeEvent, user_id: Optional[str] = None) -> bool:
        """
        Apply one change-feed event for `user_id` (default: current user).

        Returns:
            True if the cached collection changed and consumers were notified
        """
        user_id = user_id or self._session.user_id
        if not user_id or user_id != self._session.user_id:
            logger.debug("realtime_event_for_stale_identity", table=event.table.value)
            return False

        table = event.table
        record_id = event.record_id
        if record_id is None:
            logger.warning("realtime_event_without_id", table=table.value, event_type=event.event_type.value)
            return False

        index = await self._freshness.get_index(table)

        if event.event_type == RealtimeEventType.DELETE:
            if record_id not in index:
                logger.debug("realtime_delete_not_cached", table=table.value, record_id=record_id)
                return False
        else:
            record = event.new or {}
            if record_id_of(record) is None:
                # Id only present on `old`
                record = {**record, "id": record_id}
                event = event.model_copy(update={"new": record})
            existing = index.get(record_id)
            if existing is None:
                if not await self._is_owned(table, record, user_id):
                    logger.debug("realtime_row_not_owned", table=table.value, record_id=record_id)
                    return False
            elif event.event_type == RealtimeEventType.UPDATE and self.compare_versions:
                incoming, cached = parse_version(record), parse_version(existing)
                if incoming is not None and cached is not None and incoming < cached:
                    await self._reject(user_id, table, record_id, "older than cached row")
                    return False

        # Identity may have changed while the index was loading
        if self._session.user_id != user_id:
            return False

        if event.event_type == RealtimeEventType.DELETE:
            index.remove(record_id)
        else:
            index.upsert(record)

        data = await self._freshness.commit(table, index)
        await self._bus.publish(CacheUpdate(table=table, data=data, event=event))
        logger.debug(
            "realtime_delta_applied",
            table=table.value,
            record_id=record_id,
            event_type=event.event_type.value,
        )
        return True
