"""
Change Queue

Append-only log of locally intended mutations not yet confirmed remotely.

GUARANTEES:
- Exactly one entry per mutation call, in call order
- No deduplication, compaction or conflict resolution
- A failing persistent write never loses the entry: it is kept in an
  in-memory buffer and flushed, in order, before the next append

Entries are retired only by acknowledgement (drain) or an explicit discard.
"""

from typing import Any, Iterable, Optional, Union
from uuid import UUID

import structlog

from ledgersync.audit import AuditLogger
from ledgersync.cache.record_store import PersistentRecordStore
from ledgersync.models.cache import CacheNamespace
from ledgersync.models.changes import ChangeOperation, PendingChange, PendingChangesStatus
from ledgersync.session import Session


logger = structlog.get_logger(__name__)


class ChangeQueue:
    """
    Ordered record of local intent.

    Usage:
        queue = ChangeQueue(store, session)
        await queue.add_pending_change("transactions", "create", tx["id"], tx)
        status = await queue.get_status()
    """

    def __init__(
        self,
        store: PersistentRecordStore,
        session: Session,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._store = store
        self._session = session
        self._audit_logger = audit_logger
        # Changes whose persistent write failed, oldest first
        self._unflushed: list[PendingChange] = []

    @property
    def unflushed_count(self) -> int:
        return len(self._unflushed)

    async def _flush(self) -> None:
        while self._unflushed:
            if not await self._store.add_pending_change(self._unflushed[0]):
                return
            self._unflushed.pop(0)

    async def add_pending_change(
        self,
        table: Union[CacheNamespace, str],
        operation: Union[ChangeOperation, str],
        record_id: str,
        data: Optional[dict[str, Any]] = None,
    ) -> PendingChange:
        """
        Append exactly one change.

        Returns:
            The recorded change (always; persistence failures are buffered)
        """
        change = PendingChange(
            table=getattr(table, "value", table),
            operation=ChangeOperation(operation),
            record_id=str(record_id),
            data=data,
            user_id=self._session.user_id,
        )

        await self._flush()
        persisted = False
        if not self._unflushed:
            persisted = await self._store.add_pending_change(change)
        if not persisted:
            # Keep order: nothing may overtake an unflushed change
            self._unflushed.append(change)
            logger.warning(
                "pending_change_buffered",
                table=change.table,
                record_id=change.record_id,
                buffered=len(self._unflushed),
            )
            if self._audit_logger:
                await self._audit_logger.log_change_persist_failed(
                    change_id=change.id,
                    table=change.table,
                    user_id=change.user_id,
                    error_message="persistent write failed",
                )
        elif self._audit_logger:
            await self._audit_logger.log_change_recorded(
                change_id=change.id,
                table=change.table,
                operation=change.operation.value,
                record_id=change.record_id,
                user_id=change.user_id,
            )

        return change

    async def get_pending_changes(self, all_users: bool = False) -> list[PendingChange]:
        """
        Pending changes in append order.

        Args:
            all_users: Include changes made under other identities
        """
        user_id = self._session.user_id
        if not all_users and not user_id:
            return []

        await self._flush()
        persisted = await self._store.get_pending_changes()
        seen = {c.id for c in persisted}
        changes = persisted + [c for c in self._unflushed if c.id not in seen]

        if all_users:
            return changes
        return [c for c in changes if c.user_id == user_id]

    async def get_status(self) -> PendingChangesStatus:
        """Counts by operation for the current user."""
        if not self._session.user_id:
            return PendingChangesStatus.empty()
        return PendingChangesStatus.from_changes(await self.get_pending_changes())

    async def has_pending_changes(self) -> bool:
        return (await self.get_status()).has_pending_changes

    async def acknowledge(self, change_ids: Iterable[UUID]) -> int:
        """
        Retire exactly the given changes.

        Returns:
            Number of changes removed
        """
        wanted = set(change_ids)
        if not wanted:
            return 0
        before = len(self._unflushed)
        self._unflushed = [c for c in self._unflushed if c.id not in wanted]
        removed = before - len(self._unflushed)
        removed += await self._store.remove_pending_changes(list(wanted))
        logger.info("pending_changes_acknowledged", count=removed)
        return removed

    async def discard(self, user_id: Optional[str] = None) -> int:
        """
        Drop every pending change of one identity (default: current user).

        Returns:
            Number of changes discarded
        """
        user_id = user_id or self._session.user_id
        if not user_id:
            return 0
        changes = await self.get_pending_changes(all_users=True)
        doomed = [c.id for c in changes if c.user_id == user_id]
        return await self.acknowledge(doomed)
