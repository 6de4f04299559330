"""
Change Drainer

Replays the Change Queue against the remote store.

Replay contract:
1. Entries are addressable by (table, record_id, operation), so replay
   can be retried without duplicating effects (create is an upsert,
   deleting an absent row is success)
2. Acknowledgement removes exactly the replayed entries
3. A partial failure never drops unacknowledged entries

DESIGN DECISION: Entries are replayed per table in append order and a
table stops at its first failure, because later entries may depend on
earlier ones (update after create). Other tables carry on.
"""

from typing import Any, Optional
from uuid import UUID

import structlog
from pydantic import BaseModel, Field
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential

from ledgersync.audit import AuditLogger, create_correlation_id
from ledgersync.changes.queue import ChangeQueue
from ledgersync.config import SyncSettings
from ledgersync.models.changes import ChangeOperation, PendingChange
from ledgersync.services.remote import RemoteStore


logger = structlog.get_logger(__name__)


# Fields computed on the client that the remote tables do not have
VIRTUAL_FIELDS: dict[str, frozenset[str]] = {
    "contacts": frozenset({"tags", "total_expenses", "total_income"}),
    "products": frozenset({"category", "subcategory"}),
    "transactions": frozenset({"account", "category", "subcategory"}),
}


def clean_data_for_table(table: str, data: Optional[dict[str, Any]]) -> dict[str, Any]:
    """Strip client-only fields before upload."""
    if not data:
        return {}
    virtual = VIRTUAL_FIELDS.get(table, frozenset())
    return {k: v for k, v in data.items() if k not in virtual}


class DrainResult(BaseModel):
    """Outcome of one drain run."""

    success: bool = True
    uploaded_changes: int = 0
    acknowledged_ids: list[UUID] = Field(default_factory=list)
    skipped_changes: int = 0
    errors: list[str] = Field(default_factory=list)


class ChangeDrainer:
    """
    Uploads pending changes and acknowledges the ones the remote accepted.

    Usage:
        drainer = ChangeDrainer(queue, remote)
        result = await drainer.drain()
    """

    def __init__(
        self,
        queue: ChangeQueue,
        remote: RemoteStore,
        settings: Optional[SyncSettings] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._queue = queue
        self._remote = remote
        self._settings = settings or SyncSettings()
        self._audit_logger = audit_logger

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self._settings.drain_max_attempts),
            wait=wait_exponential(
                multiplier=self._settings.drain_backoff_multiplier,
                min=self._settings.drain_backoff_min_seconds,
                max=self._settings.drain_backoff_max_seconds,
            ),
            reraise=True,
        )

    async def _apply(self, change: PendingChange) -> None:
        data = clean_data_for_table(change.table, change.data)

        if change.operation == ChangeOperation.CREATE:
            await self._remote.upsert(change.table, {**data, "id": data.get("id", change.record_id)})
        elif change.operation == ChangeOperation.UPDATE:
            data.pop("id", None)
            updated = await self._remote.update(change.table, change.record_id, data)
            if updated is None:
                logger.warning(
                    "replay_update_missing_row",
                    table=change.table,
                    record_id=change.record_id,
                )
        else:
            await self._remote.delete(change.table, change.record_id)

    async def replay(self, change: PendingChange) -> None:
        """
        Apply one change remotely, retrying with exponential backoff.

        Raises:
            Exception: The last error once attempts are exhausted
        """
        async for attempt in self._retrying():
            with attempt:
                await self._apply(change)

    async def drain(self, correlation_id: Optional[UUID] = None) -> DrainResult:
        """
        Replay every pending change of the current user.

        Returns:
            DrainResult (success is False if any change was not accepted)
        """
        correlation_id = correlation_id or create_correlation_id()
        changes = await self._queue.get_pending_changes()
        if not changes:
            return DrainResult()

        by_table: dict[str, list[PendingChange]] = {}
        for change in changes:
            by_table.setdefault(change.table, []).append(change)

        result = DrainResult()
        for table, table_changes in by_table.items():
            for position, change in enumerate(table_changes):
                try:
                    await self.replay(change)
                except Exception as e:
                    result.success = False
                    result.errors.append(
                        f"{table}/{change.record_id} ({change.operation.value}): {e}"
                    )
                    result.skipped_changes += len(table_changes) - position - 1
                    logger.error(
                        "replay_failed",
                        table=table,
                        record_id=change.record_id,
                        operation=change.operation.value,
                        error=str(e),
                    )
                    if self._audit_logger:
                        await self._audit_logger.log_replay_failed(
                            table=table,
                            record_id=change.record_id,
                            operation=change.operation.value,
                            error_message=str(e),
                            correlation_id=correlation_id,
                        )
                    break
                result.uploaded_changes += 1
                result.acknowledged_ids.append(change.id)

        if result.acknowledged_ids:
            await self._queue.acknowledge(result.acknowledged_ids)
            if self._audit_logger:
                await self._audit_logger.log_changes_acknowledged(
                    count=len(result.acknowledged_ids),
                    user_id=changes[0].user_id,
                    correlation_id=correlation_id,
                )

        logger.info(
            "drain_finished",
            success=result.success,
            uploaded=result.uploaded_changes,
            skipped=result.skipped_changes,
        )
        return result
