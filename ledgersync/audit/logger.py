"""
Audit Logger

Every significant cache and sync lifecycle step is logged.
This provides:
1. Traceability of local intent versus remote confirmation
2. Debugging capability when caches diverge
3. A per-run trail of sync operations (correlation ids)

The audit logger:
- Is async to not block main flow
- Gracefully handles failures (doesn't crash the app if logging fails)
- Supports correlation IDs to trace related events
"""

import logging
from typing import Optional
from uuid import UUID, uuid4

import structlog

from ledgersync.models.audit import AuditEvent, AuditEventBuilder, AuditSeverity
from ledgersync.services.storage import AuditStorageInterface


# Configure structlog for local logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


def configure_log_level(level: str) -> None:
    """Set the stdlib level the structlog bridge filters against."""
    logging.basicConfig(format="%(message)s")
    logging.getLogger("ledgersync").setLevel(level.upper())


class AuditLogger:
    """
    Central audit logging service.

    Logs events both to:
    1. Structured local log (for debugging)
    2. Audit storage (for persistence), when configured
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        """
        Initialize audit logger.

        Args:
            storage: Storage backend for persistence.
                    If None, only logs locally.
        """
        self._storage = storage
        self._logger = structlog.get_logger("ledgersync.audit")

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        log_dict = event.to_log_dict()

        if event.severity in (AuditSeverity.ERROR, AuditSeverity.CRITICAL):
            self._logger.error("audit_event", **log_dict)
        elif event.severity == AuditSeverity.WARNING:
            self._logger.warning("audit_event", **log_dict)
        elif event.severity == AuditSeverity.DEBUG:
            self._logger.debug("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._storage:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                # Log failure but don't raise
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    async def log_change_recorded(
        self,
        change_id: UUID,
        table: str,
        operation: str,
        record_id: str,
        user_id: Optional[str],
    ) -> None:
        """Log a change appended to the queue."""
        await self.log(AuditEventBuilder.change_recorded(
            change_id=change_id,
            table=table,
            operation=operation,
            record_id=record_id,
            user_id=user_id,
        ))

    async def log_change_persist_failed(
        self,
        change_id: UUID,
        table: str,
        user_id: Optional[str],
        error_message: str,
    ) -> None:
        """Log a change that could only be buffered in memory."""
        await self.log(AuditEventBuilder.change_persist_failed(
            change_id=change_id,
            table=table,
            user_id=user_id,
            error_message=error_message,
        ))

    async def log_changes_acknowledged(
        self,
        count: int,
        user_id: Optional[str],
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.changes_acknowledged(
            count=count,
            user_id=user_id,
            correlation_id=correlation_id,
        ))

    async def log_changes_discarded(
        self,
        count: int,
        user_id: Optional[str],
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.changes_discarded(
            count=count,
            user_id=user_id,
            correlation_id=correlation_id,
        ))

    async def log_replay_failed(
        self,
        table: str,
        record_id: str,
        operation: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a change the remote store refused."""
        await self.log(AuditEventBuilder.replay_failed(
            table=table,
            record_id=record_id,
            operation=operation,
            error_message=error_message,
            correlation_id=correlation_id,
        ))

    async def log_sync_started(
        self,
        user_id: Optional[str],
        consumers: list[str],
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.sync_started(
            user_id=user_id,
            consumers=consumers,
            correlation_id=correlation_id,
        ))

    async def log_sync_completed(
        self,
        user_id: Optional[str],
        refreshed: list[str],
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.sync_completed(
            user_id=user_id,
            refreshed=refreshed,
            correlation_id=correlation_id,
        ))

    async def log_sync_failed(
        self,
        user_id: Optional[str],
        errors: list[str],
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.sync_failed(
            user_id=user_id,
            errors=errors,
            correlation_id=correlation_id,
        ))

    async def log_cache_cleared(
        self,
        user_id: Optional[str],
        namespaces: list[str],
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.cache_cleared(
            user_id=user_id,
            namespaces=namespaces,
            correlation_id=correlation_id,
        ))

    async def log_subscription_opened(self, user_id: str, table: str) -> None:
        await self.log(AuditEventBuilder.subscription_opened(user_id, table))

    async def log_subscription_closed(self, user_id: str, table: str) -> None:
        await self.log(AuditEventBuilder.subscription_closed(user_id, table))

    async def log_subscription_dropped(
        self,
        user_id: str,
        table: str,
        error_message: Optional[str],
    ) -> None:
        await self.log(AuditEventBuilder.subscription_dropped(
            user_id=user_id,
            table=table,
            error_message=error_message,
        ))

    async def log_realtime_delta_rejected(
        self,
        user_id: str,
        table: str,
        record_id: str,
        reason: str,
    ) -> None:
        await self.log(AuditEventBuilder.realtime_delta_rejected(
            user_id=user_id,
            table=table,
            record_id=record_id,
            reason=reason,
        ))

    async def log_identity_changed(
        self,
        previous_user_id: Optional[str],
        user_id: Optional[str],
    ) -> None:
        await self.log(AuditEventBuilder.identity_changed(
            previous_user_id=previous_user_id,
            user_id=user_id,
        ))


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a sync run.
    Pass it through all subsequent operations.
    """
    return uuid4()
