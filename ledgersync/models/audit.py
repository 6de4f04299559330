"""
Audit Models for LedgerSync

Significant cache and sync lifecycle events are logged for audit purposes.
This provides:
1. Traceability of what the local layer did with the user's intent
2. Debugging information when local and remote state diverge
3. Ability to reconstruct a sync run from its correlation id

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditEventType(str, Enum):
    """Types of events we audit."""
    # Change Queue
    CHANGE_RECORDED = "change_recorded"
    CHANGE_PERSIST_FAILED = "change_persist_failed"
    CHANGES_ACKNOWLEDGED = "changes_acknowledged"
    CHANGES_DISCARDED = "changes_discarded"
    REPLAY_FAILED = "replay_failed"

    # Sync runs
    SYNC_STARTED = "sync_started"
    SYNC_COMPLETED = "sync_completed"
    SYNC_FAILED = "sync_failed"
    CACHE_CLEARED = "cache_cleared"

    # Realtime
    SUBSCRIPTION_OPENED = "subscription_opened"
    SUBSCRIPTION_CLOSED = "subscription_closed"
    SUBSCRIPTION_DROPPED = "subscription_dropped"
    REALTIME_DELTA_REJECTED = "realtime_delta_rejected"

    # Identity
    IDENTITY_CHANGED = "identity_changed"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    Every significant lifecycle step creates one of these.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=_utcnow,
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType = Field(
        ...,
        description="Type of event"
    )
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="Event severity"
    )

    # Context - what is this about?
    user_id: Optional[str] = Field(
        default=None,
        description="Identity the event happened under"
    )
    table: Optional[str] = Field(
        default=None,
        description="Table the event relates to, if any"
    )
    entity_id: Optional[str] = Field(
        default=None,
        description="Record or change id the event relates to"
    )

    # Correlation - for tracking related events
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events (e.g., all events in one sync run)"
    )

    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional event-specific data"
    )
    error_message: Optional[str] = None

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "user_id": self.user_id,
            "table": self.table,
            "entity_id": self.entity_id,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_message": self.error_message,
        }

    def to_storage_row(self) -> tuple:
        """
        Convert to a row for the SQLite audit table.

        Columns in order:
        (event_id, timestamp, event_type, severity, correlation_id, payload_json)
        """
        return (
            str(self.event_id),
            self.timestamp.isoformat(),
            self.event_type.value,
            self.severity.value,
            str(self.correlation_id) if self.correlation_id else None,
            json.dumps(self.model_dump(mode="json")),
        )


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.sync_started(user_id, consumers, correlation_id)
        event = AuditEventBuilder.cache_cleared(user_id, ["debts", "accounts"])
    """

    @staticmethod
    def change_recorded(
        change_id: UUID,
        table: str,
        operation: str,
        record_id: str,
        user_id: Optional[str],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CHANGE_RECORDED,
            severity=AuditSeverity.DEBUG,
            user_id=user_id,
            table=table,
            entity_id=str(change_id),
            description=f"Local {operation} recorded for {table}/{record_id}",
            details={
                "operation": operation,
                "record_id": record_id,
            },
        )

    @staticmethod
    def change_persist_failed(
        change_id: UUID,
        table: str,
        user_id: Optional[str],
        error_message: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CHANGE_PERSIST_FAILED,
            severity=AuditSeverity.WARNING,
            user_id=user_id,
            table=table,
            entity_id=str(change_id),
            description="Pending change kept in memory: persistent write failed",
            error_message=error_message,
        )

    @staticmethod
    def changes_acknowledged(
        count: int,
        user_id: Optional[str],
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CHANGES_ACKNOWLEDGED,
            user_id=user_id,
            correlation_id=correlation_id,
            description=f"{count} pending changes acknowledged by the remote store",
            details={"count": count},
        )

    @staticmethod
    def changes_discarded(
        count: int,
        user_id: Optional[str],
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CHANGES_DISCARDED,
            severity=AuditSeverity.WARNING if count else AuditSeverity.INFO,
            user_id=user_id,
            correlation_id=correlation_id,
            description=f"{count} pending changes discarded in favour of remote state",
            details={"count": count},
        )

    @staticmethod
    def replay_failed(
        table: str,
        record_id: str,
        operation: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.REPLAY_FAILED,
            severity=AuditSeverity.ERROR,
            table=table,
            entity_id=record_id,
            correlation_id=correlation_id,
            description=f"Failed to {operation} {table}/{record_id} on the remote store",
            details={"operation": operation},
            error_message=error_message,
        )

    @staticmethod
    def sync_started(
        user_id: Optional[str],
        consumers: list[str],
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYNC_STARTED,
            user_id=user_id,
            correlation_id=correlation_id,
            description=f"Sync started for {len(consumers)} consumers",
            details={"consumers": consumers},
        )

    @staticmethod
    def sync_completed(
        user_id: Optional[str],
        refreshed: list[str],
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYNC_COMPLETED,
            user_id=user_id,
            correlation_id=correlation_id,
            description="Sync completed",
            details={"refreshed": refreshed},
        )

    @staticmethod
    def sync_failed(
        user_id: Optional[str],
        errors: list[str],
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYNC_FAILED,
            severity=AuditSeverity.ERROR,
            user_id=user_id,
            correlation_id=correlation_id,
            description=f"Sync finished with {len(errors)} errors",
            details={"errors": errors},
            error_message=errors[0] if errors else None,
        )

    @staticmethod
    def cache_cleared(
        user_id: Optional[str],
        namespaces: list[str],
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CACHE_CLEARED,
            user_id=user_id,
            correlation_id=correlation_id,
            description=f"Cleared {len(namespaces)} cache namespaces",
            details={"namespaces": namespaces},
        )

    @staticmethod
    def subscription_opened(user_id: str, table: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SUBSCRIPTION_OPENED,
            severity=AuditSeverity.DEBUG,
            user_id=user_id,
            table=table,
            description=f"Realtime subscription opened for {table}",
        )

    @staticmethod
    def subscription_closed(user_id: str, table: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SUBSCRIPTION_CLOSED,
            severity=AuditSeverity.DEBUG,
            user_id=user_id,
            table=table,
            description=f"Realtime subscription closed for {table}",
        )

    @staticmethod
    def subscription_dropped(
        user_id: str,
        table: str,
        error_message: Optional[str],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SUBSCRIPTION_DROPPED,
            severity=AuditSeverity.WARNING,
            user_id=user_id,
            table=table,
            description=f"Realtime subscription for {table} dropped",
            error_message=error_message,
        )

    @staticmethod
    def realtime_delta_rejected(
        user_id: str,
        table: str,
        record_id: str,
        reason: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.REALTIME_DELTA_REJECTED,
            severity=AuditSeverity.WARNING,
            user_id=user_id,
            table=table,
            entity_id=record_id,
            description=f"Realtime delta for {table}/{record_id} not applied: {reason}",
            details={"reason": reason},
        )

    @staticmethod
    def identity_changed(
        previous_user_id: Optional[str],
        user_id: Optional[str],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.IDENTITY_CHANGED,
            user_id=user_id,
            description="Authenticated identity changed",
            details={
                "previous_user_id": previous_user_id,
                "user_id": user_id,
            },
        )
