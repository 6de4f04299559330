"""
Change Queue Models

A PendingChange is one locally intended mutation that the remote
store has not yet confirmed.

DESIGN DECISION: Pending changes are immutable once appended.
Multiple entries may exist for the same record (create, then update).
The queue is a faithful record of intent, not a compacted state.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ChangeOperation(str, Enum):
    """Kind of local mutation."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class PendingChange(BaseModel):
    """
    A single entry in the Change Queue.

    Addressable for replay by (table, record_id, operation).
    """
    model_config = ConfigDict(frozen=True)

    id: UUID = Field(
        default_factory=uuid4,
        description="Unique change identifier"
    )
    table: str = Field(
        ...,
        min_length=1,
        description="Remote table the change applies to"
    )
    operation: ChangeOperation = Field(
        ...,
        description="create, update or delete"
    )
    record_id: str = Field(
        ...,
        min_length=1,
        description="Id of the affected record"
    )
    data: Optional[dict[str, Any]] = Field(
        default=None,
        description="Record payload (full record for create, fields for update)"
    )
    user_id: Optional[str] = Field(
        default=None,
        description="Identity that made the change"
    )
    timestamp: datetime = Field(
        default_factory=_utcnow,
        description="When the change was recorded (UTC)"
    )

    @property
    def replay_key(self) -> tuple[str, str, str]:
        return (self.table, self.record_id, self.operation.value)


class PendingChangesStatus(BaseModel):
    """
    Aggregate view of the Change Queue.

    Drives the "N changes pending sync" indicator.
    """

    creates: int = 0
    updates: int = 0
    deletes: int = 0
    total: int = 0
    has_pending_changes: bool = False

    @classmethod
    def from_changes(cls, changes: list[PendingChange]) -> "PendingChangesStatus":
        """Classify changes by operation and total them."""
        creates = sum(1 for c in changes if c.operation == ChangeOperation.CREATE)
        updates = sum(1 for c in changes if c.operation == ChangeOperation.UPDATE)
        deletes = sum(1 for c in changes if c.operation == ChangeOperation.DELETE)
        return cls(
            creates=creates,
            updates=updates,
            deletes=deletes,
            total=len(changes),
            has_pending_changes=len(changes) > 0,
        )

    @classmethod
    def empty(cls) -> "PendingChangesStatus":
        return cls()

    def summary(self) -> str:
        """Human-readable one-liner for the sync indicator."""
        if not self.has_pending_changes:
            return "All changes synced"
        parts = []
        if self.creates:
            parts.append(f"{self.creates} created")
        if self.updates:
            parts.append(f"{self.updates} updated")
        if self.deletes:
            parts.append(f"{self.deletes} deleted")
        return f"{self.total} changes pending sync ({', '.join(parts)})"
