"""
Realtime Models

Row-level change events delivered by the remote change feed, the
per-table subscription state, and the typed payload published to
in-process consumers after a delta is merged.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from ledgersync.models.cache import CacheNamespace, Record, record_id_of


class RealtimeEventType(str, Enum):
    """Row-level change kinds emitted by the change feed."""
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class SubscriptionState(str, Enum):
    """
    Lifecycle of one (user, table) subscription.

    DISCONNECTED -> SUBSCRIBING -> SUBSCRIBED -> DISCONNECTED
    """
    DISCONNECTED = "disconnected"
    SUBSCRIBING = "subscribing"
    SUBSCRIBED = "subscribed"


class RealtimeEvent(BaseModel):
    """
    One change-feed event.

    Delivered at-least-once, with no ordering across tables.
    Accepts the feed's camelCase `eventType` key as well.
    """
    model_config = ConfigDict(populate_by_name=True)

    event_type: RealtimeEventType = Field(
        ...,
        alias="eventType",
    )
    table: CacheNamespace
    new: Optional[dict[str, Any]] = None
    old: Optional[dict[str, Any]] = None

    @property
    def record_id(self) -> Optional[str]:
        """Id of the affected row, from `new` or else `old`."""
        return record_id_of(self.new) or record_id_of(self.old)


class CacheUpdate(BaseModel):
    """
    Notification published after a table's cached collection changed.

    `event` is None when the change did not come from the feed
    (e.g. a forced refresh).
    """

    table: CacheNamespace
    data: list[Record] = Field(default_factory=list)
    event: Optional[RealtimeEvent] = None
