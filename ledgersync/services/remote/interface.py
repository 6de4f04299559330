"""
Remote Store Interface

The authoritative remote store is an external collaborator. The cache
layer only needs, per table:
1. A read filterable by owning user
2. Insert/update/delete
3. A change-feed subscription scoped by table and user filter

Concrete clients (a hosted Postgres API, a test fake, ...) implement
these interfaces; nothing in the cache layer depends on a vendor SDK.
"""

from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional

from ledgersync.models.cache import Record
from ledgersync.models.realtime import RealtimeEvent


# Handler invoked for every change-feed event
EventHandler = Callable[[RealtimeEvent], Awaitable[None]]

# Handler invoked when a subscription drops (error may be None)
DropHandler = Callable[[Optional[Exception]], Awaitable[None]]


class RemoteStore(ABC):
    """Read and write operations against the authoritative store."""

    @abstractmethod
    async def select(self, table: str, user_id: Optional[str] = None) -> list[Record]:
        """
        Read rows of a table.

        Args:
            table: Remote table name
            user_id: Owning user filter (None for tables owned through a parent)

        Raises:
            RemoteError: If the read fails
        """
        pass

    @abstractmethod
    async def upsert(self, table: str, record: Record) -> Record:
        """
        Insert a row, or replace it if a row with the same id exists.

        Raises:
            RemoteError: If the write fails
        """
        pass

    @abstractmethod
    async def update(self, table: str, record_id: str, changes: Record) -> Optional[Record]:
        """
        Apply field changes to one row.

        Returns:
            The updated row, or None if no row has that id

        Raises:
            RemoteError: If the write fails
        """
        pass

    @abstractmethod
    async def delete(self, table: str, record_id: str) -> bool:
        """
        Delete one row.

        Returns:
            True if a row was removed (deleting a missing row is not an error)

        Raises:
            RemoteError: If the write fails
        """
        pass


class FeedSubscription(ABC):
    """Handle for one open change-feed subscription."""

    @abstractmethod
    async def close(self) -> None:
        """Stop delivering events. Must be safe to call more than once."""
        pass


class ChangeFeed(ABC):
    """
    Realtime change feed.

    Events are delivered at-least-once with no cross-table ordering.
    """

    @abstractmethod
    async def subscribe(
        self,
        table: str,
        user_filter: Optional[str],
        on_event: EventHandler,
        on_drop: DropHandler,
    ) -> FeedSubscription:
        """
        Open a subscription for one table.

        Args:
            table: Remote table name
            user_filter: Only deliver rows whose user_id equals this (None = no filter)
            on_event: Called for each INSERT/UPDATE/DELETE
            on_drop: Called if the subscription is lost

        Raises:
            RemoteError: If the subscription cannot be opened
        """
        pass


class RemoteError(Exception):
    """Base exception for remote store operations."""
    pass
