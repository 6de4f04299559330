"""Remote store interfaces."""

from ledgersync.services.remote.interface import (
    ChangeFeed,
    DropHandler,
    EventHandler,
    FeedSubscription,
    RemoteError,
    RemoteStore,
)

__all__ = [
    "ChangeFeed",
    "DropHandler",
    "EventHandler",
    "FeedSubscription",
    "RemoteError",
    "RemoteStore",
]
