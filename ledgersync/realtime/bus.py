"""
Cache Event Bus

Typed in-process publish/subscribe channel, keyed by table.

Consumers subscribe to a CacheNamespace and receive a CacheUpdate each
time that table's cached collection changes. A failing handler is logged
and does not prevent delivery to the others.
"""

from typing import Awaitable, Callable

import structlog

from ledgersync.models.cache import CacheNamespace
from ledgersync.models.realtime import CacheUpdate


logger = structlog.get_logger(__name__)


CacheUpdateHandler = Callable[[CacheUpdate], Awaitable[None]]


class CacheEventBus:
    """
    Per-table notification channel.

    Usage:
        bus = CacheEventBus()
        unsubscribe = bus.subscribe(CacheNamespace.DEBTS, on_debts)
        await bus.publish(CacheUpdate(table=CacheNamespace.DEBTS, data=rows))
    """

    def __init__(self):
        self._handlers: dict[CacheNamespace, list[CacheUpdateHandler]] = {}

    def subscribe(
        self,
        table: CacheNamespace,
        handler: CacheUpdateHandler,
    ) -> Callable[[], None]:
        """
        Register a handler for one table.

        Returns:
            A function that removes the handler
        """
        self._handlers.setdefault(table, []).append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(table, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def handler_count(self, table: CacheNamespace) -> int:
        return len(self._handlers.get(table, []))

    async def publish(self, update: CacheUpdate) -> int:
        """
        Deliver an update to every handler of its table, in subscription order.

        Returns:
            Number of handlers that completed without error
        """
        delivered = 0
        for handler in list(self._handlers.get(update.table, [])):
            try:
                await handler(update)
                delivered += 1
            except Exception as e:
                logger.error(
                    "cache_update_handler_failed",
                    table=update.table.value,
                    handler=getattr(handler, "__qualname__", repr(handler)),
                    error=str(e),
                )
        return delivered
