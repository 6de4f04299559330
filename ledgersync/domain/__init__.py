"""UI-facing domain wrappers over the cache layer."""

from ledgersync.domain.collection import LocalCollection, remote_fetch
from ledgersync.domain.transactions import TransactionLedger, TransactionType

__all__ = [
    "LocalCollection",
    "TransactionLedger",
    "TransactionType",
    "remote_fetch",
]
