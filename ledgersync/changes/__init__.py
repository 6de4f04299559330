"""Change Queue and remote replay."""

from ledgersync.changes.drain import (
    VIRTUAL_FIELDS,
    ChangeDrainer,
    DrainResult,
    clean_data_for_table,
)
from ledgersync.changes.queue import ChangeQueue

__all__ = [
    "VIRTUAL_FIELDS",
    "ChangeDrainer",
    "ChangeQueue",
    "DrainResult",
    "clean_data_for_table",
]
