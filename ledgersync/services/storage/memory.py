"""
In-Memory Storage Implementation

Used for tests and for sessions that must not touch the disk.
Collections are id-indexed dicts, so single-record operations are O(1)
and insertion order is preserved.

Values are deep-copied on the way in and out so callers can never
mutate stored state by accident.
"""

import copy
from typing import Iterable, Optional
from uuid import UUID

from ledgersync.models.audit import AuditEvent
from ledgersync.models.cache import CacheEntry, Record, record_id_of
from ledgersync.models.changes import PendingChange
from ledgersync.services.storage.interface import (
    AuditStorageInterface,
    StorageBackend,
    StorageError,
)


class InMemoryStorageBackend(StorageBackend):
    """Dictionary-backed implementation of the storage interface."""

    def __init__(self):
        self._collections: dict[tuple[str, str], dict[str, Record]] = {}
        # (area, key) -> (owner, entry)
        self._entries: dict[tuple[str, str], tuple[str, CacheEntry]] = {}
        self._changes: list[PendingChange] = []

    @staticmethod
    def _require_id(record: Record) -> str:
        record_id = record_id_of(record)
        if record_id is None:
            raise StorageError("Cannot store a record without an id")
        return record_id

    async def read_collection(self, owner: str, table: str) -> list[Record]:
        collection = self._collections.get((owner, table), {})
        return [copy.deepcopy(r) for r in collection.values()]

    async def read_record(
        self,
        owner: str,
        table: str,
        record_id: str,
    ) -> Optional[Record]:
        record = self._collections.get((owner, table), {}).get(str(record_id))
        return copy.deepcopy(record) if record is not None else None

    async def replace_collection(
        self,
        owner: str,
        table: str,
        records: list[Record],
    ) -> None:
        collection: dict[str, Record] = {}
        for record in records:
            collection[self._require_id(record)] = copy.deepcopy(record)
        self._collections[(owner, table)] = collection

    async def put_record(self, owner: str, table: str, record: Record) -> None:
        record_id = self._require_id(record)
        self._collections.setdefault((owner, table), {})[record_id] = copy.deepcopy(record)

    async def delete_record(self, owner: str, table: str, record_id: str) -> bool:
        collection = self._collections.get((owner, table))
        if not collection:
            return False
        return collection.pop(str(record_id), None) is not None

    async def purge_collections(self, owner: Optional[str] = None) -> int:
        removed = 0
        for address in list(self._collections):
            if owner is None or address[0] == owner:
                removed += len(self._collections.pop(address))
        return removed

    async def read_entry(self, area: str, key: str) -> Optional[CacheEntry]:
        stored = self._entries.get((area, key))
        if stored is None:
            return None
        return stored[1].model_copy(deep=True)

    async def write_entry(
        self,
        area: str,
        key: str,
        entry: CacheEntry,
        owner: str,
    ) -> None:
        self._entries[(area, key)] = (owner, entry.model_copy(deep=True))

    async def delete_entry(self, area: str, key: str) -> bool:
        return self._entries.pop((area, key), None) is not None

    async def purge_entries(
        self,
        owner: Optional[str] = None,
        area: Optional[str] = None,
    ) -> int:
        doomed = [
            address
            for address, (entry_owner, _) in self._entries.items()
            if (owner is None or entry_owner == owner)
            and (area is None or address[0] == area)
        ]
        for address in doomed:
            del self._entries[address]
        return len(doomed)

    async def append_change(self, change: PendingChange) -> None:
        self._changes.append(change)

    async def read_changes(self) -> list[PendingChange]:
        return list(self._changes)

    async def remove_changes(self, change_ids: Iterable[UUID]) -> int:
        wanted = set(change_ids)
        before = len(self._changes)
        self._changes = [c for c in self._changes if c.id not in wanted]
        return before - len(self._changes)


class InMemoryAuditStorage(AuditStorageInterface):
    """
    In-memory audit log.

    Audit events are append-only.
    """

    def __init__(self):
        self._events: list[AuditEvent] = []

    async def append_event(self, event: AuditEvent) -> bool:
        self._events.append(event)
        return True

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        events = [e for e in self._events if e.correlation_id == correlation_id]
        events.sort(key=lambda e: e.timestamp)
        return events

    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        events = sorted(self._events, key=lambda e: e.timestamp, reverse=True)
        return events[:limit]
