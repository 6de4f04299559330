"""
Id-indexed record collection.

Keeps one table's records keyed by id, in insertion order, so realtime
INSERT/UPDATE/DELETE deltas apply in O(1) instead of scanning a list.
"""

from typing import Iterable, Iterator, Optional

from ledgersync.models.cache import Record, record_id_of


class RecordIndex:
    """Ordered id -> record map for one table."""

    def __init__(self, records: Iterable[Record] = ()):
        self._records: dict[str, Record] = {}
        self.skipped = 0
        for record in records:
            record_id = record_id_of(record)
            if record_id is None:
                self.skipped += 1
                continue
            self._records[record_id] = record

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, record_id: object) -> bool:
        return str(record_id) in self._records

    def __iter__(self) -> Iterator[Record]:
        return iter(self._records.values())

    def get(self, record_id: str) -> Optional[Record]:
        return self._records.get(str(record_id))

    def upsert(self, record: Record) -> bool:
        """
        Insert or replace a record in place.

        Returns:
            True if the record was new
        """
        record_id = record_id_of(record)
        if record_id is None:
            raise ValueError("Record has no id")
        is_new = record_id not in self._records
        self._records[record_id] = record
        return is_new

    def insert_first(self, record: Record) -> None:
        """Put a record at the front, replacing any row with the same id."""
        record_id = record_id_of(record)
        if record_id is None:
            raise ValueError("Record has no id")
        rest = {k: v for k, v in self._records.items() if k != record_id}
        self._records = {record_id: record, **rest}

    def remove(self, record_id: str) -> Optional[Record]:
        return self._records.pop(str(record_id), None)

    def to_list(self) -> list[Record]:
        return list(self._records.values())
