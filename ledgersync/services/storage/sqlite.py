"""
SQLite Storage Implementation

DESIGN DECISION: SQLite is the durable local backend because:
1. It ships with Python, no server to run on the user's device
2. One file per device, easy to wipe on logout or reset
3. Single-row upserts and deletes are indexed by (owner, table, id)

TRADEOFFS:
- Calls are synchronous inside async methods; every call is short and local
- No cross-process locking beyond SQLite's own; last write wins

Records and entries are stored as JSON text; Decimal and datetime values
are written as strings. A row that fails to decode raises
CorruptedDataError so the layers above can degrade to empty.
"""

import json
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Iterator, Optional, Union
from uuid import UUID

import structlog
from pydantic import ValidationError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ledgersync.models.audit import AuditEvent
from ledgersync.models.cache import CacheEntry, Record, record_id_of
from ledgersync.models.changes import PendingChange
from ledgersync.services.storage.interface import (
    AuditStorageInterface,
    CorruptedDataError,
    StorageBackend,
    StorageError,
    StorageUnavailableError,
)


logger = structlog.get_logger(__name__)


SCHEMA = """
-- Full records, one row per (owner, table, id)
CREATE TABLE IF NOT EXISTS cached_records (
    owner TEXT NOT NULL,
    table_name TEXT NOT NULL,
    record_id TEXT NOT NULL,
    position INTEGER NOT NULL,
    data TEXT NOT NULL,
    PRIMARY KEY (owner, table_name, record_id)
);
CREATE INDEX IF NOT EXISTS idx_cached_records_order
    ON cached_records (owner, table_name, position);

-- List-level entries {data, last_updated, ttl}
CREATE TABLE IF NOT EXISTS cache_entries (
    area TEXT NOT NULL,
    key TEXT NOT NULL,
    owner TEXT NOT NULL,
    data TEXT NOT NULL,
    last_updated REAL NOT NULL,
    ttl REAL NOT NULL,
    PRIMARY KEY (area, key)
);
CREATE INDEX IF NOT EXISTS idx_cache_entries_owner ON cache_entries (owner);

-- Pending changes, append order kept by seq
CREATE TABLE IF NOT EXISTS pending_changes (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    change_id TEXT UNIQUE NOT NULL,
    payload TEXT NOT NULL
);

-- Append-only audit log
CREATE TABLE IF NOT EXISTS audit_log (
    event_id TEXT PRIMARY KEY,
    timestamp TEXT NOT NULL,
    event_type TEXT NOT NULL,
    severity TEXT NOT NULL,
    correlation_id TEXT,
    payload TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_audit_log_correlation ON audit_log (correlation_id);
"""


def init_database(db_path: Path) -> None:
    """
    Create the cache schema if it does not exist.

    Raises:
        StorageUnavailableError: If the directory or database cannot be created
    """
    try:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        with sqlite3.connect(db_path) as conn:
            conn.executescript(SCHEMA)
    except (sqlite3.Error, OSError) as e:
        raise StorageUnavailableError(f"Failed to initialize cache database at {db_path}: {e}")


class SQLiteConnection:
    """
    Low-level SQLite connection helper.

    Opens a short-lived connection per operation, with retry on
    transient lock errors.
    """

    def __init__(self, db_path: Union[str, Path], timeout: float = 5.0):
        self.db_path = Path(db_path)
        self._timeout = timeout
        init_database(self.db_path)

    @retry(
        retry=retry_if_exception_type(sqlite3.OperationalError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.1, min=0.1, max=1),
        reraise=True,
    )
    def connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path, timeout=self._timeout)

    @contextmanager
    def session(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection, committing on success and always closing."""
        try:
            conn = self.connect()
        except sqlite3.Error as e:
            raise StorageUnavailableError(f"Could not open {self.db_path}: {e}")
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageError(f"SQLite operation failed: {e}")
        finally:
            conn.close()


def _json_default(value):
    # Decimal, UUID and the like become strings; dates use ISO 8601
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


def _encode(value, what: str) -> str:
    try:
        return json.dumps(value, default=_json_default)
    except (TypeError, ValueError) as e:
        raise StorageError(f"Cannot serialize {what}: {e}")


def _decode(raw: str, what: str):
    try:
        return json.loads(raw)
    except (TypeError, ValueError) as e:
        raise CorruptedDataError(f"Corrupted {what}: {e}")


class SQLiteStorageBackend(StorageBackend):
    """SQLite implementation of the local cache storage."""

    def __init__(
        self,
        db_path: Union[str, Path],
        connection: Optional[SQLiteConnection] = None,
    ):
        self._db = connection or SQLiteConnection(db_path)

    @property
    def db_path(self) -> Path:
        return self._db.db_path

    @staticmethod
    def _require_id(record: Record) -> str:
        record_id = record_id_of(record)
        if record_id is None:
            raise StorageError("Cannot store a record without an id")
        return record_id

    async def read_collection(self, owner: str, table: str) -> list[Record]:
        with self._db.session() as conn:
            rows = conn.execute(
                """
                SELECT data FROM cached_records
                WHERE owner = ? AND table_name = ?
                ORDER BY position
                """,
                (owner, table),
            ).fetchall()
        return [_decode(row[0], f"record in {table}") for row in rows]

    async def read_record(
        self,
        owner: str,
        table: str,
        record_id: str,
    ) -> Optional[Record]:
        with self._db.session() as conn:
            row = conn.execute(
                """
                SELECT data FROM cached_records
                WHERE owner = ? AND table_name = ? AND record_id = ?
                """,
                (owner, table, str(record_id)),
            ).fetchone()
        return _decode(row[0], f"record {record_id} in {table}") if row else None

    async def replace_collection(
        self,
        owner: str,
        table: str,
        records: list[Record],
    ) -> None:
        # Validate ids before touching the stored collection
        rows = []
        for position, record in enumerate(records):
            rows.append(
                (
                    owner,
                    table,
                    self._require_id(record),
                    position,
                    _encode(record, f"record in {table}"),
                )
            )

        with self._db.session() as conn:
            conn.execute(
                "DELETE FROM cached_records WHERE owner = ? AND table_name = ?",
                (owner, table),
            )
            conn.executemany(
                """
                INSERT OR REPLACE INTO cached_records
                    (owner, table_name, record_id, position, data)
                VALUES (?, ?, ?, ?, ?)
                """,
                rows,
            )

    async def put_record(self, owner: str, table: str, record: Record) -> None:
        record_id = self._require_id(record)
        with self._db.session() as conn:
            conn.execute(
                """
                INSERT INTO cached_records (owner, table_name, record_id, position, data)
                VALUES (
                    ?, ?, ?,
                    (SELECT COALESCE(MAX(position), -1) + 1 FROM cached_records
                     WHERE owner = ? AND table_name = ?),
                    ?
                )
                ON CONFLICT (owner, table_name, record_id)
                DO UPDATE SET data = excluded.data
                """,
                (owner, table, record_id, owner, table, _encode(record, f"record {record_id} in {table}")),
            )

    async def delete_record(self, owner: str, table: str, record_id: str) -> bool:
        with self._db.session() as conn:
            cursor = conn.execute(
                """
                DELETE FROM cached_records
                WHERE owner = ? AND table_name = ? AND record_id = ?
                """,
                (owner, table, str(record_id)),
            )
            return cursor.rowcount > 0

    async def purge_collections(self, owner: Optional[str] = None) -> int:
        with self._db.session() as conn:
            if owner is None:
                cursor = conn.execute("DELETE FROM cached_records")
            else:
                cursor = conn.execute(
                    "DELETE FROM cached_records WHERE owner = ?", (owner,)
                )
            return cursor.rowcount

    async def read_entry(self, area: str, key: str) -> Optional[CacheEntry]:
        with self._db.session() as conn:
            row = conn.execute(
                """
                SELECT data, last_updated, ttl FROM cache_entries
                WHERE area = ? AND key = ?
                """,
                (area, key),
            ).fetchone()
        if row is None:
            return None
        try:
            return CacheEntry(
                data=_decode(row[0], f"entry {area}/{key}"),
                last_updated=row[1],
                ttl=row[2],
            )
        except ValidationError as e:
            raise CorruptedDataError(f"Corrupted entry {area}/{key}: {e}")

    async def write_entry(
        self,
        area: str,
        key: str,
        entry: CacheEntry,
        owner: str,
    ) -> None:
        with self._db.session() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO cache_entries
                    (area, key, owner, data, last_updated, ttl)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (area, key, owner, _encode(entry.data, f"entry {area}/{key}"), entry.last_updated, entry.ttl),
            )

    async def delete_entry(self, area: str, key: str) -> bool:
        with self._db.session() as conn:
            cursor = conn.execute(
                "DELETE FROM cache_entries WHERE area = ? AND key = ?",
                (area, key),
            )
            return cursor.rowcount > 0

    async def purge_entries(
        self,
        owner: Optional[str] = None,
        area: Optional[str] = None,
    ) -> int:
        clauses = []
        params = []
        if owner is not None:
            clauses.append("owner = ?")
            params.append(owner)
        if area is not None:
            clauses.append("area = ?")
            params.append(area)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._db.session() as conn:
            cursor = conn.execute(f"DELETE FROM cache_entries{where}", params)
            return cursor.rowcount

    async def append_change(self, change: PendingChange) -> None:
        with self._db.session() as conn:
            conn.execute(
                "INSERT INTO pending_changes (change_id, payload) VALUES (?, ?)",
                (str(change.id), change.model_dump_json()),
            )

    async def read_changes(self) -> list[PendingChange]:
        with self._db.session() as conn:
            rows = conn.execute(
                "SELECT payload FROM pending_changes ORDER BY seq"
            ).fetchall()

        changes = []
        for (payload,) in rows:
            try:
                changes.append(PendingChange.model_validate_json(payload))
            except ValidationError as e:
                raise CorruptedDataError(f"Corrupted pending change: {e}")
        return changes

    async def remove_changes(self, change_ids: Iterable[UUID]) -> int:
        ids = [(str(change_id),) for change_id in change_ids]
        if not ids:
            return 0
        with self._db.session() as conn:
            before = conn.total_changes
            conn.executemany("DELETE FROM pending_changes WHERE change_id = ?", ids)
            return conn.total_changes - before


class SQLiteAuditStorage(AuditStorageInterface):
    """
    SQLite implementation of audit log storage.

    Audit events are append-only.
    """

    def __init__(
        self,
        db_path: Union[str, Path],
        connection: Optional[SQLiteConnection] = None,
    ):
        self._db = connection or SQLiteConnection(db_path)

    async def append_event(self, event: AuditEvent) -> bool:
        try:
            with self._db.session() as conn:
                conn.execute(
                    """
                    INSERT OR IGNORE INTO audit_log
                        (event_id, timestamp, event_type, severity, correlation_id, payload)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    event.to_storage_row(),
                )
            return True
        except StorageError as e:
            # Audit logging must not break the main flow
            logger.warning("audit_write_failed", error=str(e), event_id=str(event.event_id))
            return False

    def _rows_to_events(self, rows: list) -> list[AuditEvent]:
        events = []
        for (payload,) in rows:
            try:
                events.append(AuditEvent.model_validate_json(payload))
            except ValidationError:
                continue  # Skip malformed rows
        return events

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        with self._db.session() as conn:
            rows = conn.execute(
                """
                SELECT payload FROM audit_log
                WHERE correlation_id = ?
                ORDER BY timestamp
                """,
                (str(correlation_id),),
            ).fetchall()
        return self._rows_to_events(rows)

    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        with self._db.session() as conn:
            rows = conn.execute(
                "SELECT payload FROM audit_log ORDER BY timestamp DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return self._rows_to_events(rows)
