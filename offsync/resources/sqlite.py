"""SQLite record repository backing the bundled resource adapters.

All resource types share one ``records`` table; the resource-specific
columns live in a JSON ``fields`` blob the engine never inspects.
"""

import json
import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from ..clock import from_db, to_db, utcnow
from ..errors import AdapterError, RecordNotFoundError, StaleRecordError
from .base import ResourceAdapter, ResourceRegistry, ServerRecord

logger = logging.getLogger(__name__)

RECORDS_SCHEMA = """
CREATE TABLE IF NOT EXISTS records (
    id TEXT PRIMARY KEY,
    resource_type TEXT NOT NULL,
    user_id TEXT NOT NULL,
    fields TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    sync_version INTEGER NOT NULL DEFAULT 1
);

CREATE INDEX IF NOT EXISTS idx_records_type_user ON records(resource_type, user_id);
"""

# Never stored inside the fields blob
RESERVED_FIELDS = frozenset(
    {"id", "user_id", "created_at", "updated_at", "sync_version", "temp_id"}
)


def strip_reserved(payload: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in payload.items() if k not in RESERVED_FIELDS}


class SQLiteRecordStore:
    """Shared connection for every SQLite-backed resource type."""

    def __init__(self, db_path: str | Path):
        self.db_path = db_path if db_path == ":memory:" else Path(db_path).expanduser()
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    def connect(self) -> None:
        """Initialize database connection and schema."""
        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(RECORDS_SCHEMA)
        self._conn.commit()

        logger.info(f"SQLiteRecordStore connected to {self.db_path}")

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            if self._conn is None:
                self.connect()
            try:
                yield self._conn
                self._conn.commit()
            except sqlite3.Error as e:
                self._conn.rollback()
                raise AdapterError(str(e)) from e

    @staticmethod
    def row_to_record(row: sqlite3.Row) -> ServerRecord:
        return ServerRecord(
            id=row["id"],
            user_id=row["user_id"],
            updated_at=from_db(row["updated_at"]),
            sync_version=row["sync_version"],
            created_at=from_db(row["created_at"]),
            fields=json.loads(row["fields"]),
        )


class SQLiteResourceAdapter(ResourceAdapter):
    """Adapter for one resource type stored in a SQLiteRecordStore."""

    def __init__(self, store: SQLiteRecordStore, resource_type: str):
        self.store = store
        self._resource_type = resource_type

    @property
    def resource_type(self) -> str:
        return self._resource_type

    def _select(self, conn: sqlite3.Connection, record_id: str) -> sqlite3.Row | None:
        return conn.execute(
            """
            SELECT id, user_id, fields, created_at, updated_at, sync_version
            FROM records WHERE id = ? AND resource_type = ?
            """,
            (record_id, self._resource_type),
        ).fetchone()

    def create(self, user_id: str, payload: dict[str, Any]) -> ServerRecord:
        now = utcnow()
        record = ServerRecord(
            id=str(uuid.uuid4()),
            user_id=user_id,
            updated_at=now,
            sync_version=1,
            created_at=now,
            fields=strip_reserved(payload),
        )

        with self.store.transaction() as conn:
            conn.execute(
                """
                INSERT INTO records (
                    id, resource_type, user_id, fields, created_at, updated_at, sync_version
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    self._resource_type,
                    user_id,
                    json.dumps(record.fields),
                    to_db(now),
                    to_db(now),
                    record.sync_version,
                ),
            )

        logger.debug(f"Created {self._resource_type} {record.id}")
        return record

    def fetch(self, record_id: str) -> ServerRecord | None:
        with self.store.transaction() as conn:
            row = self._select(conn, record_id)
        return self.store.row_to_record(row) if row else None

    def apply_update(
        self, record_id: str, fields: dict[str, Any], new_sync_version: int
    ) -> ServerRecord:
        expected = new_sync_version - 1

        with self.store.transaction() as conn:
            row = self._select(conn, record_id)
            if row is None:
                raise RecordNotFoundError(self._resource_type, record_id)
            if row["sync_version"] != expected:
                raise StaleRecordError(record_id, expected, row["sync_version"])

            record = self.store.row_to_record(row)
            record.fields.update(strip_reserved(fields))
            record.updated_at = utcnow()
            record.sync_version = new_sync_version

            conn.execute(
                """
                UPDATE records
                SET fields = ?, updated_at = ?, sync_version = ?
                WHERE id = ? AND sync_version = ?
                """,
                (
                    json.dumps(record.fields),
                    to_db(record.updated_at),
                    new_sync_version,
                    record_id,
                    expected,
                ),
            )

        logger.debug(
            f"Updated {self._resource_type} {record_id} to sync_version {new_sync_version}"
        )
        return record

    def update_direct(self, record_id: str, fields: dict[str, Any]) -> ServerRecord:
        """Ordinary CRUD edit outside the sync path.

        Follows the same version discipline so a racing sync drain sees it.
        """
        current = self.fetch(record_id)
        if current is None:
            raise RecordNotFoundError(self._resource_type, record_id)
        return self.apply_update(record_id, fields, current.sync_version + 1)

    def delete(self, record_id: str) -> None:
        with self.store.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM records WHERE id = ? AND resource_type = ?",
                (record_id, self._resource_type),
            )
        if cursor.rowcount == 0:
            raise RecordNotFoundError(self._resource_type, record_id)
        logger.debug(f"Deleted {self._resource_type} {record_id}")


def build_registry(store: SQLiteRecordStore, resource_types: list[str]) -> ResourceRegistry:
    """Register one SQLite adapter per resource type."""
    registry = ResourceRegistry()
    for resource_type in resource_types:
        registry.register(SQLiteResourceAdapter(store, resource_type))
    logger.info(f"Registered resources: {', '.join(registry.resource_types)}")
    return registry
