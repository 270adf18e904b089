"""Durable, ordered log of queued client mutations.

Every query is scoped to a single user. Replay order is ``enqueued_at``
ascending with the integer change id as tie-break, so changes captured in
the same instant still replay in the order they were enqueued.

The store also owns the per-user drain claim, so processes sharing one
database file never drain the same user's queue at the same time.
"""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Iterator

from ..clock import from_db, to_db, utcnow
from ..errors import ChangeStoreError, InvalidChangeError

logger = logging.getLogger(__name__)

CHANGE_SCHEMA = """
-- Pending changes: one row per offline mutation, never rewritten except status
CREATE TABLE IF NOT EXISTS pending_changes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    resource_type TEXT NOT NULL,
    action TEXT NOT NULL,
    payload TEXT NOT NULL,
    client_id TEXT NOT NULL,
    enqueued_at TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    error TEXT,
    conflicts TEXT,
    processed_at TEXT,
    review_status TEXT,
    review_resolution TEXT,
    reviewed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_changes_user_status
    ON pending_changes(user_id, status, enqueued_at, id);
CREATE INDEX IF NOT EXISTS idx_changes_processed ON pending_changes(processed_at);
CREATE INDEX IF NOT EXISTS idx_changes_review ON pending_changes(user_id, review_status);

-- Drain claims: at most one row per user while a drain runs
CREATE TABLE IF NOT EXISTS drain_locks (
    user_id TEXT PRIMARY KEY,
    holder TEXT NOT NULL,
    acquired_at TEXT NOT NULL
);
"""

_COLUMNS = (
    "id, user_id, resource_type, action, payload, client_id, "
    "enqueued_at, status, error, conflicts, processed_at, "
    "review_status, review_resolution, reviewed_at"
)


class ChangeAction(Enum):
    """Mutation kinds a client can queue."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class ChangeStatus(Enum):
    """Lifecycle of a queued change."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class ReviewStatus(Enum):
    """Human review state of conflicts kept under the manual strategy."""

    UNRESOLVED = "unresolved"
    RESOLVED = "resolved"


@dataclass(frozen=True)
class PendingChange:
    """A single queued mutation awaiting server-side application."""

    id: int
    user_id: str
    resource_type: str
    action: ChangeAction
    payload: dict[str, Any]
    client_id: str
    enqueued_at: datetime
    status: ChangeStatus = ChangeStatus.PENDING
    error: str | None = None
    conflicts: list[dict[str, Any]] = field(default_factory=list)
    processed_at: datetime | None = None
    review_status: ReviewStatus | None = None
    review_resolution: dict[str, Any] | None = None
    reviewed_at: datetime | None = None

    @property
    def temp_id(self) -> str | None:
        return self.payload.get("temp_id")

    @property
    def target_id(self) -> str | None:
        """Server id the change points at (update/delete)."""
        value = self.payload.get("id")
        return str(value) if value is not None else None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "resource_type": self.resource_type,
            "action": self.action.value,
            "payload": self.payload,
            "client_id": self.client_id,
            "enqueued_at": self.enqueued_at.isoformat(),
            "status": self.status.value,
            "error": self.error,
            "conflicts": self.conflicts,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "review_status": self.review_status.value if self.review_status else None,
            "review_resolution": self.review_resolution,
            "reviewed_at": self.reviewed_at.isoformat() if self.reviewed_at else None,
        }


def parse_action(value: str | ChangeAction) -> ChangeAction:
    if isinstance(value, ChangeAction):
        return value
    try:
        return ChangeAction(value)
    except ValueError:
        raise InvalidChangeError(f"Unknown action: {value}") from None


def _encode(value: Any, what: str) -> str:
    try:
        return json.dumps(value)
    except (TypeError, ValueError) as e:
        raise InvalidChangeError(f"{what} is not JSON-serializable: {e}") from e


class ChangeStore:
    """SQLite-backed change log partitioned by user."""

    def __init__(self, db_path: str | Path):
        """Initialize the change store.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
        """
        self.db_path = db_path if db_path == ":memory:" else Path(db_path).expanduser()
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    def connect(self) -> None:
        """Initialize database connection and schema."""
        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(CHANGE_SCHEMA)
        self._conn.commit()

        logger.info(f"ChangeStore connected to {self.db_path}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Serialize access to the shared connection and commit on success."""
        with self._lock:
            if self._conn is None:
                self.connect()
            try:
                yield self._conn
                self._conn.commit()
            except sqlite3.Error as e:
                self._conn.rollback()
                logger.error(f"Change store failure: {e}")
                raise ChangeStoreError(str(e)) from e

    def _row_to_change(self, row: sqlite3.Row) -> PendingChange:
        return PendingChange(
            id=row["id"],
            user_id=row["user_id"],
            resource_type=row["resource_type"],
            action=ChangeAction(row["action"]),
            payload=json.loads(row["payload"]),
            client_id=row["client_id"],
            enqueued_at=from_db(row["enqueued_at"]),
            status=ChangeStatus(row["status"]),
            error=row["error"],
            conflicts=json.loads(row["conflicts"]) if row["conflicts"] else [],
            processed_at=from_db(row["processed_at"]),
            review_status=(
                ReviewStatus(row["review_status"]) if row["review_status"] else None
            ),
            review_resolution=(
                json.loads(row["review_resolution"]) if row["review_resolution"] else None
            ),
            reviewed_at=from_db(row["reviewed_at"]),
        )

    def enqueue(
        self,
        user_id: str,
        resource_type: str,
        action: str | ChangeAction,
        payload: dict[str, Any],
        client_id: str,
        enqueued_at: datetime | None = None,
    ) -> int:
        """Queue a client mutation.

        Args:
            user_id: Owner of the change.
            resource_type: Registry key of the target resource.
            action: "create", "update" or "delete".
            payload: Proposed field values, or the target id for deletes.
            client_id: Originating device/session.
            enqueued_at: When the client made the change locally.
                Defaults to now.

        Returns:
            The new change id.

        Raises:
            InvalidChangeError: Unknown action or a payload that cannot be stored.
        """
        action = parse_action(action)
        encoded = _encode(payload, "payload")
        enqueued_at = enqueued_at or utcnow()

        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO pending_changes (
                    user_id, resource_type, action, payload, client_id,
                    enqueued_at, status
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    resource_type,
                    action.value,
                    encoded,
                    client_id,
                    to_db(enqueued_at),
                    ChangeStatus.PENDING.value,
                ),
            )
            change_id = cursor.lastrowid

        logger.debug(
            f"Enqueued change {change_id} ({action.value} {resource_type}) for {user_id}"
        )
        return change_id

    def get(self, change_id: int) -> PendingChange | None:
        with self._transaction() as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM pending_changes WHERE id = ?", (change_id,)
            ).fetchone()
        return self._row_to_change(row) if row else None

    def list_pending(self, user_id: str) -> list[PendingChange]:
        """Get a user's pending changes in replay order.

        Returns:
            PendingChange objects, oldest enqueued_at first.
        """
        with self._transaction() as conn:
            rows = conn.execute(
                f"""
                SELECT {_COLUMNS} FROM pending_changes
                WHERE user_id = ? AND status = ?
                ORDER BY enqueued_at ASC, id ASC
                """,
                (user_id, ChangeStatus.PENDING.value),
            ).fetchall()
        return [self._row_to_change(row) for row in rows]

    def list_changes(
        self,
        user_id: str,
        status: ChangeStatus | None = None,
        limit: int = 50,
    ) -> list[PendingChange]:
        """List a user's changes in any state, in replay order."""
        query = f"SELECT {_COLUMNS} FROM pending_changes WHERE user_id = ?"
        params: list[Any] = [user_id]
        if status is not None:
            query += " AND status = ?"
            params.append(status.value)
        query += " ORDER BY enqueued_at ASC, id ASC LIMIT ?"
        params.append(limit)

        with self._transaction() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_change(row) for row in rows]

    def acquire_drain(
        self, user_id: str, holder: str, stale_after: float | None = None
    ) -> bool:
        """Claim a user's queue for one drain.

        Args:
            user_id: Queue owner.
            holder: Unique token for this drain, needed to release.
            stale_after: Seconds after which an existing claim is treated as
                abandoned by a crashed process and taken over.

        Returns:
            True if the claim was taken, False if another drain holds it.
        """
        now = utcnow()
        with self._transaction() as conn:
            if stale_after is not None:
                cursor = conn.execute(
                    "DELETE FROM drain_locks WHERE user_id = ? AND acquired_at < ?",
                    (user_id, to_db(now - timedelta(seconds=stale_after))),
                )
                if cursor.rowcount:
                    logger.warning(f"Took over stale drain claim for {user_id}")
            cursor = conn.execute(
                """
                INSERT INTO drain_locks (user_id, holder, acquired_at)
                VALUES (?, ?, ?)
                ON CONFLICT(user_id) DO NOTHING
                """,
                (user_id, holder, to_db(now)),
            )
        return cursor.rowcount == 1

    def release_drain(self, user_id: str, holder: str) -> bool:
        """Release a claim taken by ``acquire_drain``."""
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM drain_locks WHERE user_id = ? AND holder = ?",
                (user_id, holder),
            )
        return cursor.rowcount == 1

    def mark_completed(
        self,
        change_id: int,
        conflicts: list[dict[str, Any]] | None = None,
        needs_review: bool = False,
    ) -> bool:
        """Move a pending change to completed.

        Args:
            change_id: Change to update.
            conflicts: Resolved conflicts to keep with the change.
            needs_review: Keep the conflicts open for human review.

        Returns:
            True if the change was pending and is now completed.
        """
        review_status = ReviewStatus.UNRESOLVED.value if needs_review and conflicts else None

        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE pending_changes
                SET status = ?, error = NULL, conflicts = ?, processed_at = ?,
                    review_status = ?
                WHERE id = ? AND status = ?
                """,
                (
                    ChangeStatus.COMPLETED.value,
                    json.dumps(conflicts) if conflicts else None,
                    to_db(utcnow()),
                    review_status,
                    change_id,
                    ChangeStatus.PENDING.value,
                ),
            )
        return cursor.rowcount == 1

    def mark_failed(self, change_id: int, error: str) -> bool:
        """Move a pending change to failed, recording the error."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE pending_changes
                SET status = ?, error = ?, processed_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    ChangeStatus.FAILED.value,
                    error,
                    to_db(utcnow()),
                    change_id,
                    ChangeStatus.PENDING.value,
                ),
            )
        return cursor.rowcount == 1

    def reset_failed_to_pending(self, user_id: str) -> int:
        """Put a user's failed changes back in the queue.

        Returns:
            Number of changes reset.
        """
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE pending_changes
                SET status = ?, error = NULL, processed_at = NULL
                WHERE user_id = ? AND status = ?
                """,
                (ChangeStatus.PENDING.value, user_id, ChangeStatus.FAILED.value),
            )

        count = cursor.rowcount
        if count:
            logger.info(f"Reset {count} failed changes to pending for {user_id}")
        return count

    def list_unresolved(self, user_id: str) -> list[PendingChange]:
        """Completed changes whose conflicts still await human review."""
        with self._transaction() as conn:
            rows = conn.execute(
                f"""
                SELECT {_COLUMNS} FROM pending_changes
                WHERE user_id = ? AND status = ? AND review_status = ?
                ORDER BY processed_at DESC, id DESC
                """,
                (
                    user_id,
                    ChangeStatus.COMPLETED.value,
                    ReviewStatus.UNRESOLVED.value,
                ),
            ).fetchall()
        return [self._row_to_change(row) for row in rows]

    def mark_reviewed(
        self,
        user_id: str,
        change_id: int,
        resolution: dict[str, Any] | None = None,
    ) -> bool:
        """Close the review of a change's conflicts.

        Args:
            user_id: Owner scope.
            change_id: Change under review.
            resolution: What the reviewer decided, kept for audit.

        Returns:
            True if the change was awaiting review and is now resolved.
        """
        encoded = _encode(resolution, "resolution") if resolution is not None else None

        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE pending_changes
                SET review_status = ?, review_resolution = ?, reviewed_at = ?
                WHERE id = ? AND user_id = ? AND review_status = ?
                """,
                (
                    ReviewStatus.RESOLVED.value,
                    encoded,
                    to_db(utcnow()),
                    change_id,
                    user_id,
                    ReviewStatus.UNRESOLVED.value,
                ),
            )

        updated = cursor.rowcount == 1
        if updated:
            logger.info(f"Conflicts of change {change_id} resolved for {user_id}")
        return updated

    def purge_completed(self, user_id: str, older_than: datetime | None = None) -> int:
        """Delete completed changes.

        Failed and pending rows are never touched, nor are completed rows
        whose conflicts still await review.

        Args:
            user_id: Owner scope.
            older_than: Only delete changes processed before this time.

        Returns:
            Number of changes deleted.
        """
        query = (
            "DELETE FROM pending_changes WHERE user_id = ? AND status = ? "
            "AND (review_status IS NULL OR review_status != ?)"
        )
        params: list[Any] = [
            user_id,
            ChangeStatus.COMPLETED.value,
            ReviewStatus.UNRESOLVED.value,
        ]
        if older_than is not None:
            query += " AND processed_at < ?"
            params.append(to_db(older_than))

        with self._transaction() as conn:
            cursor = conn.execute(query, params)

        deleted = cursor.rowcount
        if deleted > 0:
            logger.info(f"Purged {deleted} completed changes for {user_id}")
        return deleted

    def count_pending(self, user_id: str) -> int:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM pending_changes WHERE user_id = ? AND status = ?",
                (user_id, ChangeStatus.PENDING.value),
            ).fetchone()
        return row[0]

    def status(self, user_id: str) -> dict[str, int]:
        """Count a user's changes by status.

        Returns:
            Dictionary with pending, completed, failed and total counts,
            plus the number of completed changes awaiting conflict review.
        """
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT status, COUNT(*) FROM pending_changes
                WHERE user_id = ? GROUP BY status
                """,
                (user_id,),
            ).fetchall()
            unresolved = conn.execute(
                """
                SELECT COUNT(*) FROM pending_changes
                WHERE user_id = ? AND review_status = ?
                """,
                (user_id, ReviewStatus.UNRESOLVED.value),
            ).fetchone()[0]

        counts = {s.value: 0 for s in ChangeStatus}
        for row in rows:
            counts[row[0]] = row[1]
        counts["total"] = sum(counts.values())
        counts["unresolved"] = unresolved
        return counts
