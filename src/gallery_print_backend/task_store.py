"""
SQLite database for persistent print task storage.

This module provides the SQLite-based persistence layer for queued print
tasks, ensuring the queue survives server restarts. All status transitions
run inside ``BEGIN IMMEDIATE`` transactions and are written as
compare-and-set updates, so two workers can never claim the same task.
"""

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from .models import TaskStatus


# Default database path
DEFAULT_DB_PATH = Path("data/tasks.db")

_LIVE = (TaskStatus.PENDING.value, TaskStatus.PROCESSING.value)


def _ensure_db_dir(db_path: Path) -> None:
    """Ensure the database directory exists."""
    db_path.parent.mkdir(parents=True, exist_ok=True)


def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    """Serialize datetime to a fixed-width ISO string so text order equals time order."""
    return dt.isoformat(timespec="microseconds") if dt else None


def _deserialize_datetime(s: Optional[str]) -> Optional[datetime]:
    """Deserialize ISO format string to datetime."""
    if not s:
        return None
    return datetime.fromisoformat(s)


class TaskDatabase:
    """
    SQLite database for print task persistence.

    Thread-safe: every call opens its own connection; SQLite serializes
    writers and WAL mode lets readers proceed concurrently.
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH):
        self.db_path = Path(db_path)
        _ensure_db_dir(self.db_path)
        self._init_db()

    @contextmanager
    def _get_connection(self, immediate: bool = False):
        """
        Get a database connection with proper settings.

        Args:
            immediate: Take the write lock up front (BEGIN IMMEDIATE) so a
                read-then-write sequence cannot interleave with another writer
        """
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        try:
            if immediate:
                conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS tasks (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT UNIQUE NOT NULL,
                    type TEXT NOT NULL,
                    storage_key TEXT NOT NULL,
                    photo_id TEXT,
                    location_name TEXT NOT NULL DEFAULT '',
                    priority INTEGER NOT NULL DEFAULT 0,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    max_attempts INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    available_at TEXT NOT NULL,
                    started_at TEXT,
                    finished_at TEXT,
                    claim_token TEXT,
                    last_error TEXT
                )
            """)

            # At most one pending/processing task per source key
            conn.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS idx_tasks_live_storage_key
                ON tasks(storage_key)
                WHERE status IN ('pending', 'processing')
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_tasks_dispatch
                ON tasks(status, priority DESC, created_at, seq)
            """)

    def insert_task(
        self,
        task_type: str,
        storage_key: str,
        photo_id: Optional[str],
        location_name: str,
        priority: int,
        max_attempts: int,
        now: datetime,
    ) -> tuple[Dict[str, Any], bool]:
        """
        Insert a pending task unless a live one already exists for the key.

        When a live task exists it is returned instead; a pending duplicate
        request with a higher priority raises the existing task's priority.

        Returns:
            Tuple of (task data, whether a new task was created)
        """
        try:
            with self._get_connection(immediate=True) as conn:
                existing = self._select_live(conn, storage_key)
                if existing is not None:
                    if existing["status"] == TaskStatus.PENDING.value and priority > existing["priority"]:
                        conn.execute(
                            "UPDATE tasks SET priority = ?, updated_at = ? WHERE id = ?",
                            (priority, _serialize_datetime(now), existing["id"]),
                        )
                        existing = self._select(conn, existing["id"])
                    return self._row_to_dict(existing), False

                task_id = uuid4().hex
                stamp = _serialize_datetime(now)
                conn.execute("""
                    INSERT INTO tasks (
                        id, type, storage_key, photo_id, location_name,
                        priority, attempts, max_attempts, status,
                        created_at, updated_at, available_at
                    ) VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?, ?)
                """, (
                    task_id,
                    task_type,
                    storage_key,
                    photo_id,
                    location_name,
                    priority,
                    max_attempts,
                    TaskStatus.PENDING.value,
                    stamp,
                    stamp,
                    stamp,
                ))
                return self._row_to_dict(self._select(conn, task_id)), True
        except sqlite3.IntegrityError:
            # Lost a race against another process holding the same database.
            existing = self.find_live_task(storage_key)
            if existing is None:
                raise
            return existing, False

    def claim_next(self, now: datetime) -> Optional[Dict[str, Any]]:
        """
        Atomically move the best available pending task to processing.

        Order: priority descending, then creation time, then insertion order.

        Returns:
            The claimed task (including its claim token), or None if idle
        """
        stamp = _serialize_datetime(now)
        with self._get_connection(immediate=True) as conn:
            row = conn.execute("""
                SELECT id FROM tasks
                WHERE status = ? AND available_at <= ?
                ORDER BY priority DESC, created_at ASC, seq ASC
                LIMIT 1
            """, (TaskStatus.PENDING.value, stamp)).fetchone()
            if not row:
                return None

            token = uuid4().hex
            cursor = conn.execute("""
                UPDATE tasks
                SET status = ?, claim_token = ?, started_at = ?, updated_at = ?
                WHERE id = ? AND status = ?
            """, (TaskStatus.PROCESSING.value, token, stamp, stamp, row["id"], TaskStatus.PENDING.value))
            if cursor.rowcount != 1:
                return None
            return self._row_to_dict(self._select(conn, row["id"]))

    def mark_completed(self, task_id: str, claim_token: str, now: datetime) -> bool:
        """
        Finish a claimed task successfully.

        Returns:
            False when the claim is no longer valid (task was reclaimed)
        """
        stamp = _serialize_datetime(now)
        with self._get_connection(immediate=True) as conn:
            cursor = conn.execute("""
                UPDATE tasks
                SET status = ?, finished_at = ?, updated_at = ?, claim_token = NULL, last_error = NULL
                WHERE id = ? AND status = ? AND claim_token = ?
            """, (TaskStatus.COMPLETED.value, stamp, stamp, task_id, TaskStatus.PROCESSING.value, claim_token))
            return cursor.rowcount == 1

    def record_failure(
        self,
        task_id: str,
        claim_token: Optional[str],
        error: str,
        now: datetime,
        retryable: bool,
        backoff: Callable[[int], float],
    ) -> Optional[Dict[str, Any]]:
        """
        Count a failed attempt and decide between retry and terminal failure.

        Args:
            task_id: Task that failed
            claim_token: Token from the claim; None skips the token check
                (used by the stale sweep, which already holds the row)
            error: Message stored as ``last_error``
            now: Current time
            retryable: Whether another attempt can succeed at all
            backoff: Maps the new attempt count to a delay in seconds

        Returns:
            Updated task data, or None when the claim is no longer valid
        """
        with self._get_connection(immediate=True) as conn:
            row = self._select(conn, task_id)
            if row is None or row["status"] != TaskStatus.PROCESSING.value:
                return None
            if claim_token is not None and row["claim_token"] != claim_token:
                return None
            return self._row_to_dict(self._apply_failure(conn, row, error, now, retryable, backoff))

    def _apply_failure(
        self,
        conn: sqlite3.Connection,
        row: sqlite3.Row,
        error: str,
        now: datetime,
        retryable: bool,
        backoff: Callable[[int], float],
    ) -> sqlite3.Row:
        attempts = row["attempts"] + 1
        stamp = _serialize_datetime(now)
        if retryable and attempts < row["max_attempts"]:
            available_at = _serialize_datetime(now + timedelta(seconds=backoff(attempts)))
            conn.execute("""
                UPDATE tasks
                SET status = ?, attempts = ?, last_error = ?, available_at = ?,
                    updated_at = ?, claim_token = NULL, started_at = NULL
                WHERE id = ?
            """, (TaskStatus.PENDING.value, attempts, error, available_at, stamp, row["id"]))
        else:
            conn.execute("""
                UPDATE tasks
                SET status = ?, attempts = ?, last_error = ?, finished_at = ?,
                    updated_at = ?, claim_token = NULL
                WHERE id = ?
            """, (TaskStatus.FAILED.value, attempts, error, stamp, stamp, row["id"]))
        return self._select(conn, row["id"])

    def reset_stale(
        self,
        started_before: datetime,
        now: datetime,
        backoff: Callable[[int], float],
    ) -> List[Dict[str, Any]]:
        """
        Fail the current attempt of tasks stuck in processing.

        Tasks whose attempt started before ``started_before`` are assumed to
        belong to a worker that died; they go back to pending (or to failed
        once their attempts are used up).
        """
        with self._get_connection(immediate=True) as conn:
            rows = conn.execute(
                "SELECT * FROM tasks WHERE status = ? AND started_at < ?",
                (TaskStatus.PROCESSING.value, _serialize_datetime(started_before)),
            ).fetchall()
            return [
                self._row_to_dict(
                    self._apply_failure(conn, row, "Worker did not finish the task in time", now, True, backoff)
                )
                for row in rows
            ]

    def requeue_failed(self, task_id: str, now: datetime) -> Optional[Dict[str, Any]]:
        """
        Move a failed task back to pending with a fresh attempt budget.

        Returns:
            Updated task data, or None if the task is not in failed state

        Raises:
            sqlite3.IntegrityError: Another live task exists for the same key
        """
        stamp = _serialize_datetime(now)
        with self._get_connection(immediate=True) as conn:
            cursor = conn.execute("""
                UPDATE tasks
                SET status = ?, attempts = 0, available_at = ?, updated_at = ?,
                    started_at = NULL, finished_at = NULL, claim_token = NULL
                WHERE id = ? AND status = ?
            """, (TaskStatus.PENDING.value, stamp, stamp, task_id, TaskStatus.FAILED.value))
            if cursor.rowcount != 1:
                return None
            return self._row_to_dict(self._select(conn, task_id))

    def purge_finished(self, finished_before: datetime) -> int:
        """
        Delete terminal tasks that finished before the given time.

        Returns:
            Number of deleted tasks
        """
        with self._get_connection() as conn:
            cursor = conn.execute(
                "DELETE FROM tasks WHERE status IN (?, ?) AND finished_at < ?",
                (TaskStatus.COMPLETED.value, TaskStatus.FAILED.value, _serialize_datetime(finished_before)),
            )
            return cursor.rowcount

    def get_task(self, task_id: str) -> Optional[Dict[str, Any]]:
        """
        Retrieve a task by ID.

        Returns:
            Task data dictionary or None if not found
        """
        with self._get_connection() as conn:
            row = self._select(conn, task_id)
            return self._row_to_dict(row) if row else None

    def find_live_task(self, storage_key: str) -> Optional[Dict[str, Any]]:
        """Return the pending or processing task for a key, if any."""
        with self._get_connection() as conn:
            row = self._select_live(conn, storage_key)
            return self._row_to_dict(row) if row else None

    def find_latest_task(self, storage_key: str) -> Optional[Dict[str, Any]]:
        """Return the most recently created task for a key, whatever its state."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM tasks WHERE storage_key = ? ORDER BY created_at DESC, seq DESC LIMIT 1",
                (storage_key,),
            ).fetchone()
            return self._row_to_dict(row) if row else None

    def list_tasks(self, status: Optional[TaskStatus] = None) -> List[Dict[str, Any]]:
        """
        List tasks ordered by creation time (newest first).

        Args:
            status: Only return tasks in this state
        """
        with self._get_connection() as conn:
            if status is None:
                rows = conn.execute("SELECT * FROM tasks ORDER BY created_at DESC, seq DESC").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM tasks WHERE status = ? ORDER BY created_at DESC, seq DESC",
                    (TaskStatus(status).value,),
                ).fetchall()
            return [self._row_to_dict(row) for row in rows]

    @staticmethod
    def _select(conn: sqlite3.Connection, task_id: str) -> Optional[sqlite3.Row]:
        return conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()

    @staticmethod
    def _select_live(conn: sqlite3.Connection, storage_key: str) -> Optional[sqlite3.Row]:
        return conn.execute(
            "SELECT * FROM tasks WHERE storage_key = ? AND status IN (?, ?)",
            (storage_key, *_LIVE),
        ).fetchone()

    def _row_to_dict(self, row: sqlite3.Row) -> Dict[str, Any]:
        """Convert a database row to a task data dictionary."""
        return {
            "id": row["id"],
            "type": row["type"],
            "storage_key": row["storage_key"],
            "photo_id": row["photo_id"],
            "location_name": row["location_name"],
            "priority": row["priority"],
            "attempts": row["attempts"],
            "max_attempts": row["max_attempts"],
            "status": row["status"],
            "created_at": _deserialize_datetime(row["created_at"]),
            "updated_at": _deserialize_datetime(row["updated_at"]),
            "available_at": _deserialize_datetime(row["available_at"]),
            "started_at": _deserialize_datetime(row["started_at"]),
            "finished_at": _deserialize_datetime(row["finished_at"]),
            "claim_token": row["claim_token"],
            "last_error": row["last_error"],
        }
