"""Durable Client Store backed by a local SQLite file.

Beginner terms:
- Upsert: insert a row, or fully replace the row that already has the same id.
- Cascade delete: removing a task also removes every result that points at it.
- Body: the record's JSON dump (wire names), so unknown fields survive a round trip.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import closing, contextmanager
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError

from ..app.errors import StorageError, TransactionError
from ..app.models import Result, Task

logger = logging.getLogger(__name__)


class SqliteDurableStore:
    """Thread-safe SQLite storage for Task and Result records."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path).expanduser()
        # Lock serializes access from this store instance; each call opens its own connection.
        self._lock = threading.Lock()
        self.migrate()

    def migrate(self) -> None:
        """Create tables and indexes if they do not already exist."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._transaction("migrate") as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS tasks (
                    id TEXT PRIMARY KEY,
                    body TEXT NOT NULL
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS results (
                    id TEXT PRIMARY KEY,
                    task TEXT NOT NULL,
                    date TEXT NOT NULL,
                    body TEXT NOT NULL
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_results_task
                ON results(task)
                """)

    def save_task(self, task: Task) -> None:
        with self._transaction("save_task") as conn:
            conn.execute(
                """
                INSERT INTO tasks (id, body) VALUES (?, ?)
                ON CONFLICT(id) DO UPDATE SET body = excluded.body
                """,
                (task.id, json.dumps(task.to_record())),
            )

    def save_result(self, result: Result) -> None:
        record = result.to_record()
        with self._transaction("save_result") as conn:
            conn.execute(
                """
                INSERT INTO results (id, task, date, body) VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    task = excluded.task,
                    date = excluded.date,
                    body = excluded.body
                """,
                (result.id, result.task, record["date"], json.dumps(record)),
            )

    def get_task(self, task_id: str) -> Task | None:
        """Return the stored task, or None when no record has this id."""
        with self._transaction("get_task") as conn:
            row = conn.execute("SELECT body FROM tasks WHERE id = ?", (task_id,)).fetchone()
        if row is None:
            return None
        return _load(Task, row["body"])

    def get_tasks(self) -> list[Task]:
        with self._transaction("get_tasks") as conn:
            rows = conn.execute("SELECT body FROM tasks").fetchall()
        return [_load(Task, row["body"]) for row in rows]

    def get_results_by_task(self, task_id: str) -> list[Result]:
        with self._transaction("get_results_by_task") as conn:
            rows = conn.execute("SELECT body FROM results WHERE task = ?", (task_id,)).fetchall()
        return [_load(Result, row["body"]) for row in rows]

    def get_results(self) -> list[Result]:
        with self._transaction("get_results") as conn:
            rows = conn.execute("SELECT body FROM results").fetchall()
        return [_load(Result, row["body"]) for row in rows]

    def delete_task(self, task_id: str) -> None:
        """Delete a task and all of its results in one transaction.

        Any failure rolls back both deletes and raises TransactionError.
        """
        with self._lock:
            try:
                with closing(self._connect()) as conn, conn:
                    removed = conn.execute("DELETE FROM results WHERE task = ?", (task_id,)).rowcount
                    conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
            except sqlite3.Error as exc:
                logger.warning("durable_store event=delete_rolled_back task_id=%s reason=%s", task_id, exc)
                raise TransactionError(
                    f"Could not delete task {task_id}: {exc}",
                    metadata={"task_id": task_id},
                ) from exc
        logger.info("durable_store event=task_deleted task_id=%s results_removed=%s", task_id, removed)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[sqlite3.Connection]:
        """Run one operation on a fresh connection; commit on success, wrap sqlite errors."""
        with self._lock:
            try:
                with closing(self._connect()) as conn, conn:
                    yield conn
            except sqlite3.Error as exc:
                raise StorageError(
                    f"Durable store {operation} failed: {exc}",
                    metadata={"operation": operation, "path": str(self.path)},
                ) from exc


def _load(model: type[Task] | type[Result], body: str) -> Task | Result:
    try:
        return model.model_validate(json.loads(body))
    except (json.JSONDecodeError, PydanticValidationError) as exc:
        raise StorageError(f"Stored {model.__name__.lower()} record is unreadable: {exc}") from exc
