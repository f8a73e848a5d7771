# src/flowday/tasks/task_store.py

from __future__ import annotations

import contextlib
import logging
import sqlite3
import threading
import time
from collections.abc import Callable, Iterable, Iterator
from pathlib import Path
from typing import Any

from ..core.errors import LocalStorageError
from ..core.ports import StoreListener
from .task_models import (
    Recurrence,
    RecurrenceKind,
    TaskDefinition,
    TaskStatus,
    format_weekdays,
    normalize_valid_until,
    parse_weekdays,
)

logger = logging.getLogger(__name__)

# Anonymous rows: owner_id NULL, or '' written by older clients.
_ANON_SCOPE = "(owner_id IS NULL OR owner_id = '')"

_UPSERT_SQL = """
INSERT INTO tasks(
    id, name, anchor_date, validity_label, execution_time,
    status, owner_id, recurrence_kind, recurrence_days, valid_until, updated_at
)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(id) DO UPDATE SET
    name = excluded.name,
    anchor_date = excluded.anchor_date,
    validity_label = excluded.validity_label,
    execution_time = excluded.execution_time,
    status = excluded.status,
    owner_id = excluded.owner_id,
    recurrence_kind = excluded.recurrence_kind,
    recurrence_days = excluded.recurrence_days,
    valid_until = excluded.valid_until,
    updated_at = excluded.updated_at
"""


class TaskStore:
    """
    SQLite task definition store.

    The schema is intentionally simple and migration-safe:
    - create table if missing
    - use PRAGMA table_info to detect missing columns
    - add columns with ALTER TABLE only when needed

    Exactly one row per definition id; writes replace the whole row.

    Thread-safety:
    - each method opens its own SQLite connection
    - listeners are called after commit, on the writer's thread
    """

    def __init__(self, db_path: str | Path = "tasks.sqlite3") -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._listeners: list[StoreListener] = []
        self._listeners_lock = threading.Lock()
        self._ensure_schema()
        try:
            total = self.count_definitions()
        except LocalStorageError:
            total = -1
        logger.info("TaskStore ready db=%s total=%s", self._db_path, total)

    def close(self) -> None:
        """Compatibility hook for shutdown (no persistent connections to close)."""
        with self._listeners_lock:
            self._listeners.clear()

    # ---- low-level helpers ----

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        self._configure_conn(conn)
        return conn

    @staticmethod
    def _configure_conn(conn: sqlite3.Connection) -> None:
        with contextlib.suppress(sqlite3.Error):
            conn.execute("PRAGMA journal_mode=WAL")

    @contextlib.contextmanager
    def _tx(self, op: str) -> Iterator[sqlite3.Connection]:
        """Connection scoped to one operation; commits on success, maps sqlite errors."""
        try:
            conn = self._get_conn()
        except sqlite3.Error as exc:
            raise LocalStorageError(f"{op}: cannot open {self._db_path}: {exc}") from exc
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            with contextlib.suppress(sqlite3.Error):
                conn.rollback()
            raise LocalStorageError(f"{op} failed: {exc}") from exc
        finally:
            conn.close()

    def _ensure_schema(self) -> None:
        with self._tx("ensure_schema") as conn:
            cur = conn.cursor()
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS tasks (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    anchor_date INTEGER NOT NULL,
                    validity_label TEXT NOT NULL DEFAULT '',
                    execution_time INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL DEFAULT 'active',
                    owner_id TEXT,
                    recurrence_kind TEXT NOT NULL DEFAULT 'none',
                    recurrence_days TEXT NOT NULL DEFAULT '',
                    valid_until INTEGER,
                    updated_at REAL NOT NULL DEFAULT 0
                )
                """
            )

            # Migrations (safe): add missing columns.
            cur.execute("PRAGMA table_info(tasks)")
            cols = {row["name"] for row in cur.fetchall()}

            def add_col(name: str, decl: str) -> None:
                if name in cols:
                    return
                cur.execute(f"ALTER TABLE tasks ADD COLUMN {name} {decl}")
                logger.info("TaskStore migration: added column %s", name)

            add_col("validity_label", "TEXT NOT NULL DEFAULT ''")
            add_col("execution_time", "INTEGER NOT NULL DEFAULT 0")
            add_col("status", "TEXT NOT NULL DEFAULT 'active'")
            add_col("owner_id", "TEXT")
            add_col("recurrence_kind", "TEXT NOT NULL DEFAULT 'none'")
            add_col("recurrence_days", "TEXT NOT NULL DEFAULT ''")
            add_col("valid_until", "INTEGER")
            add_col("updated_at", "REAL NOT NULL DEFAULT 0")

            cur.execute("CREATE INDEX IF NOT EXISTS idx_tasks_owner_anchor ON tasks(owner_id, anchor_date)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_tasks_status_anchor ON tasks(status, anchor_date)")

    @staticmethod
    def _scope(owner_id: str | None) -> tuple[str, tuple[str, ...]]:
        if owner_id:
            return "owner_id = ?", (owner_id,)
        return _ANON_SCOPE, ()

    @staticmethod
    def _row_to_definition(row: sqlite3.Row) -> TaskDefinition:
        try:
            days = parse_weekdays(row["recurrence_days"] or "")
        except ValueError:
            logger.warning("Ignoring invalid recurrence_days for id=%s", row["id"])
            days = frozenset()
        return TaskDefinition(
            id=str(row["id"]),
            name=str(row["name"] or ""),
            anchor_date=int(row["anchor_date"]),
            execution_time=int(row["execution_time"] or 0),
            validity_label=str(row["validity_label"] or ""),
            status=TaskStatus.from_db(row["status"]),
            owner_id=row["owner_id"] or None,
            recurrence=Recurrence(
                kind=RecurrenceKind.from_db(row["recurrence_kind"]),
                weekly_days=days,
                valid_until=normalize_valid_until(row["valid_until"]),
            ),
        )

    # ---- change feed ----

    def add_listener(self, listener: StoreListener) -> Callable[[], None]:
        """Register a callback fired after each committed write. Returns a remover."""
        with self._listeners_lock:
            self._listeners.append(listener)

        def remove() -> None:
            with self._listeners_lock, contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return remove

    def _notify(self) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener()
            except Exception:
                logger.exception("TaskStore listener failed")

    # ---- public API ----

    def count_definitions(self) -> int:
        with self._tx("count") as conn:
            (n,) = conn.execute("SELECT COUNT(*) FROM tasks").fetchone()
            return int(n)

    def list_definitions(self, owner_id: str | None) -> list[TaskDefinition]:
        """All definitions in the owner's scope (anonymous rows when owner_id is None), by anchor date."""
        where, params = self._scope(owner_id)
        with self._tx("list_definitions") as conn:
            rows = conn.execute(
                f"""
                SELECT *
                FROM tasks
                WHERE {where}
                ORDER BY anchor_date ASC, execution_time ASC, id ASC
                """,
                params,
            ).fetchall()
        return [self._row_to_definition(r) for r in rows]

    def get(self, task_id: str) -> TaskDefinition | None:
        with self._tx("get") as conn:
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return self._row_to_definition(row) if row else None

    @staticmethod
    def _upsert_params(definition: TaskDefinition, now: float) -> tuple[Any, ...]:
        rec = definition.recurrence
        return (
            definition.id,
            definition.name,
            int(definition.anchor_date),
            definition.validity_label,
            int(definition.execution_time),
            definition.status.value,
            definition.owner_id,
            rec.kind.value,
            format_weekdays(rec.weekly_days),
            rec.valid_until,
            now,
        )

    def upsert(self, definition: TaskDefinition) -> None:
        """Insert or fully replace the row with this id."""
        self.upsert_many([definition])

    def upsert_many(self, definitions: Iterable[TaskDefinition]) -> list[str]:
        """
        Insert or replace several rows in one transaction: all of them land or none do.

        Returns the ids written.
        """
        definitions = list(definitions)
        if not definitions:
            return []

        now = time.time()
        with self._tx("upsert") as conn:
            conn.execute("BEGIN IMMEDIATE")
            for definition in definitions:
                conn.execute(_UPSERT_SQL, self._upsert_params(definition, now))
        for definition in definitions:
            logger.debug(
                "Definition upserted id=%s status=%s owner=%s",
                definition.id,
                definition.status.value,
                definition.owner_id,
            )
        self._notify()
        return [d.id for d in definitions]

    def delete(self, task_id: str) -> bool:
        """Delete by id. Absence is not an error; returns whether a row was removed."""
        with self._tx("delete") as conn:
            cur = conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
            removed = cur.rowcount == 1
        if removed:
            logger.debug("Definition deleted id=%s", task_id)
            self._notify()
        return removed

    def bulk_reassign_owner(self, new_owner_id: str) -> list[str]:
        """
        Move every anonymous definition to `new_owner_id` in one transaction.

        Returns the ids that were migrated (empty when nothing was anonymous).
        """
        if not new_owner_id:
            raise ValueError("new_owner_id is required")

        now = time.time()
        with self._tx("bulk_reassign_owner") as conn:
            conn.execute("BEGIN IMMEDIATE")
            ids = [r["id"] for r in conn.execute(f"SELECT id FROM tasks WHERE {_ANON_SCOPE}").fetchall()]
            if ids:
                conn.execute(
                    f"UPDATE tasks SET owner_id = ?, updated_at = ? WHERE {_ANON_SCOPE}",
                    (new_owner_id, now),
                )
        if ids:
            logger.info("Migrated %d anonymous definitions to owner=%s", len(ids), new_owner_id)
            self._notify()
        return ids

    def bulk_mark_failed(self, before_ms: int, owner_id: str | None) -> list[str]:
        """
        Active definitions in scope anchored strictly before `before_ms` -> failed.

        Returns the ids that changed.
        """
        where, params = self._scope(owner_id)
        now = time.time()
        with self._tx("bulk_mark_failed") as conn:
            conn.execute("BEGIN IMMEDIATE")
            ids = [
                r["id"]
                for r in conn.execute(
                    f"SELECT id FROM tasks WHERE status = 'active' AND anchor_date < ? AND {where}",
                    (int(before_ms), *params),
                ).fetchall()
            ]
            if ids:
                conn.execute(
                    f"""
                    UPDATE tasks
                    SET status = 'failed', updated_at = ?
                    WHERE status = 'active' AND anchor_date < ? AND {where}
                    """,
                    (now, int(before_ms), *params),
                )
        if ids:
            self._notify()
        return ids
