from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from gaply.errors import ValidationError
from gaply.models import Gap, RollingWindow, Task, WorkPreferences

logger = logging.getLogger(__name__)

DEFAULT_STATE_PATH = "data/state.db"


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def state_path_from_env() -> str:
    return os.getenv("GAPLY_STATE_PATH", DEFAULT_STATE_PATH)


class StateStore:
    """Local sqlite copy of tasks, gaps, preferences and cached busy blocks."""

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_at TEXT NOT NULL,
            trigger TEXT NOT NULL,
            status TEXT NOT NULL,
            message TEXT,
            duration_ms INTEGER NOT NULL,
            changes_applied INTEGER NOT NULL,
            conflicts INTEGER NOT NULL
        );

        CREATE TABLE IF NOT EXISTS audit_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_id INTEGER,
            created_at TEXT NOT NULL,
            scope TEXT NOT NULL,
            subject TEXT NOT NULL,
            action TEXT NOT NULL,
            details_json TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS tasks (
            id TEXT PRIMARY KEY,
            due_date TEXT,
            payload_json TEXT NOT NULL,
            updated_at TEXT
        );

        CREATE TABLE IF NOT EXISTS gaps (
            id TEXT PRIMARY KEY,
            date TEXT NOT NULL,
            start_minute INTEGER NOT NULL,
            modified_by TEXT NOT NULL DEFAULT 'system',
            payload_json TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_gaps_date ON gaps(date, start_minute);

        CREATE TABLE IF NOT EXISTS gap_access (
            date TEXT PRIMARY KEY,
            access_count INTEGER NOT NULL DEFAULT 0,
            last_accessed TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS busy_cache (
            date TEXT PRIMARY KEY,
            payload_json TEXT NOT NULL,
            block_count INTEGER NOT NULL,
            cached_at TEXT NOT NULL,
            access_count INTEGER NOT NULL DEFAULT 0,
            last_accessed TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS app_meta (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    # Sync runs

    def record_sync_run(
        self,
        *,
        trigger: str,
        status: str,
        message: str,
        duration_ms: int,
        changes_applied: int,
        conflicts: int,
    ) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO sync_runs(run_at, trigger, status, message, duration_ms, changes_applied, conflicts)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (_utc_now(), trigger, status, message, duration_ms, changes_applied, conflicts),
                )
                conn.commit()
                return int(cursor.lastrowid)

    def start_sync_run(self, *, trigger: str) -> int:
        return self.record_sync_run(
            trigger=trigger, status="running", message="running", duration_ms=0, changes_applied=0, conflicts=0
        )

    def finish_sync_run(
        self,
        *,
        run_id: int,
        status: str,
        message: str,
        duration_ms: int,
        changes_applied: int,
        conflicts: int,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    UPDATE sync_runs
                    SET status = ?, message = ?, duration_ms = ?, changes_applied = ?, conflicts = ?
                    WHERE id = ?
                    """,
                    (str(status), str(message), int(duration_ms), int(changes_applied), int(conflicts), int(run_id)),
                )
                conn.commit()

    def recent_sync_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT id, run_at, trigger, status, message, duration_ms, changes_applied, conflicts
                    FROM sync_runs
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (max(1, limit),),
                ).fetchall()
        return [dict(row) for row in rows]

    # Audit trail

    def record_audit_event(
        self,
        *,
        scope: str,
        subject: str,
        action: str,
        details: dict[str, Any],
        run_id: int | None = None,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO audit_events(run_id, created_at, scope, subject, action, details_json)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (run_id, _utc_now(), scope, subject, action, json.dumps(details, ensure_ascii=False, default=str)),
                )
                conn.commit()

    def recent_audit_events(self, limit: int = 100, action: str | None = None) -> list[dict[str, Any]]:
        query = "SELECT id, run_id, created_at, scope, subject, action, details_json FROM audit_events"
        params: list[Any] = []
        if action:
            query += " WHERE action = ?"
            params.append(action)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(max(1, limit))
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(query, params).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["details"] = json.loads(item.pop("details_json") or "{}")
            output.append(item)
        return output

    # Preferences

    def load_preferences(self) -> WorkPreferences | None:
        raw = self.get_meta("preferences")
        if raw is None:
            return None
        try:
            return WorkPreferences.from_dict(json.loads(raw))
        except ValueError:
            logger.warning("Stored preferences are unreadable; using defaults")
            return None

    def save_preferences(self, prefs: WorkPreferences) -> None:
        self.set_meta("preferences", json.dumps(prefs.to_dict(), ensure_ascii=False))

    # Tasks

    def list_tasks(self) -> list[Task]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute("SELECT id, payload_json FROM tasks ORDER BY due_date, id").fetchall()
        tasks: list[Task] = []
        for row in rows:
            try:
                tasks.append(Task.from_dict(json.loads(row["payload_json"])))
            except (ValueError, ValidationError) as exc:
                logger.warning("Skipping unreadable task %s: %s", row["id"], exc)
        return tasks

    def tasks_for_date(self, target: date) -> list[Task]:
        return [task for task in self.list_tasks() if task.due_date == target]

    def upsert_tasks(self, tasks: Iterable[Task]) -> int:
        rows = [
            (
                task.id,
                task.due_date.isoformat() if task.due_date else None,
                json.dumps(task.to_dict(), ensure_ascii=False),
                task.to_dict()["updated_at"],
            )
            for task in tasks
        ]
        with self._lock:
            with self._connect() as conn:
                conn.executemany(
                    """
                    INSERT INTO tasks(id, due_date, payload_json, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        due_date = excluded.due_date,
                        payload_json = excluded.payload_json,
                        updated_at = excluded.updated_at
                    """,
                    rows,
                )
                conn.commit()
        return len(rows)

    def replace_tasks(self, tasks: Iterable[Task]) -> int:
        with self._lock:
            with self._connect() as conn:
                conn.execute("DELETE FROM tasks")
                conn.commit()
            return self.upsert_tasks(tasks)

    def task_count(self) -> int:
        return self._count("SELECT COUNT(*) FROM tasks")

    # Gaps

    def gaps_for_date(self, target: date, *, touch: bool = True) -> list[Gap]:
        key = target.isoformat()
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT id, payload_json FROM gaps WHERE date = ? ORDER BY start_minute", (key,)
                ).fetchall()
                if touch and rows:
                    self._touch(conn, "gap_access", key)
                    conn.commit()
        return self._decode_gaps(rows)

    def all_gaps(self) -> dict[date, list[Gap]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute("SELECT id, payload_json FROM gaps ORDER BY date, start_minute").fetchall()
        grouped: dict[date, list[Gap]] = {}
        for gap in self._decode_gaps(rows):
            grouped.setdefault(gap.date, []).append(gap)
        return grouped

    def replace_gaps(self, target: date, gaps: Iterable[Gap]) -> int:
        key = target.isoformat()
        rows = [(gap.id, key, gap.start, gap.modified_by, json.dumps(gap.to_dict(), ensure_ascii=False)) for gap in gaps]
        with self._lock:
            with self._connect() as conn:
                conn.execute("DELETE FROM gaps WHERE date = ?", (key,))
                conn.executemany(
                    "INSERT OR REPLACE INTO gaps(id, date, start_minute, modified_by, payload_json) VALUES (?, ?, ?, ?, ?)",
                    rows,
                )
                self._touch(conn, "gap_access", key)
                conn.commit()
        return len(rows)

    def has_gaps(self, target: date) -> bool:
        return self._count("SELECT COUNT(*) FROM gaps WHERE date = ?", (target.isoformat(),)) > 0

    def gap_count(self) -> int:
        return self._count("SELECT COUNT(*) FROM gaps")

    def delete_gap_dates(self, dates: Iterable[str]) -> int:
        keys = list(dates)
        if not keys:
            return 0
        removed = 0
        with self._lock:
            with self._connect() as conn:
                for key in keys:
                    removed += conn.execute("DELETE FROM gaps WHERE date = ?", (key,)).rowcount
                    conn.execute("DELETE FROM gap_access WHERE date = ?", (key,))
                conn.commit()
        return removed

    def delete_gaps_outside(self, window: RollingWindow) -> int:
        keys = [key for key in self._distinct_dates("gaps") if not window.contains(date.fromisoformat(key))]
        return self.delete_gap_dates(keys)

    def gap_access_stats(self) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT g.date AS key, COUNT(*) AS size,
                           SUM(CASE WHEN g.modified_by = 'user' THEN 1 ELSE 0 END) AS pinned,
                           COALESCE(a.access_count, 0) AS access_count,
                           COALESCE(a.last_accessed, '') AS last_accessed
                    FROM gaps g LEFT JOIN gap_access a ON a.date = g.date
                    GROUP BY g.date
                    """
                ).fetchall()
        return [dict(row) for row in rows]

    # Busy-block cache rows

    def get_busy_entry(self, target: date) -> dict[str, Any] | None:
        key = target.isoformat()
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT date, payload_json, block_count, cached_at FROM busy_cache WHERE date = ?", (key,)
                ).fetchone()
                if row is not None:
                    self._touch(conn, "busy_cache", key)
                    conn.commit()
        return dict(row) if row else None

    def put_busy_entry(self, target: date, payload_json: str, block_count: int, cached_at: str) -> None:
        now = _utc_now()
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO busy_cache(date, payload_json, block_count, cached_at, access_count, last_accessed)
                    VALUES (?, ?, ?, ?, 0, ?)
                    ON CONFLICT(date) DO UPDATE SET
                        payload_json = excluded.payload_json,
                        block_count = excluded.block_count,
                        cached_at = excluded.cached_at,
                        last_accessed = excluded.last_accessed
                    """,
                    (target.isoformat(), payload_json, int(block_count), cached_at, now),
                )
                conn.commit()

    def delete_busy_dates(self, dates: Iterable[str]) -> int:
        removed = 0
        with self._lock:
            with self._connect() as conn:
                for key in dates:
                    removed += conn.execute("DELETE FROM busy_cache WHERE date = ?", (key,)).rowcount
                conn.commit()
        return removed

    def busy_dates(self) -> list[str]:
        return self._distinct_dates("busy_cache")

    def busy_block_count(self) -> int:
        return self._count("SELECT COALESCE(SUM(block_count), 0) FROM busy_cache")

    def busy_access_stats(self) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT date AS key, block_count AS size, access_count, last_accessed
                    FROM busy_cache
                    """
                ).fetchall()
        return [dict(row) for row in rows]

    # Meta

    def set_meta(self, key: str, value: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_meta(key, value, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    (str(key), str(value), _utc_now()),
                )
                conn.commit()

    def get_meta(self, key: str) -> str | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT value FROM app_meta WHERE key = ?", (str(key),)).fetchone()
        if row is None:
            return None
        return str(row["value"])

    def storage_bytes(self) -> int:
        try:
            return self.db_path.stat().st_size
        except OSError:
            return 0

    # Helpers

    def _count(self, query: str, params: tuple[Any, ...] = ()) -> int:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(query, params).fetchone()
        return int(row[0] or 0)

    def _distinct_dates(self, table: str) -> list[str]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(f"SELECT DISTINCT date FROM {table}").fetchall()
        return [str(row["date"]) for row in rows]

    @staticmethod
    def _touch(conn: sqlite3.Connection, table: str, key: str) -> None:
        now = _utc_now()
        if table == "gap_access":
            conn.execute(
                """
                INSERT INTO gap_access(date, access_count, last_accessed) VALUES (?, 1, ?)
                ON CONFLICT(date) DO UPDATE SET
                    access_count = gap_access.access_count + 1,
                    last_accessed = excluded.last_accessed
                """,
                (key, now),
            )
        else:
            conn.execute(
                "UPDATE busy_cache SET access_count = access_count + 1, last_accessed = ? WHERE date = ?",
                (now, key),
            )

    @staticmethod
    def _decode_gaps(rows: Iterable[sqlite3.Row]) -> list[Gap]:
        gaps: list[Gap] = []
        for row in rows:
            try:
                gaps.append(Gap.from_dict(json.loads(row["payload_json"])))
            except (ValueError, ValidationError) as exc:
                logger.warning("Skipping unreadable gap %s: %s", row["id"], exc)
        return gaps
