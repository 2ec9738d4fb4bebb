from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterator

from tether.models import RefreshResult, from_epoch_millis, serialize_datetime, to_epoch_millis, utc_now

logger = logging.getLogger(__name__)

FIRST_RUN_KEY = "first_run_timestamp"
MAX_LOG_ENTRIES = 500


class StorageError(RuntimeError):
    pass


def _utc_now() -> str:
    return utc_now().isoformat()


class StateStore:
    """SQLite-backed durable state.

    Every operation opens its own connection, so a read always reflects what
    another process or thread last committed.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30, check_same_thread=False, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def session(self, *, write: bool = False) -> Iterator[sqlite3.Connection]:
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise StorageError(f"state database unavailable: {exc}") from exc
        try:
            if write:
                conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                if write and conn.in_transaction:
                    conn.rollback()
                raise
            if write:
                conn.commit()
        except sqlite3.Error as exc:
            raise StorageError(f"state database error: {exc}") from exc
        finally:
            conn.close()

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS refresh_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_at TEXT NOT NULL,
            trigger TEXT NOT NULL,
            status TEXT NOT NULL,
            message TEXT,
            duration_ms INTEGER NOT NULL,
            events_processed INTEGER NOT NULL,
            valid_keys INTEGER NOT NULL,
            cancelled INTEGER NOT NULL
        );

        CREATE TABLE IF NOT EXISTS notification_log (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            created_at TEXT NOT NULL,
            event_type TEXT NOT NULL,
            title TEXT NOT NULL,
            event_key TEXT NOT NULL,
            notification_id INTEGER,
            extra TEXT
        );

        CREATE TABLE IF NOT EXISTS notifications (
            id INTEGER PRIMARY KEY,
            title TEXT NOT NULL,
            body TEXT NOT NULL,
            actions_json TEXT NOT NULL,
            payload_json TEXT NOT NULL,
            fire_at TEXT,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS app_meta (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        """
        with self._lock:
            with self.session() as conn:
                conn.executescript(schema_sql)

    def record_refresh_run(self, result: RefreshResult) -> int:
        with self._lock:
            with self.session(write=True) as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO refresh_runs(
                        run_at, trigger, status, message, duration_ms, events_processed, valid_keys, cancelled
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        serialize_datetime(result.run_at),
                        result.trigger,
                        result.status,
                        result.message,
                        int(result.duration_ms),
                        int(result.events_processed),
                        int(result.valid_keys),
                        int(result.cancelled),
                    ),
                )
                return int(cursor.lastrowid)

    def recent_refresh_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        with self._lock:
            with self.session() as conn:
                rows = conn.execute(
                    """
                    SELECT id, run_at, trigger, status, message, duration_ms, events_processed, valid_keys, cancelled
                    FROM refresh_runs
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (max(1, limit),),
                ).fetchall()
        return [dict(row) for row in rows]

    def record_notification_event(
        self,
        *,
        event_type: str,
        title: str,
        event_key: str,
        notification_id: int | None = None,
        extra: str | None = None,
    ) -> None:
        with self._lock:
            with self.session(write=True) as conn:
                conn.execute(
                    """
                    INSERT INTO notification_log(created_at, event_type, title, event_key, notification_id, extra)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (_utc_now(), event_type, title, event_key, notification_id, extra),
                )
                conn.execute(
                    """
                    DELETE FROM notification_log
                    WHERE id NOT IN (SELECT id FROM notification_log ORDER BY id DESC LIMIT ?)
                    """,
                    (MAX_LOG_ENTRIES,),
                )

    def recent_notification_events(self, limit: int = 100) -> list[dict[str, Any]]:
        with self._lock:
            with self.session() as conn:
                rows = conn.execute(
                    """
                    SELECT id, created_at, event_type, title, event_key, notification_id, extra
                    FROM notification_log
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (max(1, limit),),
                ).fetchall()
        return [dict(row) for row in rows]

    def set_meta(self, key: str, value: str) -> None:
        with self._lock:
            with self.session(write=True) as conn:
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

    def get_meta(self, key: str) -> str | None:
        with self._lock:
            with self.session() as conn:
                row = conn.execute(
                    """
                    SELECT value
                    FROM app_meta
                    WHERE key = ?
                    """,
                    (str(key),),
                ).fetchone()
        if row is None:
            return None
        return str(row["value"])

    def delete_meta(self, key: str) -> None:
        with self._lock:
            with self.session(write=True) as conn:
                conn.execute("DELETE FROM app_meta WHERE key = ?", (str(key),))

    def update_meta(self, key: str, mutate: Callable[[str | None], str | None]) -> str | None:
        """Read-modify-write one value inside a single immediate transaction.

        ``mutate`` receives the stored text (or None) and returns the new text;
        returning None deletes the key.
        """
        with self._lock:
            with self.session(write=True) as conn:
                row = conn.execute("SELECT value FROM app_meta WHERE key = ?", (str(key),)).fetchone()
                current = str(row["value"]) if row is not None else None
                updated = mutate(current)
                if updated is None:
                    conn.execute("DELETE FROM app_meta WHERE key = ?", (str(key),))
                else:
                    conn.execute(
                        """
                        INSERT INTO app_meta(key, value, updated_at)
                        VALUES (?, ?, ?)
                        ON CONFLICT(key) DO UPDATE SET
                            value = excluded.value,
                            updated_at = excluded.updated_at
                        """,
                        (str(key), updated, _utc_now()),
                    )
                return updated

    def ensure_first_run_timestamp(self, now: datetime | None = None) -> datetime:
        stamp = to_epoch_millis(now or utc_now())
        with self._lock:
            with self.session(write=True) as conn:
                conn.execute(
                    "INSERT OR IGNORE INTO app_meta(key, value, updated_at) VALUES (?, ?, ?)",
                    (FIRST_RUN_KEY, str(stamp), _utc_now()),
                )
        stored = self.first_run_timestamp()
        if stored is None:
            raise StorageError("first run timestamp was not persisted")
        return stored

    def first_run_timestamp(self) -> datetime | None:
        raw = self.get_meta(FIRST_RUN_KEY)
        if raw is None:
            return None
        try:
            return from_epoch_millis(int(raw))
        except ValueError:
            logger.warning("Ignoring unreadable first run timestamp: %r", raw)
            return None


def load_json(raw: str | None, default: Any) -> Any:
    if raw is None:
        return default
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return default
