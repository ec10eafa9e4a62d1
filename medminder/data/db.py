"""
MedMinder — SQLite key-value store.

Implements the KeyValueStore port on a single `kv` table so medications,
dose history and reminder bookkeeping survive bot restarts. Objects are
stored as JSON text.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path
from typing import Any

from medminder.ports.storage_port import PersistenceError

logger = logging.getLogger(__name__)


class SqliteKeyValueStore:
    """SQLite-backed implementation of KeyValueStore."""

    def __init__(self, db_path: str | None = None) -> None:
        if db_path is None:
            from medminder.config import settings
            db_path = settings.DATABASE_PATH

        self._db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._memory_conn: sqlite3.Connection | None = None
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        # ":memory:" databases vanish with their connection, so keep one open.
        if self._db_path == ":memory:":
            if self._memory_conn is None:
                self._memory_conn = sqlite3.connect(":memory:", check_same_thread=False)
            return self._memory_conn
        return sqlite3.connect(self._db_path)

    def _init_db(self) -> None:
        """Create the kv table if it doesn't exist."""
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS kv (
                    key         TEXT PRIMARY KEY,
                    value       TEXT NOT NULL,
                    updated_at  TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
                )
            """)
        logger.debug("KV table initialized at %s", self._db_path)

    def get_string(self, key: str) -> str | None:
        try:
            with self._connect() as conn:
                row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to read {key!r}: {exc}") from exc
        return None if row is None else row[0]

    def set_string(self, key: str, value: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO kv (key, value, updated_at)
                    VALUES (?, ?, CURRENT_TIMESTAMP)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    (key, value),
                )
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to write {key!r}: {exc}") from exc

    def get_object(self, key: str) -> Any | None:
        """Decode a JSON value; unreadable JSON is treated as absent."""
        raw = self.get_string(key)
        if not raw:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Discarding corrupt JSON stored under %s", key)
            return None

    def set_object(self, key: str, value: Any) -> None:
        self.set_string(key, json.dumps(value))

    def remove(self, key: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute("DELETE FROM kv WHERE key = ?", (key,))
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to delete {key!r}: {exc}") from exc

    def keys(self) -> list[str]:
        with self._connect() as conn:
            rows = conn.execute("SELECT key FROM kv ORDER BY key").fetchall()
        return [r[0] for r in rows]
