"""Durable key-value store for non-secret state (device id, queue, expiry)."""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

from ..config import Config
from ..errors import StorageError

__all__ = ["StateStore"]

logger = logging.getLogger(__name__)


class StateStore:
    """SQLite-backed key-value store with JSON-encoded values."""

    def __init__(self, db_path: Optional[Path] = None):
        """Initialize the state store.

        Args:
            db_path: Path to SQLite database file
        """
        if db_path is None:
            db_path = Config.get_data_dir() / "state.db"

        self.db_path = db_path
        self._local = threading.local()
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        if not hasattr(self._local, "connection"):
            self._local.connection = sqlite3.connect(str(self.db_path))
        return self._local.connection

    @contextmanager
    def _cursor(self) -> Iterator[sqlite3.Cursor]:
        """Context manager for database cursor."""
        try:
            conn = self._get_connection()
            cursor = conn.cursor()
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open state database: {e}") from e
        try:
            yield cursor
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            logger.error(f"State store operation failed: {e}")
            raise StorageError(str(e)) from e
        except Exception:
            conn.rollback()
            raise
        finally:
            cursor.close()

    def _init_db(self) -> None:
        """Initialize the database schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        with self._cursor() as cursor:
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS state (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )

    def get(self, key: str, default: Any = None) -> Any:
        """Get a value, or default when the key is absent."""
        with self._cursor() as cursor:
            cursor.execute("SELECT value FROM state WHERE key = ?", (key,))
            row = cursor.fetchone()
        if row is None:
            return default
        try:
            return json.loads(row[0])
        except json.JSONDecodeError as e:
            logger.error(f"Corrupt value for state key {key!r}: {e}")
            return default

    def set(self, key: str, value: Any) -> None:
        """Write a value; None deletes the key."""
        if value is None:
            self.delete(key)
            return

        now = datetime.now(timezone.utc).isoformat()
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO state (key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
                """,
                (key, json.dumps(value), now),
            )

    def delete(self, key: str) -> None:
        """Delete a key if present."""
        with self._cursor() as cursor:
            cursor.execute("DELETE FROM state WHERE key = ?", (key,))

    def keys(self) -> list[str]:
        """All stored keys."""
        with self._cursor() as cursor:
            cursor.execute("SELECT key FROM state ORDER BY key")
            return [row[0] for row in cursor.fetchall()]

    def close(self) -> None:
        """Close this thread's database connection."""
        if hasattr(self._local, "connection"):
            self._local.connection.close()
            del self._local.connection
