"""
SQLite key/value store backing the Result Cache.

One table of (key, value, expires_at). Writes run in a transaction; the
database uses WAL so readers never block the writer. Store errors are logged
and read as misses.
"""

import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


class SqliteStore:
    """
    Usage:
        store = SqliteStore('data/lens_cache.db')
        store.set('trades:<wallet>', payload_json)
        store.get('trades:<wallet>')
    """

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS cache_entries (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        expires_at REAL,
        updated_at REAL NOT NULL
    )
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._lock = threading.Lock()
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        with self._lock:
            if db_path != ":memory:":
                self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute(self.SCHEMA)
            self._conn.commit()

    def get(self, key: str) -> Optional[str]:
        try:
            with self._lock:
                row = self._conn.execute(
                    "SELECT value, expires_at FROM cache_entries WHERE key = ?", (key,)
                ).fetchone()
        except sqlite3.Error as e:
            logger.warning(f"SQLite get failed for key {key}: {e}")
            return None

        if row is None:
            return None
        value, expires_at = row
        if expires_at is not None and time.time() >= expires_at:
            self.delete(key)
            return None
        return value

    def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> bool:
        now = time.time()
        expires_at = now + ttl_seconds if ttl_seconds else None
        try:
            with self._lock, self._conn:
                self._conn.execute(
                    "INSERT OR REPLACE INTO cache_entries (key, value, expires_at, updated_at) VALUES (?, ?, ?, ?)",
                    (key, value, expires_at, now),
                )
        except sqlite3.Error as e:
            logger.warning(f"SQLite set failed for key {key}: {e}")
            return False
        return True

    def delete(self, key: str) -> bool:
        try:
            with self._lock, self._conn:
                self._conn.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
        except sqlite3.Error as e:
            logger.warning(f"SQLite delete failed for key {key}: {e}")
            return False
        return True

    def verify_integrity(self) -> bool:
        """Run PRAGMA integrity_check."""
        try:
            with self._lock:
                result = self._conn.execute("PRAGMA integrity_check").fetchone()
        except sqlite3.Error as e:
            logger.warning(f"SQLite integrity check error: {e}")
            return False
        return result is not None and result[0] == "ok"

    def close(self):
        with self._lock:
            self._conn.close()
