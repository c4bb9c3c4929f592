"""Local SQLite persistence shared by the record cache and the offline queue.

This module provides:
- LocalDatabase: One SQLite connection guarded by a re-entrant lock

Every statement and every transaction runs while holding the lock, so the
connection behaves as a single serialized execution context: two callers
never interleave a read-modify-write sequence.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence

logger = logging.getLogger(__name__)

SCHEMA = """
    -- Serialized domain records, partitioned by category
    CREATE TABLE IF NOT EXISTS cached_records (
        record_id TEXT NOT NULL,
        category TEXT NOT NULL,
        payload BLOB NOT NULL,
        cached_at REAL NOT NULL,
        position INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (record_id, category)
    );

    CREATE INDEX IF NOT EXISTS idx_cached_records_category
        ON cached_records (category, cached_at);

    -- Writes made while offline, waiting to be sent
    CREATE TABLE IF NOT EXISTS pending_records (
        id TEXT PRIMARY KEY,
        request_payload BLOB NOT NULL,
        attachment_payload BLOB,
        created_at REAL NOT NULL,
        sync_attempts INTEGER NOT NULL DEFAULT 0,
        last_error TEXT,
        is_syncing INTEGER NOT NULL DEFAULT 0
    );
"""


class LocalDatabase:
    """SQLite database for cached and pending records.

    Usage:
        db = LocalDatabase(data_dir / "cache.db")
        with db.transaction() as conn:
            conn.execute(...)
        db.close()
    """

    def __init__(self, db_path: Path) -> None:
        """Open (and create if needed) the database.

        Args:
            db_path: Path to SQLite database file.
        """
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        # Lock for thread-safe database access
        self._lock = threading.RLock()

        self._conn = sqlite3.connect(
            str(self._db_path),
            check_same_thread=False,
            isolation_level=None,  # Autocommit mode, explicit BEGIN for batches
        )
        self._conn.row_factory = sqlite3.Row

        # Enable WAL mode for better concurrency
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(SCHEMA)
        logger.debug("Opened local database at %s", self._db_path)

    @property
    def path(self) -> Path:
        """Database file path."""
        return self._db_path

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()

    def execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        """Execute a single statement (autocommitted)."""
        with self._lock:
            return self._conn.execute(sql, params)

    def fetchall(self, sql: str, params: Sequence[Any] = ()) -> list[sqlite3.Row]:
        """Execute a query and return all rows."""
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    def fetchone(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Row | None:
        """Execute a query and return the first row."""
        with self._lock:
            row: sqlite3.Row | None = self._conn.execute(sql, params).fetchone()
            return row

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block of statements as one atomic write.

        The lock is held for the whole block; on any exception the
        transaction is rolled back and the exception re-raised.
        """
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            else:
                self._conn.execute("COMMIT")
