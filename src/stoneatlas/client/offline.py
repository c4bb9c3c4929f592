"""Durable queue of writes made while offline.

This module provides:
- PendingRecord: A queued write and its sync bookkeeping
- DrainReport: Outcome of one drain pass
- OfflineQueue: SQLite-backed queue drained on reconnect

Record lifecycle:
    Created ──drain──► Syncing ──ok──► Synced (deleted)
       ▲                  │
       └────fail (attempts + 1)────┘

    A record found with attempts >= max at the start of a later drain is
    abandoned (deleted) without another network call. Records are retried
    on the next drain only (reconnect or enqueue).

Drains run on a single background worker thread. A second drain() while
one is running returns immediately with an empty report.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from stoneatlas.core.config import DEFAULT_MAX_RETRY_ATTEMPTS
from stoneatlas.core.types import CreateStoneRequest

if TYPE_CHECKING:
    from collections.abc import Callable

    from stoneatlas.client.connectivity import ConnectivityMonitor
    from stoneatlas.client.database import LocalDatabase

logger = logging.getLogger(__name__)


class QueueNotConfiguredError(Exception):
    """Offline queue used before its database was configured."""

    def __init__(self) -> None:
        super().__init__("Offline queue not properly configured")


@dataclass
class PendingRecord:
    """A write waiting to be sent to the server."""

    id: str
    request_payload: bytes
    attachment_payload: bytes | None
    created_at: float
    sync_attempts: int = 0
    last_error: str | None = None
    is_syncing: bool = False

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> PendingRecord:
        """Build from a pending_records row."""
        return cls(
            id=row["id"],
            request_payload=bytes(row["request_payload"]),
            attachment_payload=(
                bytes(row["attachment_payload"]) if row["attachment_payload"] is not None else None
            ),
            created_at=row["created_at"],
            sync_attempts=row["sync_attempts"],
            last_error=row["last_error"],
            is_syncing=bool(row["is_syncing"]),
        )

    def has_exceeded_retries(self, max_attempts: int = DEFAULT_MAX_RETRY_ATTEMPTS) -> bool:
        return self.sync_attempts >= max_attempts

    def status_description(self, max_attempts: int = DEFAULT_MAX_RETRY_ATTEMPTS) -> str:
        """Short human-readable status for a pending-items list."""
        if self.is_syncing:
            return "Syncing..."
        if self.last_error:
            return f"Failed: {self.last_error}"
        if self.sync_attempts > 0:
            return f"Retrying ({self.sync_attempts}/{max_attempts})"
        return "Waiting to sync"


@dataclass
class DrainReport:
    """Counts for one drain pass."""

    synced: int = 0
    failed: int = 0
    abandoned: int = 0
    skipped: int = 0

    @property
    def processed(self) -> int:
        return self.synced + self.failed + self.abandoned


class OfflineQueue:
    """Queue of pending writes, drained when the network comes back.

    Usage:
        queue = OfflineQueue(monitor, performer, database=db)
        monitor.add_reconnect_listener(queue.schedule_drain)
        queue.enqueue(request.to_json(), photo_bytes)

    The performer receives the decoded request and the attachment bytes and
    returns True once the remote write succeeded. Raising counts as a failure.
    """

    def __init__(
        self,
        monitor: ConnectivityMonitor,
        performer: Callable[[Any, bytes | None], bool],
        database: LocalDatabase | None = None,
        max_retry_attempts: int = DEFAULT_MAX_RETRY_ATTEMPTS,
        decode_request: Callable[[bytes], Any] = CreateStoneRequest.from_json,
        on_abandoned: Callable[[PendingRecord], None] | None = None,
    ) -> None:
        """Initialize the queue.

        Args:
            monitor: Connectivity source; drains are no-ops while offline.
            performer: Performs the remote write for a decoded request.
            database: Persistence backend; may be wired later with configure().
            max_retry_attempts: Failed attempts after which a record is dropped.
            decode_request: Decodes a stored request payload.
            on_abandoned: Called with each record dropped after max attempts.
        """
        if max_retry_attempts < 1:
            raise ValueError("max_retry_attempts must be at least 1")

        self._monitor = monitor
        self._performer = performer
        self._db: LocalDatabase | None = None
        self._max_retry_attempts = max_retry_attempts
        self._decode_request = decode_request
        self._on_abandoned = on_abandoned

        self._drain_lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="OfflineQueue")
        self._closed = False
        self._abandoned_count = 0

        if database is not None:
            self.configure(database)

    def configure(self, database: LocalDatabase) -> None:
        """Wire the persistence backend.

        Records left marked as syncing by an interrupted drain are made
        eligible again.
        """
        self._db = database
        cursor = database.execute("UPDATE pending_records SET is_syncing = 0 WHERE is_syncing = 1")
        if cursor.rowcount:
            logger.info("Recovered %d interrupted pending records", cursor.rowcount)
        logger.info("Offline queue configured with %s", database.path)

    def _require_db(self) -> LocalDatabase:
        if self._db is None:
            logger.error("Offline queue database not configured")
            raise QueueNotConfiguredError()
        return self._db

    @property
    def max_retry_attempts(self) -> int:
        return self._max_retry_attempts

    @property
    def is_draining(self) -> bool:
        """Whether a drain pass is running."""
        return self._drain_lock.locked()

    @property
    def abandoned_count(self) -> int:
        """Records dropped after exhausting retries since startup."""
        return self._abandoned_count

    def set_on_abandoned(self, callback: Callable[[PendingRecord], None] | None) -> None:
        self._on_abandoned = callback

    # === Enqueue ===

    def enqueue(self, request_payload: bytes, attachment: bytes | None = None) -> bool:
        """Persist a write and schedule a drain.

        Args:
            request_payload: Serialized request.
            attachment: Optional binary attachment (e.g. a photo).

        Returns:
            True if the record was saved locally. Says nothing about
            whether the remote write will succeed.

        Raises:
            QueueNotConfiguredError: No database configured.
        """
        db = self._require_db()
        record_id = str(uuid.uuid4())
        try:
            db.execute(
                """
                INSERT INTO pending_records
                (id, request_payload, attachment_payload, created_at, sync_attempts, is_syncing)
                VALUES (?, ?, ?, ?, 0, 0)
                """,
                (record_id, request_payload, attachment, time.time()),
            )
        except sqlite3.Error as e:
            logger.error("Failed to save pending record: %s", e)
            return False

        logger.info("Saved pending record %s for later sync", record_id)
        self.schedule_drain()
        return True

    # === Draining ===

    def schedule_drain(self) -> Future[DrainReport] | None:
        """Run drain() on the background worker and return immediately."""
        if self._closed:
            logger.debug("Offline queue closed, not scheduling drain")
            return None
        return self._executor.submit(self._drain_in_background)

    def _drain_in_background(self) -> DrainReport:
        try:
            return self.drain()
        except Exception as e:
            logger.error("Background drain failed: %s", e)
            logger.debug("Full traceback:", exc_info=True)
            return DrainReport()

    def drain(self) -> DrainReport:
        """Try to send every pending record once, in creation order.

        No-op when offline, when another drain is running, or when the
        queue is empty. One record failing does not stop the others.

        Returns:
            What happened to each record in this pass.

        Raises:
            QueueNotConfiguredError: No database configured.
        """
        report = DrainReport()
        if not self._drain_lock.acquire(blocking=False):
            logger.debug("Drain already in progress, skipping")
            return report

        try:
            if not self._monitor.is_connected:
                logger.debug("Offline, not draining pending records")
                return report

            records = self.list_pending()
            if not records:
                return report

            logger.info("Syncing %d pending records", len(records))
            for record in records:
                self._sync_record(record, report)

            logger.info(
                "Drain complete - %d synced, %d failed, %d abandoned, %d skipped",
                report.synced,
                report.failed,
                report.abandoned,
                report.skipped,
            )
            return report
        finally:
            self._drain_lock.release()

    def _sync_record(self, record: PendingRecord, report: DrainReport) -> None:
        db = self._require_db()

        if record.is_syncing:
            report.skipped += 1
            return

        if record.has_exceeded_retries(self._max_retry_attempts):
            self._abandon(record)
            report.abandoned += 1
            return

        try:
            request = self._decode_request(record.request_payload)
        except ValueError as e:
            logger.error("Discarding pending record %s with unreadable payload: %s", record.id, e)
            self.delete(record.id)
            report.abandoned += 1
            return

        claimed = db.execute(
            "UPDATE pending_records SET is_syncing = 1 WHERE id = ? AND is_syncing = 0",
            (record.id,),
        )
        if claimed.rowcount == 0:
            # Removed (or claimed) after this pass listed it
            logger.debug("Pending record %s no longer eligible, skipping", record.id)
            report.skipped += 1
            return

        error: str | None = None
        try:
            succeeded = self._performer(request, record.attachment_payload)
            if not succeeded:
                error = "Sync failed"
        except Exception as e:
            logger.debug("Full traceback:", exc_info=True)
            error = str(e) or type(e).__name__

        if error is None:
            db.execute("DELETE FROM pending_records WHERE id = ?", (record.id,))
            logger.info("Synced pending record %s", record.id)
            report.synced += 1
            return

        record.sync_attempts += 1
        record.last_error = error
        record.is_syncing = False
        db.execute(
            """
            UPDATE pending_records
            SET is_syncing = 0, sync_attempts = ?, last_error = ?
            WHERE id = ?
            """,
            (record.sync_attempts, error, record.id),
        )
        logger.warning(
            "Failed to sync pending record %s (attempt %d/%d): %s",
            record.id,
            record.sync_attempts,
            self._max_retry_attempts,
            error,
        )
        report.failed += 1

    def _abandon(self, record: PendingRecord) -> None:
        logger.warning(
            "Pending record %s exceeded retry attempts (%d/%d), discarding: %s",
            record.id,
            record.sync_attempts,
            self._max_retry_attempts,
            record.last_error,
        )
        self.delete(record.id)
        self._abandoned_count += 1
        if self._on_abandoned:
            try:
                self._on_abandoned(record)
            except Exception as e:
                logger.error("Abandoned record handler failed: %s", e)

    def join(self, timeout: float | None = None) -> None:
        """Wait until every drain scheduled so far has finished."""
        if self._closed:
            return
        # Single worker: a no-op submitted now runs after everything queued before it
        self._executor.submit(lambda: None).result(timeout=timeout)

    def close(self) -> None:
        """Stop the background worker after in-flight drains complete."""
        self._closed = True
        self._executor.shutdown(wait=True)
        logger.info("Offline queue closed")

    # === Inspection and cleanup ===

    @property
    def count(self) -> int:
        """Number of pending records."""
        row = self._require_db().fetchone("SELECT COUNT(*) AS n FROM pending_records")
        return int(row["n"]) if row else 0

    def list_pending(self) -> list[PendingRecord]:
        """All pending records in creation order."""
        rows = self._require_db().fetchall(
            "SELECT * FROM pending_records ORDER BY created_at ASC, rowid ASC"
        )
        return [PendingRecord.from_row(row) for row in rows]

    def delete(self, record_id: str) -> None:
        """Remove one pending record."""
        self._require_db().execute("DELETE FROM pending_records WHERE id = ?", (record_id,))
        logger.debug("Deleted pending record %s", record_id)

    def clear(self) -> int:
        """Remove every pending record.

        Returns:
            Number of records removed.
        """
        cursor = self._require_db().execute("DELETE FROM pending_records")
        if cursor.rowcount:
            logger.warning("Discarded %d pending records", cursor.rowcount)
        return cursor.rowcount
