"""Category-aware local cache of domain records.

This module provides:
- CacheStore: SQLite-backed cache with per-category upsert semantics
- UpsertCounts: Result of an upsert
- CacheError and subclasses

Cache patterns:
    Every category uses upsert (update existing, insert new). What happens
    to cached entries missing from the incoming batch depends on the
    category's policy:

    | Category | Policy     | Stale entries         |
    |----------|------------|-----------------------|
    | OWN      | REPLACE    | deleted               |
    | PUBLIC   | REPLACE    | deleted               |
    | NEARBY   | ACCUMULATE | kept (coverage grows) |

    Own and public feeds are refetched in full, so an entry missing from
    the latest response was deleted remotely. Nearby results are fetched
    per viewport; a smaller later fetch must not evict earlier results.

All operations go through LocalDatabase, whose lock serializes them: two
concurrent upserts for the same category never interleave their
read-modify-delete steps. A batch is committed as one transaction.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

from stoneatlas.core.types import CachePolicy, Category, Stone

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Sequence

    from stoneatlas.client.database import LocalDatabase

logger = logging.getLogger(__name__)


class CacheError(Exception):
    """Base exception for cache errors."""


class CacheNotConfiguredError(CacheError):
    """Cache used before its database was configured."""

    def __init__(self) -> None:
        super().__init__("Cache service not properly configured")


class CacheFetchError(CacheError):
    """Reading from the cache failed."""

    def __init__(self, cause: Exception) -> None:
        super().__init__(f"Failed to fetch cached records: {cause}")
        self.cause = cause


class CacheSaveError(CacheError):
    """Writing to the cache failed."""

    def __init__(self, cause: Exception) -> None:
        super().__init__(f"Failed to save to cache: {cause}")
        self.cause = cause


class CacheableRecord(Protocol):
    """What the cache needs from a domain record."""

    @property
    def id(self) -> Any: ...

    def to_dict(self) -> dict[str, Any]: ...


@dataclass
class UpsertCounts:
    """Number of entries inserted, updated and deleted by an upsert."""

    inserted: int = 0
    updated: int = 0
    deleted: int = 0


class CacheStore:
    """Category-keyed cache of serialized records.

    Usage:
        cache = CacheStore(LocalDatabase(path))
        cache.upsert(stones, Category.OWN)
        cached = cache.fetch(Category.OWN)
    """

    def __init__(
        self,
        database: LocalDatabase | None = None,
        decode: Callable[[dict[str, Any]], Any] = Stone.from_dict,
    ) -> None:
        """Initialize the cache.

        Args:
            database: Persistence backend; may be wired later with configure().
            decode: Builds a record from its serialized dictionary.
        """
        self._db = database
        self._decode = decode

    def configure(self, database: LocalDatabase) -> None:
        """Wire the persistence backend."""
        self._db = database
        logger.info("Cache configured with %s", database.path)

    @property
    def is_configured(self) -> bool:
        """Whether a database has been wired."""
        return self._db is not None

    def _require_db(self) -> LocalDatabase:
        if self._db is None:
            logger.error("Cache database not configured")
            raise CacheNotConfiguredError()
        return self._db

    # === Writes ===

    def upsert_batch(
        self,
        batches: Iterable[tuple[Sequence[CacheableRecord], Category]],
    ) -> UpsertCounts:
        """Upsert several categories in a single transaction.

        For each (records, category) pair, existing entries are updated in
        place (new payload, refreshed cached_at), unknown ones inserted, and
        for REPLACE categories every entry not present in records is deleted.

        Args:
            batches: (records, category) pairs.

        Returns:
            Aggregate counts across all pairs.

        Raises:
            CacheNotConfiguredError: No database configured.
            CacheSaveError: The transaction failed; nothing was committed.
        """
        db = self._require_db()
        batches = list(batches)
        logger.info("Batch caching %d categories", len(batches))

        totals = UpsertCounts()
        now = time.time()
        try:
            with db.transaction() as conn:
                for records, category in batches:
                    counts = self._upsert_category(conn, records, category, now)
                    totals.inserted += counts.inserted
                    totals.updated += counts.updated
                    totals.deleted += counts.deleted
        except sqlite3.Error as e:
            logger.error("Failed to batch cache records: %s", e)
            raise CacheSaveError(e) from e

        logger.info(
            "Batch cache complete - %d new, %d updated, %d deleted",
            totals.inserted,
            totals.updated,
            totals.deleted,
        )
        return totals

    def upsert(self, records: Sequence[CacheableRecord], category: Category) -> UpsertCounts:
        """Upsert records for a single category (see upsert_batch)."""
        return self.upsert_batch([(records, category)])

    def _upsert_category(
        self,
        conn: sqlite3.Connection,
        records: Sequence[CacheableRecord],
        category: Category,
        now: float,
    ) -> UpsertCounts:
        counts = UpsertCounts()
        rows = conn.execute(
            "SELECT record_id FROM cached_records WHERE category = ?",
            (category.value,),
        ).fetchall()
        existing_ids = {row["record_id"] for row in rows}
        known_ids = set(existing_ids)
        seen_ids: set[str] = set()

        for position, record in enumerate(records):
            if record.id is None:
                continue
            payload = self._encode(record)
            if payload is None:
                continue

            record_id = str(record.id)
            seen_ids.add(record_id)

            if record_id in known_ids:
                conn.execute(
                    """
                    UPDATE cached_records
                    SET payload = ?, cached_at = ?, position = ?
                    WHERE record_id = ? AND category = ?
                    """,
                    (payload, now, position, record_id, category.value),
                )
                counts.updated += 1
            else:
                conn.execute(
                    """
                    INSERT INTO cached_records
                    (record_id, category, payload, cached_at, position)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (record_id, category.value, payload, now, position),
                )
                known_ids.add(record_id)
                counts.inserted += 1

        if category.policy is CachePolicy.REPLACE:
            stale_ids = existing_ids - seen_ids
            conn.executemany(
                "DELETE FROM cached_records WHERE record_id = ? AND category = ?",
                [(record_id, category.value) for record_id in stale_ids],
            )
            counts.deleted = len(stale_ids)

        logger.debug(
            "Cached %s: %d new, %d updated, %d deleted",
            category.value,
            counts.inserted,
            counts.updated,
            counts.deleted,
        )
        return counts

    def _encode(self, record: CacheableRecord) -> bytes | None:
        try:
            return json.dumps(record.to_dict()).encode("utf-8")
        except (TypeError, ValueError) as e:
            logger.warning("Skipping record %s that cannot be serialized: %s", record.id, e)
            return None

    # === Reads ===

    def fetch(self, category: Category) -> list[Any]:
        """Fetch cached records for a category, most recently cached first.

        Entries that fail to deserialize are skipped.

        Raises:
            CacheNotConfiguredError: No database configured.
            CacheFetchError: The query failed.
        """
        db = self._require_db()
        try:
            rows = db.fetchall(
                """
                SELECT record_id, payload FROM cached_records
                WHERE category = ?
                ORDER BY cached_at DESC, position ASC
                """,
                (category.value,),
            )
        except sqlite3.Error as e:
            logger.error("Failed to fetch cached records: %s", e)
            raise CacheFetchError(e) from e

        records = []
        for row in rows:
            try:
                records.append(self._decode(json.loads(row["payload"])))
            except (ValueError, KeyError, TypeError) as e:
                logger.warning("Skipping unreadable cache entry %s: %s", row["record_id"], e)

        logger.info("Fetched %d cached records for %s", len(records), category.value)
        return records

    def count(self, category: Category) -> int:
        """Number of cached entries for a category."""
        db = self._require_db()
        try:
            row = db.fetchone(
                "SELECT COUNT(*) AS n FROM cached_records WHERE category = ?",
                (category.value,),
            )
        except sqlite3.Error as e:
            raise CacheFetchError(e) from e
        return int(row["n"]) if row else 0

    # === Clearing ===

    def clear(self, category: Category) -> None:
        """Delete every entry of a category."""
        db = self._require_db()
        try:
            db.execute("DELETE FROM cached_records WHERE category = ?", (category.value,))
        except sqlite3.Error as e:
            logger.error("Failed to clear cache: %s", e)
            raise CacheSaveError(e) from e
        logger.info("Cleared cache for category: %s", category.value)

    def clear_all(self) -> None:
        """Delete every entry in every category."""
        db = self._require_db()
        try:
            db.execute("DELETE FROM cached_records")
        except sqlite3.Error as e:
            logger.error("Failed to clear cache: %s", e)
            raise CacheSaveError(e) from e
        logger.info("Cleared all cached records")
