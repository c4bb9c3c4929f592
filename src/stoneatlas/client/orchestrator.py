"""Offline-first facade over the API, the record cache and the offline queue.

This module provides:
- SyncOrchestrator: Per-category read/write paths with cache fallback
- FetchResult / CreateResult: Outcomes of reads and creates
- StoneError / StoneErrorKind: Last user-facing failure
- SyncSnapshot: Immutable view of the in-memory state for observers

Read path per category:

    offline ──► cache ──hit──► ok (source=cache)
                  └──miss──► failure
    online ──► network ──ok──► ok (source=network), optionally cached
                  └──fail──► cache ──hit──► ok (source=cache)
                                └──miss──► failure

Unauthorized failures are never masked by the cache: the session is gone
and the user has to sign in again.

Write path: the network is always tried first and the in-memory lists are
updated incrementally on success, then persisted to the cache. A create
made while offline (or while the server is unreachable) is saved to the
offline queue and sent on the next reconnect.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

from stoneatlas.client.api import (
    APIError,
    HTTPClient,
    NetworkUnreachableError,
    NotFoundError,
    UnauthorizedError,
)
from stoneatlas.client.auth import TokenStore
from stoneatlas.client.cache import CacheError, CacheStore
from stoneatlas.client.connectivity import ConnectivityMonitor
from stoneatlas.client.database import LocalDatabase
from stoneatlas.client.offline import OfflineQueue
from stoneatlas.core.config import SyncSettings
from stoneatlas.core.types import Category, CreateStoneRequest, Stone, StoneStats

if TYPE_CHECKING:
    import uuid
    from collections.abc import Callable, Sequence

    import httpx

    from stoneatlas.client.offline import PendingRecord
    from stoneatlas.core.config import ClientConfig

logger = logging.getLogger(__name__)


class AttachmentUploadError(Exception):
    """The attachment of a create could not be uploaded."""


class AttachmentUploader(Protocol):
    """Uploads binary attachments (photos) and returns their public URL."""

    def upload(self, data: bytes) -> str | None: ...


class StoneErrorKind(str, Enum):
    """Kinds of failure surfaced to the user."""

    NOT_AUTHENTICATED = "not_authenticated"
    STONE_NOT_FOUND = "stone_not_found"
    NETWORK_ERROR = "network_error"
    IMAGE_UPLOAD_FAILED = "image_upload_failed"
    UNKNOWN = "unknown"


_ERROR_MESSAGES = {
    StoneErrorKind.NOT_AUTHENTICATED: "You need to be logged in to manage stones.",
    StoneErrorKind.STONE_NOT_FOUND: "That stone could not be found. It may have been deleted.",
    StoneErrorKind.NETWORK_ERROR: "Trouble connecting to the server. Check your connection.",
    StoneErrorKind.IMAGE_UPLOAD_FAILED: "Failed to upload image.",
}


@dataclass(frozen=True)
class StoneError:
    """Last failure of a stone operation."""

    kind: StoneErrorKind
    message: str

    @classmethod
    def from_exception(cls, error: Exception) -> StoneError:
        if isinstance(error, UnauthorizedError):
            kind = StoneErrorKind.NOT_AUTHENTICATED
        elif isinstance(error, NotFoundError):
            kind = StoneErrorKind.STONE_NOT_FOUND
        elif isinstance(error, NetworkUnreachableError):
            kind = StoneErrorKind.NETWORK_ERROR
        elif isinstance(error, AttachmentUploadError):
            kind = StoneErrorKind.IMAGE_UPLOAD_FAILED
        else:
            return cls(StoneErrorKind.UNKNOWN, str(error) or type(error).__name__)
        return cls(kind, _ERROR_MESSAGES[kind])


class FetchSource(str, Enum):
    """Where the records of a read came from."""

    NETWORK = "network"
    CACHE = "cache"
    NONE = "none"


@dataclass(frozen=True)
class FetchResult:
    """Outcome of a category read."""

    ok: bool
    stones: list[Stone]
    source: FetchSource

    @classmethod
    def failure(cls) -> FetchResult:
        return cls(ok=False, stones=[], source=FetchSource.NONE)


@dataclass(frozen=True)
class CreateResult:
    """Outcome of a create.

    Attributes:
        stone: The created stone, when the server accepted it right away.
        queued: True when the create was saved for a later sync instead.
    """

    stone: Stone | None
    queued: bool = False

    @property
    def ok(self) -> bool:
        return self.stone is not None or self.queued


@dataclass(frozen=True)
class SyncSnapshot:
    """Immutable copy of the orchestrator state."""

    user_stones: tuple[Stone, ...]
    public_stones: tuple[Stone, ...]
    nearby_stones: tuple[Stone, ...]
    is_loading_user_stones: bool
    is_loading_public_stones: bool
    last_error: StoneError | None


class SyncOrchestrator:
    """Offline-first stone repository.

    Usage:
        orchestrator = SyncOrchestrator.from_config(config, settings)
        orchestrator.monitor.update(True)
        result = orchestrator.fetch_user_stones(should_cache=True)
        orchestrator.create_stone(CreateStoneRequest(is_public=True, lifting_level="chest"))
        orchestrator.close()
    """

    def __init__(
        self,
        api: HTTPClient,
        cache: CacheStore,
        monitor: ConnectivityMonitor,
        settings: SyncSettings | None = None,
        *,
        queue: OfflineQueue | None = None,
        database: LocalDatabase | None = None,
        uploader: AttachmentUploader | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            api: HTTP client (owns the auth session).
            cache: Record cache.
            monitor: Connectivity state.
            settings: Sync settings (retry bound, refresh throttle, radius).
            queue: Offline queue. When omitted, one is created that sends
                pending creates through this orchestrator.
            database: Backend for the queue created when queue is omitted.
            uploader: Uploads create attachments before the create call.
            clock: Monotonic time source for the refresh throttle.
        """
        self._api = api
        self._cache = cache
        self._monitor = monitor
        self._settings = settings or SyncSettings()
        self._uploader = uploader
        self._clock = clock

        self._queue = queue or OfflineQueue(
            monitor,
            self.perform_pending_create,
            database=database,
            max_retry_attempts=self._settings.max_retry_attempts,
        )

        self._lock = threading.RLock()
        self._stones: dict[Category, list[Stone]] = {category: [] for category in Category}
        self._loading: dict[Category, bool] = {category: False for category in Category}
        self._last_error: StoneError | None = None
        self._last_refresh: float | None = None
        self._listeners: list[Callable[[SyncSnapshot], None]] = []
        self._owned: list[Any] = []

        monitor.add_reconnect_listener(self._queue.schedule_drain)
        api.set_on_session_expired(self._handle_session_expired)

    @classmethod
    def from_config(
        cls,
        config: ClientConfig,
        settings: SyncSettings,
        *,
        monitor: ConnectivityMonitor | None = None,
        token_store: TokenStore | None = None,
        uploader: AttachmentUploader | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> SyncOrchestrator:
        """Build the full stack from configuration.

        The returned orchestrator owns its database and HTTP client and
        closes them in close().
        """
        database = LocalDatabase(settings.db_path)
        api = HTTPClient(
            config,
            token_store=token_store or TokenStore(config.keyring_service),
            transport=transport,
        )
        orchestrator = cls(
            api,
            CacheStore(database),
            monitor or ConnectivityMonitor(),
            settings,
            database=database,
            uploader=uploader,
        )
        orchestrator._owned = [api, database]
        return orchestrator

    def close(self) -> None:
        """Stop the offline queue worker and release owned resources."""
        self._queue.close()
        for resource in self._owned:
            resource.close()
        self._owned = []

    # === Accessors ===

    @property
    def api(self) -> HTTPClient:
        return self._api

    @property
    def cache(self) -> CacheStore:
        return self._cache

    @property
    def queue(self) -> OfflineQueue:
        return self._queue

    @property
    def monitor(self) -> ConnectivityMonitor:
        return self._monitor

    @property
    def user_stones(self) -> list[Stone]:
        with self._lock:
            return list(self._stones[Category.OWN])

    @property
    def public_stones(self) -> list[Stone]:
        with self._lock:
            return list(self._stones[Category.PUBLIC])

    @property
    def nearby_stones(self) -> list[Stone]:
        with self._lock:
            return list(self._stones[Category.NEARBY])

    @property
    def is_loading_user_stones(self) -> bool:
        with self._lock:
            return self._loading[Category.OWN]

    @property
    def is_loading_public_stones(self) -> bool:
        with self._lock:
            return self._loading[Category.PUBLIC]

    @property
    def last_error(self) -> StoneError | None:
        with self._lock:
            return self._last_error

    @property
    def pending_count(self) -> int:
        """Number of creates waiting in the offline queue."""
        return self._queue.count

    @property
    def user_stats(self) -> StoneStats:
        """Statistics over the user's stones."""
        stats = StoneStats(self.user_stones)
        logger.debug(
            "Generated user stats - Total: %d, Weight: %.1f, Heaviest: %.1f",
            stats.total_stones,
            stats.total_weight,
            stats.heaviest_stone,
        )
        return stats

    def clear_error(self) -> None:
        with self._lock:
            self._last_error = None
        self._notify()

    # === Observers ===

    def add_listener(self, callback: Callable[[SyncSnapshot], None]) -> None:
        """Register a callback receiving a snapshot after every state change."""
        with self._lock:
            self._listeners.append(callback)

    def snapshot(self) -> SyncSnapshot:
        with self._lock:
            return SyncSnapshot(
                user_stones=tuple(self._stones[Category.OWN]),
                public_stones=tuple(self._stones[Category.PUBLIC]),
                nearby_stones=tuple(self._stones[Category.NEARBY]),
                is_loading_user_stones=self._loading[Category.OWN],
                is_loading_public_stones=self._loading[Category.PUBLIC],
                last_error=self._last_error,
            )

    def _notify(self) -> None:
        with self._lock:
            listeners = list(self._listeners)
        if not listeners:
            return
        snapshot = self.snapshot()
        for listener in listeners:
            try:
                listener(snapshot)
            except Exception as e:
                logger.warning("State listener failed: %s", e)
                logger.debug("Full traceback:", exc_info=True)

    def _set_stones(self, category: Category, stones: Sequence[Stone]) -> None:
        with self._lock:
            self._stones[category] = list(stones)
        self._notify()

    def _set_loading(self, category: Category, loading: bool) -> None:
        with self._lock:
            self._loading[category] = loading
        self._notify()

    def _record_error(self, error: Exception) -> None:
        stone_error = StoneError.from_exception(error)
        if stone_error.kind is StoneErrorKind.UNKNOWN:
            logger.error("Stone operation failed - unknown error: %s", stone_error.message)
        else:
            logger.warning("Stone operation failed - %s", stone_error.kind.value)
        with self._lock:
            self._last_error = stone_error
        self._notify()

    # === Read path ===

    def fetch_category(
        self,
        category: Category,
        *,
        should_cache: bool = False,
        latitude: float | None = None,
        longitude: float | None = None,
        radius: float | None = None,
    ) -> FetchResult:
        """Read one category, falling back to the cache when needed.

        Args:
            category: Category to read.
            should_cache: Persist a network result to the cache.
            latitude: Search center (nearby only).
            longitude: Search center (nearby only).
            radius: Search radius in km (nearby only, defaults to settings).

        Returns:
            The records and where they came from. ok is False when neither
            the network nor the cache produced anything.

        Raises:
            ValueError: Nearby read without a search center.
        """
        if category is Category.NEARBY and (latitude is None or longitude is None):
            raise ValueError("latitude and longitude are required for nearby stones")
        if radius is None:
            radius = self._settings.nearby_radius_km

        logger.info("Fetching %s (cache: %s)", category.value, should_cache)
        with self._lock:
            self._last_error = None
        self._set_loading(category, True)
        try:
            if not self._monitor.is_connected:
                logger.info("Device is offline - loading %s from cache", category.value)
                return self._read_from_cache(category, offline=True)

            try:
                stones = self._fetch_remote(category, latitude, longitude, radius)
            except UnauthorizedError as e:
                logger.error("Failed to fetch %s: %s", category.value, e)
                self._record_error(e)
                return FetchResult.failure()
            except APIError as e:
                logger.error("Failed to fetch %s: %s", category.value, e)
                result = self._read_from_cache(category, offline=False)
                if not result.ok:
                    self._record_error(e)
                return result

            logger.info("Successfully fetched %d %s", len(stones), category.value)
            self._set_stones(category, stones)
            if should_cache:
                self._write_cache([(stones, category)])
            return FetchResult(ok=True, stones=stones, source=FetchSource.NETWORK)
        finally:
            self._set_loading(category, False)

    def _fetch_remote(
        self,
        category: Category,
        latitude: float | None,
        longitude: float | None,
        radius: float,
    ) -> list[Stone]:
        if category is Category.OWN:
            return self._api.list_user_stones()
        if category is Category.PUBLIC:
            return self._api.list_public_stones()
        assert latitude is not None and longitude is not None
        return self._api.list_nearby_stones(latitude, longitude, radius)

    def _read_from_cache(self, category: Category, *, offline: bool) -> FetchResult:
        try:
            cached = self._cache.fetch(category)
        except CacheError as e:
            logger.error("Cache read failed: %s", e)
            cached = []

        if not cached:
            if offline:
                logger.warning("Cache is empty - no %s available offline", category.value)
                self._record_error(NetworkUnreachableError("No cached data available offline"))
            return FetchResult.failure()

        logger.info("Using %d cached %s", len(cached), category.value)
        self._set_stones(category, cached)
        return FetchResult(ok=True, stones=cached, source=FetchSource.CACHE)

    def _write_cache(self, batches: list[tuple[list[Stone], Category]]) -> None:
        try:
            self._cache.upsert_batch(batches)
        except CacheError as e:
            logger.error("Failed to update cache: %s", e)

    def fetch_user_stones(self, should_cache: bool = False) -> FetchResult:
        """Read the signed-in user's stones."""
        return self.fetch_category(Category.OWN, should_cache=should_cache)

    def fetch_public_stones(self, should_cache: bool = False) -> FetchResult:
        """Read the public feed."""
        return self.fetch_category(Category.PUBLIC, should_cache=should_cache)

    def fetch_nearby_stones(
        self,
        latitude: float,
        longitude: float,
        radius: float | None = None,
        should_cache: bool = True,
    ) -> FetchResult:
        """Read stones around a point; cached results accumulate across reads."""
        return self.fetch_category(
            Category.NEARBY,
            should_cache=should_cache,
            latitude=latitude,
            longitude=longitude,
            radius=radius,
        )

    def load_from_cache(self) -> bool:
        """Fill the user and public lists from the cache only."""
        try:
            cached_user = self._cache.fetch(Category.OWN)
            cached_public = self._cache.fetch(Category.PUBLIC)
        except CacheError as e:
            logger.error("Failed to load from cache: %s", e)
            with self._lock:
                self._last_error = StoneError(StoneErrorKind.NETWORK_ERROR, str(e))
            self._notify()
            return False

        with self._lock:
            self._stones[Category.OWN] = cached_user
            self._stones[Category.PUBLIC] = cached_public
        self._notify()
        logger.info(
            "Loaded %d user stones and %d public stones from cache",
            len(cached_user),
            len(cached_public),
        )
        return True

    # === Refresh ===

    def refresh_if_needed(self) -> bool:
        """Refresh both feeds unless the last refresh is recent.

        Meant for foreground-resume triggers. Skipped while offline.

        Returns:
            Whether a refresh was performed and succeeded.
        """
        if not self._monitor.is_connected:
            logger.info("Skipping background refresh - offline")
            return False

        with self._lock:
            last_refresh = self._last_refresh
        now = self._clock()
        if last_refresh is not None and now - last_refresh < self._settings.refresh_throttle:
            logger.info("Skipping background refresh - last refresh %.0fs ago", now - last_refresh)
            return False

        logger.info("Background refresh needed")
        return self.refresh_all()

    def refresh_all(self) -> bool:
        """Refresh both feeds from the network now, updating the cache."""
        user_result = self.fetch_user_stones(should_cache=True)
        public_result = self.fetch_public_stones(should_cache=True)

        refreshed = FetchSource.NETWORK in (user_result.source, public_result.source)
        if refreshed:
            with self._lock:
                self._last_refresh = self._clock()
            logger.info("Refresh completed successfully")
        return refreshed

    # === Write path ===

    def create_stone(
        self,
        request: CreateStoneRequest,
        attachment: bytes | None = None,
    ) -> CreateResult:
        """Create a stone, or queue it when the server cannot be reached.

        Args:
            request: Stone data.
            attachment: Optional photo uploaded before the create.
        """
        logger.info("Creating stone (public: %s)", request.is_public)
        with self._lock:
            self._last_error = None

        if not self._monitor.is_connected:
            logger.info("Device is offline - saving stone for later sync")
            return self._enqueue_create(request, attachment)

        try:
            stone = self._create_remote(request, attachment)
        except NetworkUnreachableError as e:
            logger.warning("Server unreachable (%s) - saving stone for later sync", e)
            return self._enqueue_create(request, attachment)
        except (APIError, AttachmentUploadError) as e:
            logger.error("Failed to create stone: %s", e)
            self._record_error(e)
            return CreateResult(stone=None)

        return CreateResult(stone=stone)

    def perform_pending_create(
        self,
        request: CreateStoneRequest,
        attachment: bytes | None,
    ) -> bool:
        """Send a queued create. Used as the offline queue's performer."""
        try:
            self._create_remote(request, attachment)
        except (APIError, AttachmentUploadError) as e:
            logger.warning("Pending create failed: %s", e)
            self._record_error(e)
            return False
        return True

    def _enqueue_create(self, request: CreateStoneRequest, attachment: bytes | None) -> CreateResult:
        if self._queue.enqueue(request.to_json(), attachment):
            return CreateResult(stone=None, queued=True)
        with self._lock:
            self._last_error = StoneError(StoneErrorKind.UNKNOWN, "Failed to save stone for later sync")
        self._notify()
        return CreateResult(stone=None)

    def _create_remote(self, request: CreateStoneRequest, attachment: bytes | None) -> Stone:
        if attachment is not None:
            if self._uploader is None:
                logger.warning("No attachment uploader configured, creating stone without image")
            else:
                logger.info("Uploading image for stone (size: %d bytes)", len(attachment))
                image_url = self._uploader.upload(attachment)
                if image_url is None:
                    raise AttachmentUploadError("Failed to upload image")
                request = replace(request, image_url=image_url)

        stone = self._api.create_stone(request)
        logger.info("Successfully created stone with ID: %s", stone.id)

        with self._lock:
            self._stones[Category.OWN].insert(0, stone)
            if stone.is_public:
                self._stones[Category.PUBLIC].insert(0, stone)
            batches = [(list(self._stones[Category.OWN]), Category.OWN)]
            if stone.is_public:
                batches.append((list(self._stones[Category.PUBLIC]), Category.PUBLIC))
        self._notify()
        self._write_cache(batches)
        return stone

    def update_stone(self, stone_id: uuid.UUID, request: CreateStoneRequest) -> Stone | None:
        """Update a stone and move it in or out of the public list if needed."""
        logger.info("Updating stone with ID: %s", stone_id)
        try:
            stone = self._api.update_stone(stone_id, request)
        except APIError as e:
            logger.error("Failed to update stone %s: %s", stone_id, e)
            self._record_error(e)
            return None

        with self._lock:
            self._replace_in(Category.OWN, stone_id, stone)
            self._replace_in(Category.NEARBY, stone_id, stone)

            public = self._stones[Category.PUBLIC]
            index = _index_of(public, stone_id)
            if index is not None:
                if stone.is_public:
                    public[index] = stone
                else:
                    del public[index]
                    logger.debug("Removed stone from public stones (now private)")
            elif stone.is_public:
                public.insert(0, stone)
                logger.debug("Added updated stone to public stones")

            batches = [
                (list(self._stones[Category.OWN]), Category.OWN),
                (list(public), Category.PUBLIC),
            ]
        self._notify()
        self._write_cache(batches)
        return stone

    def _replace_in(self, category: Category, stone_id: uuid.UUID, stone: Stone) -> None:
        stones = self._stones[category]
        index = _index_of(stones, stone_id)
        if index is not None:
            stones[index] = stone

    def delete_stone(self, stone_id: uuid.UUID) -> bool:
        """Delete a stone and drop it from the in-memory lists and cache."""
        logger.info("Deleting stone with ID: %s", stone_id)
        try:
            self._api.delete_stone(stone_id)
        except APIError as e:
            logger.error("Failed to delete stone %s: %s", stone_id, e)
            self._record_error(e)
            return False

        with self._lock:
            for category in Category:
                self._stones[category] = [s for s in self._stones[category] if s.id != stone_id]
            batches = [
                (list(self._stones[Category.OWN]), Category.OWN),
                (list(self._stones[Category.PUBLIC]), Category.PUBLIC),
            ]
        self._notify()
        self._write_cache(batches)
        return True

    # === Session ===

    def logout(self) -> None:
        """Sign out: drop in-memory state, cache, pending creates and session.

        Pending creates belong to the signed-out user and are discarded so
        they are never sent under another account.
        """
        logger.info("Logging out")
        self._clear_local_data()
        self._api.clear_session()

    def _handle_session_expired(self) -> None:
        logger.warning("Session expired - clearing local data")
        self._clear_local_data()

    def _clear_local_data(self) -> None:
        with self._lock:
            for category in Category:
                self._stones[category] = []
                self._loading[category] = False
            self._last_error = None
            self._last_refresh = None
        logger.info("Cleared all in-memory stone data")
        self._notify()

        try:
            self._cache.clear_all()
        except CacheError as e:
            logger.error("Failed to clear cache: %s", e)
        self._queue.clear()


def _index_of(stones: Sequence[Stone], stone_id: uuid.UUID) -> int | None:
    for index, stone in enumerate(stones):
        if stone.id == stone_id:
            return index
    return None
