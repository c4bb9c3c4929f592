"""Offline-first sync client for the StoneAtlas API.

Architecture:
    ConnectivityMonitor ──reconnect──► OfflineQueue ──performer──┐
                                                                 ▼
    HTTPClient (TokenRefreshCoordinator) ◄──── SyncOrchestrator ───► CacheStore
                                                                 │
                                 LocalDatabase (SQLite) ◄────────┘

Components:
- **ConnectivityMonitor / HealthProbe**: Reachability state and reconnect events
- **HTTPClient**: API calls with single-flight token refresh
- **CacheStore**: Category-aware record cache (replace or accumulate)
- **OfflineQueue**: Durable queue of creates made while offline
- **SyncOrchestrator**: Read/write paths with cache fallback and queueing
"""

from stoneatlas.client.api import (
    APIError,
    BadRequestError,
    HTTPClient,
    NetworkUnreachableError,
    NotAuthenticatedError,
    NotFoundError,
    ServerError,
    UnauthorizedError,
)
from stoneatlas.client.auth import AuthSession, TokenRefreshCoordinator, TokenStore
from stoneatlas.client.cache import (
    CacheError,
    CacheFetchError,
    CacheNotConfiguredError,
    CacheSaveError,
    CacheStore,
    UpsertCounts,
)
from stoneatlas.client.connectivity import (
    ConnectivityMonitor,
    ConnectivityState,
    HealthProbe,
    Transport,
)
from stoneatlas.client.database import LocalDatabase
from stoneatlas.client.offline import (
    DrainReport,
    OfflineQueue,
    PendingRecord,
    QueueNotConfiguredError,
)
from stoneatlas.client.orchestrator import (
    AttachmentUploader,
    AttachmentUploadError,
    CreateResult,
    FetchResult,
    FetchSource,
    StoneError,
    StoneErrorKind,
    SyncOrchestrator,
    SyncSnapshot,
)

__all__ = [
    # API
    "APIError",
    "BadRequestError",
    "HTTPClient",
    "NetworkUnreachableError",
    "NotAuthenticatedError",
    "NotFoundError",
    "ServerError",
    "UnauthorizedError",
    # Auth
    "AuthSession",
    "TokenRefreshCoordinator",
    "TokenStore",
    # Cache
    "CacheError",
    "CacheFetchError",
    "CacheNotConfiguredError",
    "CacheSaveError",
    "CacheStore",
    "UpsertCounts",
    # Connectivity
    "ConnectivityMonitor",
    "ConnectivityState",
    "HealthProbe",
    "Transport",
    # Persistence
    "LocalDatabase",
    # Offline queue
    "DrainReport",
    "OfflineQueue",
    "PendingRecord",
    "QueueNotConfiguredError",
    # Orchestrator
    "AttachmentUploader",
    "AttachmentUploadError",
    "CreateResult",
    "FetchResult",
    "FetchSource",
    "StoneError",
    "StoneErrorKind",
    "SyncOrchestrator",
    "SyncSnapshot",
]
