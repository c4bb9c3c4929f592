"""Tests for the offline-first orchestrator."""

from __future__ import annotations

import json
import time
import uuid
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import httpx
import pytest

from stoneatlas.client.api import HTTPClient
from stoneatlas.client.auth import AuthSession
from stoneatlas.client.cache import CacheStore
from stoneatlas.client.connectivity import ConnectivityMonitor
from stoneatlas.client.database import LocalDatabase
from stoneatlas.client.orchestrator import (
    FetchSource,
    StoneErrorKind,
    SyncOrchestrator,
    SyncSnapshot,
)
from stoneatlas.core.config import ClientConfig, SyncSettings
from stoneatlas.core.types import Category, CreateStoneRequest, Stone, StoneUser

USER = StoneUser(id=uuid.UUID("00000000-0000-0000-0000-000000000001"), username="atlas")


def stone_payload(stone_id: uuid.UUID, name: str = "stone", is_public: bool = False) -> dict[str, Any]:
    """API representation of a stone."""
    return {
        "id": str(stone_id),
        "name": name,
        "weight": 60.0,
        "isPublic": is_public,
        "liftingLevel": "chest",
        "user": {"id": str(USER.id), "username": USER.username},
    }


def make_stone(name: str, is_public: bool = False, stone_id: uuid.UUID | None = None) -> Stone:
    """Create a Stone for testing."""
    return Stone.from_dict(stone_payload(stone_id or uuid.uuid4(), name, is_public))


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class FakeUploader:
    """Attachment uploader returning a fixed URL."""

    def __init__(self, url: str | None = "https://img.example/photo.jpg") -> None:
        self.url = url
        self.uploads: list[bytes] = []

    def upload(self, data: bytes) -> str | None:
        self.uploads.append(data)
        return self.url


@pytest.fixture
def database(tmp_path: Path) -> Iterator[LocalDatabase]:
    db = LocalDatabase(tmp_path / "cache.db")
    yield db
    db.close()


@pytest.fixture
def monitor() -> ConnectivityMonitor:
    monitor = ConnectivityMonitor()
    monitor.update(True)
    return monitor


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def uploader() -> FakeUploader:
    return FakeUploader()


@pytest.fixture
def orchestrator(
    tmp_path: Path,
    database: LocalDatabase,
    monitor: ConnectivityMonitor,
    clock: FakeClock,
    uploader: FakeUploader,
) -> Iterator[SyncOrchestrator]:
    api = HTTPClient(ClientConfig(server_url="http://test"))
    api.set_session(AuthSession("access", "refresh"))
    instance = SyncOrchestrator(
        api,
        CacheStore(database),
        monitor,
        SyncSettings(db_path=tmp_path / "cache.db"),
        database=database,
        uploader=uploader,
        clock=clock,
    )
    yield instance
    instance.close()
    api.close()


class TestReadPath:
    """Tests for category reads and cache fallback."""

    def test_online_fetch_returns_network_result(self, httpx_mock, orchestrator: SyncOrchestrator) -> None:  # type: ignore[no-untyped-def]
        """Should return and cache the network result."""
        stone_id = uuid.uuid4()
        httpx_mock.add_response(method="GET", url="http://test/stones", json=[stone_payload(stone_id, "A")])

        result = orchestrator.fetch_user_stones(should_cache=True)

        assert result.ok is True
        assert result.source is FetchSource.NETWORK
        assert [s.id for s in orchestrator.user_stones] == [stone_id]
        assert [s.id for s in orchestrator.cache.fetch(Category.OWN)] == [stone_id]

    def test_should_cache_false_leaves_cache(self, httpx_mock, orchestrator: SyncOrchestrator) -> None:  # type: ignore[no-untyped-def]
        """Should not write the cache unless asked."""
        httpx_mock.add_response(method="GET", url="http://test/stones/public", json=[stone_payload(uuid.uuid4())])

        assert orchestrator.fetch_public_stones().ok is True
        assert orchestrator.cache.count(Category.PUBLIC) == 0

    def test_network_failure_falls_back_to_cache(self, httpx_mock, orchestrator: SyncOrchestrator) -> None:  # type: ignore[no-untyped-def]
        """Should report success with cached records when the network fails."""
        cached = make_stone("cached")
        orchestrator.cache.upsert([cached], Category.OWN)
        httpx_mock.add_exception(httpx.ConnectError("refused"))

        result = orchestrator.fetch_user_stones()

        assert result.ok is True
        assert result.source is FetchSource.CACHE
        assert result.stones == [cached]
        assert orchestrator.user_stones == [cached]
        assert orchestrator.last_error is None

    def test_server_error_falls_back_to_cache(self, httpx_mock, orchestrator: SyncOrchestrator) -> None:  # type: ignore[no-untyped-def]
        """Should also fall back on server errors."""
        cached = make_stone("cached", is_public=True)
        orchestrator.cache.upsert([cached], Category.PUBLIC)
        httpx_mock.add_response(method="GET", url="http://test/stones/public", status_code=500)

        result = orchestrator.fetch_public_stones()

        assert result.ok is True
        assert result.stones == [cached]

    def test_malformed_response_falls_back_to_cache(self, httpx_mock, orchestrator: SyncOrchestrator) -> None:  # type: ignore[no-untyped-def]
        """Should use the cache when the server sends an undecodable stone."""
        cached = make_stone("cached")
        orchestrator.cache.upsert([cached], Category.OWN)
        payload = stone_payload(uuid.uuid4())
        payload["user"] = None
        httpx_mock.add_response(method="GET", url="http://test/stones", json=[payload])

        result = orchestrator.fetch_user_stones()

        assert result.source is FetchSource.CACHE
        assert result.stones == [cached]

    def test_offline_read_skips_corrupt_entry(
        self, orchestrator: SyncOrchestrator, monitor: ConnectivityMonitor, database: LocalDatabase
    ) -> None:
        """Should serve the readable cached stones when one entry is corrupt."""
        cached = make_stone("cached")
        orchestrator.cache.upsert([cached], Category.OWN)
        database.execute(
            "INSERT INTO cached_records (record_id, category, payload, cached_at, position) VALUES (?, ?, ?, 0, 0)",
            ("bad", Category.OWN.value, b'{"isPublic": true, "liftingLevel": "chest", "user": null}'),
        )
        monitor.update(False)

        result = orchestrator.fetch_user_stones()

        assert result.ok is True
        assert result.stones == [cached]

    def test_network_failure_with_empty_cache(self, httpx_mock, orchestrator: SyncOrchestrator) -> None:  # type: ignore[no-untyped-def]
        """Should report failure when every source is exhausted."""
        httpx_mock.add_exception(httpx.ConnectError("refused"))

        result = orchestrator.fetch_user_stones()

        assert result.ok is False
        assert result.source is FetchSource.NONE
        assert orchestrator.last_error is not None
        assert orchestrator.last_error.kind is StoneErrorKind.NETWORK_ERROR

    def test_offline_reads_cache(self, httpx_mock, orchestrator: SyncOrchestrator, monitor: ConnectivityMonitor) -> None:  # type: ignore[no-untyped-def]
        """Should serve the cache without any network call while offline."""
        cached = make_stone("cached")
        orchestrator.cache.upsert([cached], Category.OWN)
        monitor.update(False)

        result = orchestrator.fetch_user_stones()

        assert result.ok is True
        assert result.source is FetchSource.CACHE
        assert httpx_mock.get_requests() == []

    def test_offline_empty_cache_is_failure(self, httpx_mock, orchestrator: SyncOrchestrator, monitor: ConnectivityMonitor) -> None:  # type: ignore[no-untyped-def]
        """Should not report an empty success while offline."""
        monitor.update(False)

        result = orchestrator.fetch_nearby_stones(45.0, 5.0)

        assert result.ok is False
        assert httpx_mock.get_requests() == []

    def test_unauthorized_is_not_masked(self, httpx_mock, orchestrator: SyncOrchestrator) -> None:  # type: ignore[no-untyped-def]
        """Should fail and clear local data when the session cannot be recovered."""
        orchestrator.api.set_session(AuthSession("access"))
        orchestrator.cache.upsert([make_stone("cached")], Category.OWN)
        httpx_mock.add_response(method="GET", url="http://test/stones", status_code=401)

        result = orchestrator.fetch_user_stones()

        assert result.ok is False
        assert orchestrator.last_error is not None
        assert orchestrator.last_error.kind is StoneErrorKind.NOT_AUTHENTICATED
        assert orchestrator.api.is_authenticated is False
        assert orchestrator.cache.count(Category.OWN) == 0

    def test_nearby_requires_center(self, orchestrator: SyncOrchestrator) -> None:
        """Should reject a nearby read without coordinates."""
        with pytest.raises(ValueError):
            orchestrator.fetch_category(Category.NEARBY)

    def test_nearby_accumulates(self, httpx_mock, orchestrator: SyncOrchestrator) -> None:  # type: ignore[no-untyped-def]
        """Should keep earlier nearby results in the cache."""
        first, second = uuid.uuid4(), uuid.uuid4()
        httpx_mock.add_response(
            method="GET",
            url=httpx.URL("http://test/stones/nearby", params={"lat": 1.0, "lon": 2.0, "radius": 10.0}),
            json=[stone_payload(first)],
        )
        httpx_mock.add_response(
            method="GET",
            url=httpx.URL("http://test/stones/nearby", params={"lat": 3.0, "lon": 4.0, "radius": 5.0}),
            json=[stone_payload(second)],
        )

        orchestrator.fetch_nearby_stones(1.0, 2.0)
        result = orchestrator.fetch_nearby_stones(3.0, 4.0, radius=5.0)

        assert [s.id for s in result.stones] == [second]
        assert {s.id for s in orchestrator.cache.fetch(Category.NEARBY)} == {first, second}

    def test_load_from_cache(self, orchestrator: SyncOrchestrator) -> None:
        """Should fill user and public lists from the cache."""
        own, public = make_stone("own"), make_stone("public", is_public=True)
        orchestrator.cache.upsert_batch([([own], Category.OWN), ([public], Category.PUBLIC)])

        assert orchestrator.load_from_cache() is True
        assert orchestrator.user_stones == [own]
        assert orchestrator.public_stones == [public]

    def test_listeners_receive_snapshots(self, httpx_mock, orchestrator: SyncOrchestrator) -> None:  # type: ignore[no-untyped-def]
        """Should publish loading and result states."""
        snapshots: list[SyncSnapshot] = []
        orchestrator.add_listener(snapshots.append)
        httpx_mock.add_response(method="GET", url="http://test/stones", json=[stone_payload(uuid.uuid4())])

        orchestrator.fetch_user_stones()

        assert any(s.is_loading_user_stones for s in snapshots)
        assert snapshots[-1].is_loading_user_stones is False
        assert len(snapshots[-1].user_stones) == 1


class TestWritePath:
    """Tests for create, update and delete."""

    def test_create_online(self, httpx_mock, orchestrator: SyncOrchestrator) -> None:  # type: ignore[no-untyped-def]
        """Should insert the created stone at the front of both lists."""
        existing = make_stone("existing", is_public=True)
        orchestrator.cache.upsert_batch([([existing], Category.OWN), ([existing], Category.PUBLIC)])
        orchestrator.load_from_cache()
        new_id = uuid.uuid4()
        httpx_mock.add_response(method="POST", url="http://test/stones", json=stone_payload(new_id, "new", True))

        result = orchestrator.create_stone(CreateStoneRequest(is_public=True, lifting_level="chest"))

        assert result.ok is True
        assert result.queued is False
        assert [s.id for s in orchestrator.user_stones] == [new_id, existing.id]
        assert [s.id for s in orchestrator.public_stones] == [new_id, existing.id]
        assert {s.id for s in orchestrator.cache.fetch(Category.PUBLIC)} == {new_id, existing.id}

    def test_create_uploads_attachment_first(  # type: ignore[no-untyped-def]
        self, httpx_mock, orchestrator: SyncOrchestrator, uploader: FakeUploader
    ) -> None:
        """Should send the uploaded image URL with the create."""
        httpx_mock.add_response(method="POST", url="http://test/stones", json=stone_payload(uuid.uuid4()))

        orchestrator.create_stone(CreateStoneRequest(is_public=False, lifting_level="lap"), b"jpeg")

        assert uploader.uploads == [b"jpeg"]
        body = json.loads(httpx_mock.get_request().content)
        assert body["imageUrl"] == "https://img.example/photo.jpg"

    def test_create_fails_when_upload_fails(  # type: ignore[no-untyped-def]
        self, httpx_mock, orchestrator: SyncOrchestrator, uploader: FakeUploader
    ) -> None:
        """Should not create the stone without its image."""
        uploader.url = None

        result = orchestrator.create_stone(CreateStoneRequest(is_public=False, lifting_level="lap"), b"jpeg")

        assert result.ok is False
        assert orchestrator.last_error is not None
        assert orchestrator.last_error.kind is StoneErrorKind.IMAGE_UPLOAD_FAILED
        assert httpx_mock.get_requests() == []

    def test_create_offline_is_queued(  # type: ignore[no-untyped-def]
        self, httpx_mock, orchestrator: SyncOrchestrator, monitor: ConnectivityMonitor
    ) -> None:
        """Should queue while offline and send the create on reconnect."""
        monitor.update(False)
        request = CreateStoneRequest(is_public=False, lifting_level="lap", name="R1")

        result = orchestrator.create_stone(request)
        orchestrator.queue.join(timeout=5)

        assert result.queued is True
        assert orchestrator.pending_count == 1
        assert orchestrator.cache.count(Category.OWN) == 0
        assert httpx_mock.get_requests() == []

        new_id = uuid.uuid4()
        httpx_mock.add_response(method="POST", url="http://test/stones", json=stone_payload(new_id, "R1"))
        monitor.update(True)
        orchestrator.queue.join(timeout=5)

        assert orchestrator.pending_count == 0
        assert [s.id for s in orchestrator.user_stones] == [new_id]
        assert json.loads(httpx_mock.get_request().content)["name"] == "R1"

    def test_create_unreachable_is_queued(self, httpx_mock, orchestrator: SyncOrchestrator) -> None:  # type: ignore[no-untyped-def]
        """Should queue when the server cannot be reached."""
        httpx_mock.add_exception(
            httpx.ConnectError("refused"),
            method="POST",
            url="http://test/stones",
            is_reusable=True,
        )

        result = orchestrator.create_stone(CreateStoneRequest(is_public=False, lifting_level="lap"))
        orchestrator.queue.join(timeout=5)

        assert result.queued is True
        pending = orchestrator.queue.list_pending()
        assert len(pending) == 1
        assert pending[0].sync_attempts == 1

    def test_create_rejected(self, httpx_mock, orchestrator: SyncOrchestrator) -> None:  # type: ignore[no-untyped-def]
        """Should not queue a create the server rejected."""
        httpx_mock.add_response(method="POST", url="http://test/stones", status_code=400, json={"reason": "bad"})

        result = orchestrator.create_stone(CreateStoneRequest(is_public=False, lifting_level="lap"))

        assert result.ok is False
        assert orchestrator.pending_count == 0
        assert orchestrator.last_error is not None
        assert orchestrator.last_error.kind is StoneErrorKind.UNKNOWN

    def test_update_moves_out_of_public(self, httpx_mock, orchestrator: SyncOrchestrator) -> None:  # type: ignore[no-untyped-def]
        """Should drop a stone from the public list when it becomes private."""
        stone = make_stone("flip", is_public=True)
        orchestrator.cache.upsert_batch([([stone], Category.OWN), ([stone], Category.PUBLIC)])
        orchestrator.load_from_cache()
        assert stone.id is not None
        httpx_mock.add_response(
            method="PUT",
            url=f"http://test/stones/{stone.id}",
            json=stone_payload(stone.id, "flip", is_public=False),
        )

        updated = orchestrator.update_stone(stone.id, CreateStoneRequest(is_public=False, lifting_level="chest"))

        assert updated is not None
        assert orchestrator.user_stones[0].is_public is False
        assert orchestrator.public_stones == []
        assert orchestrator.cache.fetch(Category.PUBLIC) == []

    def test_update_moves_into_public(self, httpx_mock, orchestrator: SyncOrchestrator) -> None:  # type: ignore[no-untyped-def]
        """Should add a stone to the public list when it becomes public."""
        stone = make_stone("flip")
        orchestrator.cache.upsert([stone], Category.OWN)
        orchestrator.load_from_cache()
        assert stone.id is not None
        httpx_mock.add_response(
            method="PUT",
            url=f"http://test/stones/{stone.id}",
            json=stone_payload(stone.id, "flip", is_public=True),
        )

        orchestrator.update_stone(stone.id, CreateStoneRequest(is_public=True, lifting_level="chest"))

        assert [s.id for s in orchestrator.public_stones] == [stone.id]

    def test_update_not_found(self, httpx_mock, orchestrator: SyncOrchestrator) -> None:  # type: ignore[no-untyped-def]
        """Should report a missing stone."""
        stone_id = uuid.uuid4()
        httpx_mock.add_response(method="PUT", url=f"http://test/stones/{stone_id}", status_code=404)

        assert orchestrator.update_stone(stone_id, CreateStoneRequest(is_public=False, lifting_level="lap")) is None
        assert orchestrator.last_error is not None
        assert orchestrator.last_error.kind is StoneErrorKind.STONE_NOT_FOUND

    def test_delete(self, httpx_mock, orchestrator: SyncOrchestrator) -> None:  # type: ignore[no-untyped-def]
        """Should remove the stone from every list and the cache."""
        keep, gone = make_stone("keep", is_public=True), make_stone("gone", is_public=True)
        orchestrator.cache.upsert_batch([([keep, gone], Category.OWN), ([keep, gone], Category.PUBLIC)])
        orchestrator.load_from_cache()
        assert gone.id is not None
        httpx_mock.add_response(method="DELETE", url=f"http://test/stones/{gone.id}", status_code=204)

        assert orchestrator.delete_stone(gone.id) is True

        assert orchestrator.user_stones == [keep]
        assert orchestrator.public_stones == [keep]
        assert orchestrator.cache.fetch(Category.OWN) == [keep]


class TestRefresh:
    """Tests for throttled and explicit refreshes."""

    def add_feed_responses(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(method="GET", url="http://test/stones", json=[stone_payload(uuid.uuid4())])
        httpx_mock.add_response(method="GET", url="http://test/stones/public", json=[])

    def test_refresh_throttled(self, httpx_mock, orchestrator: SyncOrchestrator, clock: FakeClock) -> None:  # type: ignore[no-untyped-def]
        """Should refresh at most once per throttle interval."""
        self.add_feed_responses(httpx_mock)
        assert orchestrator.refresh_if_needed() is True
        assert orchestrator.cache.count(Category.OWN) == 1

        clock.now += 60
        assert orchestrator.refresh_if_needed() is False
        assert len(httpx_mock.get_requests()) == 2

        clock.now += 300
        self.add_feed_responses(httpx_mock)
        assert orchestrator.refresh_if_needed() is True
        assert len(httpx_mock.get_requests()) == 4

    def test_refresh_all_bypasses_throttle(self, httpx_mock, orchestrator: SyncOrchestrator) -> None:  # type: ignore[no-untyped-def]
        """Should always hit the network for explicit refreshes."""
        self.add_feed_responses(httpx_mock)
        self.add_feed_responses(httpx_mock)

        assert orchestrator.refresh_all() is True
        assert orchestrator.refresh_all() is True
        assert len(httpx_mock.get_requests()) == 4

    def test_refresh_skipped_offline(self, httpx_mock, orchestrator: SyncOrchestrator, monitor: ConnectivityMonitor) -> None:  # type: ignore[no-untyped-def]
        """Should not refresh while offline."""
        monitor.update(False)
        assert orchestrator.refresh_if_needed() is False
        assert httpx_mock.get_requests() == []

    def test_failed_refresh_not_throttled(self, httpx_mock, orchestrator: SyncOrchestrator) -> None:  # type: ignore[no-untyped-def]
        """Should retry on the next trigger when nothing came from the network."""
        httpx_mock.add_exception(httpx.ConnectError("refused"), is_reusable=True)

        assert orchestrator.refresh_if_needed() is False
        assert orchestrator.refresh_if_needed() is False
        assert len(httpx_mock.get_requests()) == 4


class TestSession:
    """Tests for logout, session expiry and stats."""

    def test_logout_clears_everything(self, orchestrator: SyncOrchestrator, monitor: ConnectivityMonitor) -> None:
        """Should clear memory, cache, pending creates and the session."""
        orchestrator.cache.upsert([make_stone("cached")], Category.OWN)
        orchestrator.load_from_cache()
        monitor.update(False)
        orchestrator.create_stone(CreateStoneRequest(is_public=False, lifting_level="lap"))
        orchestrator.queue.join(timeout=5)

        orchestrator.logout()

        assert orchestrator.user_stones == []
        assert orchestrator.cache.count(Category.OWN) == 0
        assert orchestrator.pending_count == 0
        assert orchestrator.api.is_authenticated is False

    def seed_local_data(self, orchestrator: SyncOrchestrator, database: LocalDatabase) -> None:
        orchestrator.cache.upsert([make_stone("cached")], Category.OWN)
        orchestrator.load_from_cache()
        database.execute(
            "INSERT INTO pending_records (id, request_payload, created_at) VALUES (?, ?, ?)",
            ("p1", CreateStoneRequest(is_public=False, lifting_level="lap").to_json(), time.time()),
        )
        assert orchestrator.pending_count == 1

    def test_rejected_refresh_clears_local_data(  # type: ignore[no-untyped-def]
        self, httpx_mock, orchestrator: SyncOrchestrator, database: LocalDatabase
    ) -> None:
        """Should drop cache, pending creates and session when the refresh token is rejected."""
        self.seed_local_data(orchestrator, database)
        httpx_mock.add_response(method="GET", url="http://test/stones", status_code=401)
        httpx_mock.add_response(method="POST", url="http://test/auth/refresh", status_code=401)

        result = orchestrator.fetch_user_stones()

        assert result.ok is False
        assert orchestrator.user_stones == []
        assert orchestrator.cache.count(Category.OWN) == 0
        assert orchestrator.pending_count == 0
        assert orchestrator.api.is_authenticated is False
        assert orchestrator.last_error is not None
        assert orchestrator.last_error.kind is StoneErrorKind.NOT_AUTHENTICATED

    def test_second_unauthorized_clears_local_data(  # type: ignore[no-untyped-def]
        self, httpx_mock, orchestrator: SyncOrchestrator, database: LocalDatabase
    ) -> None:
        """Should treat a 401 after a successful refresh as an expired session."""
        self.seed_local_data(orchestrator, database)
        httpx_mock.add_response(method="GET", url="http://test/stones", status_code=401)
        httpx_mock.add_response(
            method="POST",
            url="http://test/auth/refresh",
            json={"token": "new-access", "refreshToken": "new-refresh"},
        )
        httpx_mock.add_response(method="GET", url="http://test/stones", status_code=401)

        assert orchestrator.fetch_user_stones().ok is False

        assert orchestrator.cache.count(Category.OWN) == 0
        assert orchestrator.pending_count == 0
        assert orchestrator.api.is_authenticated is False
        assert len(httpx_mock.get_requests(url="http://test/auth/refresh")) == 1

    def test_user_stats(self, orchestrator: SyncOrchestrator) -> None:
        """Should summarize the user's stones."""
        orchestrator.cache.upsert([make_stone("a"), make_stone("b", is_public=True)], Category.OWN)
        orchestrator.load_from_cache()

        stats = orchestrator.user_stats

        assert stats.total_stones == 2
        assert stats.total_weight == 120.0
        assert stats.public_stones == 1

    def test_from_config_builds_stack(self, tmp_path: Path) -> None:
        """Should wire database, cache and queue from settings."""
        settings = SyncSettings(db_path=tmp_path / "data" / "cache.db")
        orchestrator = SyncOrchestrator.from_config(
            ClientConfig(server_url="http://test"),
            settings,
            token_store=_NullTokenStore(),
        )
        try:
            assert settings.db_path.exists()
            assert orchestrator.queue.max_retry_attempts == 5
            assert orchestrator.pending_count == 0
        finally:
            orchestrator.close()


class _NullTokenStore:
    """Token store that keeps nothing."""

    def load(self) -> None:
        return None

    def save(self, session: AuthSession) -> None:
        pass

    def clear(self) -> None:
        pass
