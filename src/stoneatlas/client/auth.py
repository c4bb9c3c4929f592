"""Authentication session handling for the HTTP client.

This module provides:
- AuthSession: The access/refresh token pair
- TokenStore: OS keyring persistence for the session
- TokenRefreshCoordinator: Single-flight access token refresh

Single-flight refresh:
    Concurrent requests that each receive a 401 converge on one refresh
    call. The first caller creates a shared Future and performs the
    refresh; callers arriving while it is pending wait on the same Future.
    The Future is forgotten as soon as it resolves so the next 401 can
    start a fresh refresh.

    caller A ─401─► refresh() ──► owner: POST /auth/refresh ──► set_result
    caller B ─401─► refresh() ──► waits on the same Future ───────┘
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from typing import TYPE_CHECKING

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

KEYRING_ACCESS_TOKEN = "access_token"
KEYRING_REFRESH_TOKEN = "refresh_token"


@dataclass(frozen=True)
class AuthSession:
    """Access/refresh token pair held by the HTTP client."""

    access_token: str
    refresh_token: str | None = None

    def __repr__(self) -> str:
        """Never leak tokens into logs."""
        return f"AuthSession(refreshable={self.refresh_token is not None})"


class TokenStore:
    """Persists the session in the OS keyring.

    Keyring failures are logged and otherwise ignored: the session keeps
    working in memory, it just won't survive a restart.
    """

    def __init__(self, service: str = "stoneatlas") -> None:
        self._service = service

    def load(self) -> AuthSession | None:
        """Load the stored session, if any."""
        try:
            access_token = keyring.get_password(self._service, KEYRING_ACCESS_TOKEN)
            refresh_token = keyring.get_password(self._service, KEYRING_REFRESH_TOKEN)
        except KeyringError as e:
            logger.warning("Could not read tokens from keyring: %s", e)
            return None

        if not access_token:
            return None
        return AuthSession(access_token=access_token, refresh_token=refresh_token)

    def save(self, session: AuthSession) -> None:
        """Store the session, replacing any previous one."""
        try:
            keyring.set_password(self._service, KEYRING_ACCESS_TOKEN, session.access_token)
            if session.refresh_token:
                keyring.set_password(self._service, KEYRING_REFRESH_TOKEN, session.refresh_token)
            else:
                self._delete(KEYRING_REFRESH_TOKEN)
        except KeyringError as e:
            logger.warning("Could not store tokens in keyring: %s", e)

    def clear(self) -> None:
        """Remove both tokens."""
        self._delete(KEYRING_ACCESS_TOKEN)
        self._delete(KEYRING_REFRESH_TOKEN)

    def _delete(self, key: str) -> None:
        try:
            keyring.delete_password(self._service, key)
        except PasswordDeleteError:
            pass  # Nothing stored
        except KeyringError as e:
            logger.warning("Could not delete %s from keyring: %s", key, e)


class TokenRefreshCoordinator:
    """Holds the AuthSession and refreshes it at most once concurrently.

    Usage:
        coordinator = TokenRefreshCoordinator(refresh_func, store=TokenStore())
        token = coordinator.access_token
        ... request gets 401 ...
        new_token = coordinator.refresh(stale_access_token=token)
        if new_token is None:
            # Session is gone, user must sign in again
    """

    def __init__(
        self,
        refresh_func: Callable[[str], AuthSession | None],
        store: TokenStore | None = None,
        on_session_expired: Callable[[], None] | None = None,
    ) -> None:
        """Initialize the coordinator.

        Args:
            refresh_func: Performs the refresh call for a refresh token.
                Returns the new session, or None when the server rejected
                the refresh token. Transport failures are raised.
            store: Optional durable storage; the stored session is loaded now.
            on_session_expired: Called after an unrecoverable auth failure
                cleared the session.
        """
        self._refresh_func = refresh_func
        self._store = store
        self._on_session_expired = on_session_expired
        self._lock = threading.Lock()
        self._in_flight: Future[AuthSession | None] | None = None
        self._session: AuthSession | None = store.load() if store else None
        self._refresh_count = 0

    @property
    def session(self) -> AuthSession | None:
        """Current session, or None when signed out."""
        with self._lock:
            return self._session

    @property
    def access_token(self) -> str | None:
        """Current access token."""
        session = self.session
        return session.access_token if session else None

    @property
    def is_authenticated(self) -> bool:
        """Whether an access token is available."""
        return self.access_token is not None

    @property
    def refresh_count(self) -> int:
        """Number of refresh calls performed (diagnostics)."""
        with self._lock:
            return self._refresh_count

    @property
    def is_refreshing(self) -> bool:
        """Whether a refresh is currently in flight."""
        with self._lock:
            return self._in_flight is not None

    def set_on_session_expired(self, callback: Callable[[], None] | None) -> None:
        """Set the callback fired when the session is cleared by a failure."""
        self._on_session_expired = callback

    def set_session(self, session: AuthSession) -> None:
        """Install a session (login) and persist it."""
        with self._lock:
            self._session = session
        if self._store:
            self._store.save(session)
        logger.info("Auth session installed")

    def clear(self) -> None:
        """Drop the session (logout). Does not fire on_session_expired."""
        with self._lock:
            self._session = None
        if self._store:
            self._store.clear()
        logger.info("Auth session cleared")

    def expire(self) -> None:
        """Clear the session after an unrecoverable 401 and notify."""
        self.clear()
        logger.warning("Auth session expired - user must sign in again")
        if self._on_session_expired:
            try:
                self._on_session_expired()
            except Exception as e:
                logger.error("Session expiry handler failed: %s", e)
                logger.debug("Full traceback:", exc_info=True)

    def refresh(self, stale_access_token: str | None) -> str | None:
        """Obtain a fresh access token after a 401.

        Args:
            stale_access_token: The token the failed request was sent with.

        Returns:
            The access token to retry with, or None if the session could not
            be refreshed (it has been cleared).

        Raises:
            Exception: Whatever the refresh function raised for a transport
                failure; every waiter of that refresh sees the same error.
        """
        with self._lock:
            session = self._session
            if session is None or session.refresh_token is None:
                return None

            if session.access_token != stale_access_token:
                # Another caller refreshed after our request was sent
                return session.access_token

            future = self._in_flight
            is_owner = future is None
            if is_owner:
                future = Future()
                self._in_flight = future
                self._refresh_count += 1
            refresh_token = session.refresh_token

        assert future is not None
        if is_owner:
            self._run_refresh(future, refresh_token)
        else:
            logger.debug("Refresh already in progress, waiting")

        new_session = future.result()
        if new_session is None:
            return None

        # Re-check: a logout may have happened since the refresh resolved
        return self.access_token

    def _run_refresh(self, future: Future[AuthSession | None], refresh_token: str) -> None:
        logger.info("Refreshing access token")
        try:
            new_session = self._refresh_func(refresh_token)
        except Exception as e:
            logger.warning("Token refresh failed: %s", e)
            with self._lock:
                self._in_flight = None
            future.set_exception(e)
            return

        if new_session is None:
            # Session and in-flight handle go together so no late caller
            # can start a second refresh with the rejected token
            with self._lock:
                self._session = None
                self._in_flight = None
            self.expire()
            future.set_result(None)
            return

        with self._lock:
            self._session = new_session
            self._in_flight = None
        if self._store:
            self._store.save(new_session)
        logger.info("Access token refreshed")
        future.set_result(new_session)
