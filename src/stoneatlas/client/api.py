"""HTTP client for the StoneAtlas API.

This module provides:
- HTTPClient: HTTP client with bearer auth and single-flight token refresh
- Typed API errors, including the two kinds the sync core branches on:
  UnauthorizedError (triggers refresh / session termination) and
  NetworkUnreachableError (triggers cache fallback / offline queueing)
- Stone operations (list, create, update, delete)

Unauthorized handling:
    request ──401──► refresh (shared) ──ok──► retry once ──401──► fatal
                          │
                          └─rejected──► session cleared, UnauthorizedError
"""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING, Any

import httpx

from stoneatlas.client.auth import AuthSession, TokenRefreshCoordinator
from stoneatlas.core.types import CreateStoneRequest, Stone

if TYPE_CHECKING:
    from collections.abc import Callable

    from stoneatlas.client.auth import TokenStore
    from stoneatlas.core.config import ClientConfig

logger = logging.getLogger(__name__)

HEALTH_ENDPOINT = "/health"
LOGIN_ENDPOINT = "/auth/login"
REFRESH_ENDPOINT = "/auth/refresh"
STONES_ENDPOINT = "/stones"
PUBLIC_STONES_ENDPOINT = "/stones/public"
NEARBY_STONES_ENDPOINT = "/stones/nearby"


class APIError(Exception):
    """Base exception for API errors."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class UnauthorizedError(APIError):
    """Request rejected as unauthorized and the session could not be recovered."""


class NotAuthenticatedError(UnauthorizedError):
    """Authenticated request attempted without an access token."""


class NetworkUnreachableError(APIError):
    """Server could not be reached (connection failure or timeout)."""


class BadRequestError(APIError):
    """Server rejected the request payload."""


class NotFoundError(APIError):
    """Resource not found."""


class ServerError(APIError):
    """Server-side failure (5xx)."""


class HTTPClient:
    """HTTP client for the StoneAtlas API.

    Usage:
        with HTTPClient(config, token_store=TokenStore()) as client:
            client.login("alice", "secret")
            stones = client.list_user_stones()
    """

    def __init__(
        self,
        config: ClientConfig,
        token_store: TokenStore | None = None,
        on_session_expired: Callable[[], None] | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            config: Client configuration.
            token_store: Optional durable token storage.
            on_session_expired: Called when an unrecoverable 401 cleared the session.
            transport: Optional httpx transport (mainly for tests).
        """
        self._config = config
        self._client = httpx.Client(
            base_url=config.server_url,
            timeout=config.timeout,
            verify=config.verify_ssl,
            headers={"Content-Type": "application/json"},
            transport=transport,
        )
        self._auth = TokenRefreshCoordinator(
            self._refresh_tokens,
            store=token_store,
            on_session_expired=on_session_expired,
        )

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> HTTPClient:
        """Context manager entry."""
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.close()

    # === Session ===

    @property
    def auth(self) -> TokenRefreshCoordinator:
        """The token refresh coordinator holding the session."""
        return self._auth

    @property
    def is_authenticated(self) -> bool:
        """Whether an access token is available."""
        return self._auth.is_authenticated

    def set_session(self, session: AuthSession) -> None:
        """Install a session obtained from a sign-in flow."""
        self._auth.set_session(session)

    def clear_session(self) -> None:
        """Forget the current session (logout)."""
        self._auth.clear()

    def set_on_session_expired(self, callback: Callable[[], None] | None) -> None:
        """Set the callback fired when an unrecoverable 401 cleared the session."""
        self._auth.set_on_session_expired(callback)

    def login(self, username: str, password: str) -> dict[str, Any]:
        """Log in with username and password and install the returned tokens.

        Returns:
            The user dictionary from the response.

        Raises:
            BadRequestError: If the credentials are rejected.
        """
        data = self.request(
            "POST",
            LOGIN_ENDPOINT,
            json={"username": username, "password": password},
        ).json()
        try:
            session = AuthSession(
                access_token=data["token"],
                refresh_token=data.get("refreshToken"),
            )
        except (KeyError, TypeError) as e:
            raise APIError(f"Invalid login response: {e}") from e

        self._auth.set_session(session)
        user: dict[str, Any] = data.get("user", {})
        logger.info("Logged in as %s", user.get("username", username))
        return user

    # === Core request ===

    def request(
        self,
        method: str,
        endpoint: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
        requires_auth: bool = False,
    ) -> httpx.Response:
        """Perform a request, refreshing the session once on a 401.

        Args:
            method: HTTP method.
            endpoint: Path relative to the server URL.
            json: Optional JSON body.
            params: Optional query parameters.
            requires_auth: Whether to send the bearer token.

        Returns:
            The successful (2xx) response.

        Raises:
            NotAuthenticatedError: requires_auth without a session.
            UnauthorizedError: 401 that could not be recovered.
            NetworkUnreachableError: Connection failure or timeout.
            APIError: Any other non-2xx response.
        """
        token: str | None = None
        if requires_auth:
            token = self._auth.access_token
            if token is None:
                raise NotAuthenticatedError("Authentication required")

        response = self._send(method, endpoint, json, params, token)

        if response.status_code == 401 and requires_auth and endpoint != REFRESH_ENDPOINT:
            new_token = self._recover_unauthorized(token)
            response = self._send(method, endpoint, json, params, new_token)
            if response.status_code == 401:
                logger.error("Still unauthorized after token refresh: %s %s", method, endpoint)
                self._auth.expire()
                raise UnauthorizedError("Unauthorized - please log in again", 401)

        return self._handle_response(response)

    def _send(
        self,
        method: str,
        endpoint: str,
        json: Any,
        params: dict[str, Any] | None,
        token: str | None,
    ) -> httpx.Response:
        headers = {"Authorization": f"Bearer {token}"} if token else None
        logger.debug("Performing request: %s %s", method, endpoint)
        try:
            return self._client.request(
                method,
                endpoint,
                json=json,
                params=params,
                headers=headers,
            )
        except httpx.TransportError as e:
            logger.warning("Network error for %s %s: %s", method, endpoint, e)
            raise NetworkUnreachableError(f"Network error: {e}") from e

    def _recover_unauthorized(self, stale_token: str | None) -> str:
        """Get a token to retry with after a 401, or raise UnauthorizedError."""
        session = self._auth.session
        if session is None:
            raise UnauthorizedError("Unauthorized - please log in again", 401)

        if session.refresh_token is None:
            logger.warning("Received 401 and no refresh token is available")
            self._auth.expire()
            raise UnauthorizedError("Unauthorized - please log in again", 401)

        new_token = self._auth.refresh(stale_token)
        if new_token is None:
            raise UnauthorizedError("Session expired - please log in again", 401)
        return new_token

    def _refresh_tokens(self, refresh_token: str) -> AuthSession | None:
        """POST the refresh endpoint.

        Returns:
            The new session, or None if the server rejected the refresh token.

        Raises:
            NetworkUnreachableError: If the server could not be reached.
        """
        try:
            response = self._client.post(
                REFRESH_ENDPOINT,
                json={"refreshToken": refresh_token},
            )
        except httpx.TransportError as e:
            raise NetworkUnreachableError(f"Network error during token refresh: {e}") from e

        if not response.is_success:
            logger.warning("Token refresh rejected (HTTP %d)", response.status_code)
            return None

        try:
            data = response.json()
            return AuthSession(
                access_token=data["token"],
                refresh_token=data.get("refreshToken", refresh_token),
            )
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("Invalid token refresh response: %s", e)
            return None

    def _handle_response(self, response: httpx.Response) -> httpx.Response:
        """Handle API response and raise appropriate exceptions."""
        status = response.status_code
        if response.is_success:
            return response

        detail = self._error_detail(response)
        logger.error("Error loading url %s: HTTP %d %s", response.request.url, status, detail)

        if status == 401:
            raise UnauthorizedError(detail or "Unauthorized", 401)
        if status == 400:
            raise BadRequestError(detail or "Bad request", 400)
        if status == 404:
            raise NotFoundError(detail or "Resource not found", 404)
        if status >= 500:
            raise ServerError(detail or "Server error - please try again later", status)
        raise APIError(detail or f"Unknown error (HTTP {status})", status)

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            return ""
        if isinstance(data, dict):
            return str(data.get("reason") or data.get("detail") or "")
        return ""

    # === Health check ===

    def health_check(self) -> bool:
        """Check if the server is healthy.

        Returns:
            True if server is healthy.
        """
        try:
            response = self._client.get(HEALTH_ENDPOINT)
            return response.status_code == 200
        except httpx.TransportError:
            return False

    # === Stone operations ===

    def list_user_stones(self) -> list[Stone]:
        """List the signed-in user's stones."""
        response = self.request("GET", STONES_ENDPOINT, requires_auth=True)
        return self._decode_stones(response)

    def list_public_stones(self) -> list[Stone]:
        """List the public stones feed (no authentication needed)."""
        response = self.request("GET", PUBLIC_STONES_ENDPOINT)
        return self._decode_stones(response)

    def list_nearby_stones(
        self,
        latitude: float,
        longitude: float,
        radius: float,
    ) -> list[Stone]:
        """List stones within radius kilometers of a point."""
        response = self.request(
            "GET",
            NEARBY_STONES_ENDPOINT,
            params={"lat": latitude, "lon": longitude, "radius": radius},
            requires_auth=True,
        )
        return self._decode_stones(response)

    def create_stone(self, request: CreateStoneRequest) -> Stone:
        """Create a stone."""
        response = self.request(
            "POST",
            STONES_ENDPOINT,
            json=request.to_dict(),
            requires_auth=True,
        )
        return self._decode_stone(response)

    def update_stone(self, stone_id: uuid.UUID, request: CreateStoneRequest) -> Stone:
        """Update an existing stone."""
        response = self.request(
            "PUT",
            f"{STONES_ENDPOINT}/{stone_id}",
            json=request.to_dict(),
            requires_auth=True,
        )
        return self._decode_stone(response)

    def delete_stone(self, stone_id: uuid.UUID) -> None:
        """Delete a stone."""
        self.request("DELETE", f"{STONES_ENDPOINT}/{stone_id}", requires_auth=True)

    def _decode_stone(self, response: httpx.Response) -> Stone:
        try:
            return Stone.from_dict(response.json())
        except (ValueError, KeyError, TypeError) as e:
            raise APIError(f"Failed to decode response: {e}") from e

    def _decode_stones(self, response: httpx.Response) -> list[Stone]:
        try:
            return [Stone.from_dict(item) for item in response.json()]
        except (ValueError, KeyError, TypeError) as e:
            raise APIError(f"Failed to decode response: {e}") from e
