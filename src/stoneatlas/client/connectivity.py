"""Network connectivity monitoring.

This module provides:
- ConnectivityMonitor: Thread-safe connectivity state with push-based
  reconnect notifications
- HealthProbe: Background thread that feeds the monitor by polling the
  API health endpoint

Architecture:
    platform source / HealthProbe ─update()─► ConnectivityMonitor
                                                  │
                                (disconnected → connected)
                                                  ▼
                                     reconnect listeners (e.g. OfflineQueue)

The monitor starts in an unknown state which reads as offline until the
first update arrives. Reachability errors are never raised to callers.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable

    from stoneatlas.client.api import HTTPClient

logger = logging.getLogger(__name__)

DEFAULT_PROBE_INTERVAL = 5.0  # seconds between health checks


class Transport(str, Enum):
    """Kind of network interface carrying traffic."""

    WIFI = "wifi"
    CELLULAR = "cellular"
    ETHERNET = "ethernet"
    OTHER = "other"


@dataclass(frozen=True)
class ConnectivityState:
    """Snapshot of the connectivity state.

    Attributes:
        is_connected: Whether the network is reachable (False while unknown).
        is_expensive: Whether the current path is metered.
        transport: Interface kind, or None when unknown/offline.
        is_known: False until the first update has been received.
    """

    is_connected: bool = False
    is_expensive: bool = False
    transport: Transport | None = None
    is_known: bool = False


class ConnectivityMonitor:
    """Publishes connectivity state and offline → online transitions.

    Usage:
        monitor = ConnectivityMonitor()
        monitor.add_reconnect_listener(queue.schedule_drain)

        # From the platform reachability callback:
        monitor.update(True, transport=Transport.WIFI)

    Listeners run on the thread that calls update() and must not block;
    hand work off to another thread instead. Updates are serialized, so
    listeners observe states in the order they were recorded.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._update_lock = threading.RLock()
        self._state = ConnectivityState()
        self._reconnect_listeners: list[Callable[[], None]] = []
        self._listeners: list[Callable[[ConnectivityState], None]] = []

    @property
    def state(self) -> ConnectivityState:
        """Current connectivity snapshot."""
        with self._lock:
            return self._state

    @property
    def is_connected(self) -> bool:
        """Whether the device is online."""
        return self.state.is_connected

    @property
    def is_expensive(self) -> bool:
        """Whether the current network path is metered."""
        return self.state.is_expensive

    @property
    def transport(self) -> Transport | None:
        """Current transport kind."""
        return self.state.transport

    def add_reconnect_listener(self, callback: Callable[[], None]) -> None:
        """Register a callback fired on every disconnected → connected transition."""
        with self._lock:
            self._reconnect_listeners.append(callback)

    def add_listener(self, callback: Callable[[ConnectivityState], None]) -> None:
        """Register a callback fired on every state change."""
        with self._lock:
            self._listeners.append(callback)

    def update(
        self,
        connected: bool,
        *,
        expensive: bool = False,
        transport: Transport | None = None,
    ) -> None:
        """Record a reachability update from the platform source.

        Args:
            connected: Whether the network path is satisfied.
            expensive: Whether the path is metered.
            transport: Interface kind carrying traffic.
        """
        new_state = ConnectivityState(
            is_connected=connected,
            is_expensive=expensive if connected else False,
            transport=transport if connected else None,
            is_known=True,
        )

        with self._update_lock:
            self._apply(new_state)

    def _apply(self, new_state: ConnectivityState) -> None:
        connected = new_state.is_connected
        transport = new_state.transport
        with self._lock:
            old_state = self._state
            self._state = new_state
            listeners = list(self._listeners)
            reconnect_listeners = list(self._reconnect_listeners)

        if new_state == old_state:
            return

        reconnected = connected and not old_state.is_connected
        if connected:
            logger.info(
                "Network connected (%s)",
                transport.value if transport else "unknown",
            )
        elif old_state.is_connected or not old_state.is_known:
            logger.warning("Network disconnected")

        for listener in listeners:
            self._notify(listener, new_state)

        if reconnected:
            logger.info("Network reconnected - triggering pending record sync")
            for reconnect_listener in reconnect_listeners:
                self._notify(reconnect_listener)

    def _notify(self, callback: Callable[..., None], *args: object) -> None:
        try:
            callback(*args)
        except Exception as e:
            logger.warning("Connectivity listener failed: %s", e)
            logger.debug("Full traceback:", exc_info=True)


class HealthProbe:
    """Polls the server health endpoint and feeds a ConnectivityMonitor.

    Used where no platform reachability source exists: any successful
    health check means "connected", anything else "disconnected".

    Usage:
        probe = HealthProbe(api, monitor)
        probe.start()
        ...
        probe.stop()
    """

    def __init__(
        self,
        api: HTTPClient,
        monitor: ConnectivityMonitor,
        interval: float = DEFAULT_PROBE_INTERVAL,
    ) -> None:
        """Initialize the probe.

        Args:
            api: HTTP client whose health_check() is polled. Not closed by the probe.
            monitor: Monitor to feed.
            interval: Seconds between health checks.
        """
        self._api = api
        self._monitor = monitor
        self._interval = interval
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def check(self) -> bool:
        """Run one health check and publish the result.

        Returns:
            True if the server answered 200.
        """
        reachable = self._api.health_check()
        if not reachable:
            logger.debug("Health check failed")

        self._monitor.update(reachable, transport=Transport.OTHER if reachable else None)
        return reachable

    def start(self) -> None:
        """Start polling in a background thread."""
        if self._thread and self._thread.is_alive():
            logger.warning("HealthProbe already running")
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run,
            name="HealthProbe",
            daemon=True,
        )
        self._thread.start()
        logger.info("HealthProbe started")

    def stop(self) -> None:
        """Stop polling."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5.0)
            self._thread = None
        logger.info("HealthProbe stopped")

    def _run(self) -> None:
        while not self._stop_event.is_set():
            self.check()
            self._stop_event.wait(self._interval)
