"""Shared configuration classes for stoneatlas.

This module defines the configuration used by the HTTP client and the
sync services, plus helpers to load it from the JSON config file.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

DEFAULT_SERVER_URL = "http://localhost:8080"
DEFAULT_MAX_RETRY_ATTEMPTS = 5
DEFAULT_REFRESH_THROTTLE = 5 * 60  # seconds


def get_config_dir() -> Path:
    """Get the configuration directory for stoneatlas.

    Returns:
        Path to ~/.stoneatlas.
    """
    return Path.home() / ".stoneatlas"


def get_config_file() -> Path:
    """Get the path to the config file."""
    return get_config_dir() / "config.json"


@dataclass
class ClientConfig:
    """Configuration for connecting to the StoneAtlas API.

    Attributes:
        server_url: Base URL of the server (e.g., "https://api.example.com").
        timeout: Request timeout in seconds.
        verify_ssl: Whether to verify SSL certificates (default True).
        keyring_service: Service name used to store tokens in the OS keyring.
    """

    server_url: str = DEFAULT_SERVER_URL
    timeout: float = 30.0
    verify_ssl: bool = True
    keyring_service: str = "stoneatlas"

    def __post_init__(self) -> None:
        """Normalize server URL."""
        self.server_url = self.server_url.rstrip("/")

    @property
    def is_secure(self) -> bool:
        """Check if using HTTPS."""
        return self.server_url.startswith("https://")


@dataclass
class SyncSettings:
    """Tuning knobs for the cache, offline queue and orchestrator.

    Attributes:
        db_path: SQLite file holding the record cache and pending writes.
        max_retry_attempts: Failed syncs after which a pending record is dropped.
        refresh_throttle: Minimum seconds between background refreshes.
        nearby_radius_km: Default search radius for nearby stones.
    """

    db_path: Path = field(default_factory=lambda: get_config_dir() / "cache.db")
    max_retry_attempts: int = DEFAULT_MAX_RETRY_ATTEMPTS
    refresh_throttle: float = DEFAULT_REFRESH_THROTTLE
    nearby_radius_km: float = 10.0

    def __post_init__(self) -> None:
        """Validate settings."""
        self.db_path = Path(self.db_path).expanduser()
        if self.max_retry_attempts < 1:
            raise ValueError("max_retry_attempts must be at least 1")
        if self.refresh_throttle < 0:
            raise ValueError("refresh_throttle cannot be negative")


def load_config(path: Path | None = None) -> tuple[ClientConfig, SyncSettings]:
    """Load client configuration and sync settings from a JSON file.

    Missing file or missing keys fall back to defaults. Expected layout:

        {
            "server_url": "https://api.example.com",
            "timeout": 30,
            "sync": {"max_retry_attempts": 5, "db_path": "~/.stoneatlas/cache.db"}
        }

    Args:
        path: Config file path (defaults to ~/.stoneatlas/config.json).

    Returns:
        Tuple of (ClientConfig, SyncSettings).

    Raises:
        ValueError: If the file is not valid JSON or holds invalid values.
    """
    config_file = path or get_config_file()
    data: dict[str, Any] = {}
    if config_file.exists():
        try:
            data = dict(json.loads(config_file.read_text()))
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid config file {config_file}: {e}") from e

    client_keys = {"server_url", "timeout", "verify_ssl", "keyring_service"}
    client = ClientConfig(**{k: v for k, v in data.items() if k in client_keys})

    sync_data = dict(data.get("sync", {}))
    if "db_path" in sync_data:
        sync_data["db_path"] = Path(sync_data["db_path"])
    settings = SyncSettings(**sync_data)
    return client, settings


def save_config(client: ClientConfig, settings: SyncSettings, path: Path | None = None) -> None:
    """Save configuration to the config file."""
    config_file = path or get_config_file()
    config_file.parent.mkdir(parents=True, exist_ok=True)
    data = {
        "server_url": client.server_url,
        "timeout": client.timeout,
        "verify_ssl": client.verify_ssl,
        "keyring_service": client.keyring_service,
        "sync": {
            "db_path": str(settings.db_path),
            "max_retry_attempts": settings.max_retry_attempts,
            "refresh_throttle": settings.refresh_throttle,
            "nearby_radius_km": settings.nearby_radius_km,
        },
    }
    config_file.write_text(json.dumps(data, indent=2))
