"""Core module - Shared configuration, logging and domain types."""

from stoneatlas.core.config import (
    ClientConfig,
    SyncSettings,
    get_config_dir,
    get_config_file,
    load_config,
    save_config,
)
from stoneatlas.core.logs import setup_logging
from stoneatlas.core.types import (
    CachePolicy,
    Category,
    CreateStoneRequest,
    Stone,
    StoneStats,
    StoneUser,
)

__all__ = [
    # Config
    "ClientConfig",
    "SyncSettings",
    "get_config_dir",
    "get_config_file",
    "load_config",
    "save_config",
    # Logging
    "setup_logging",
    # Types
    "CachePolicy",
    "Category",
    "CreateStoneRequest",
    "Stone",
    "StoneStats",
    "StoneUser",
]
