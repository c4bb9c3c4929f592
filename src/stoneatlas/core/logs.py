"""Logging setup for applications embedding stoneatlas.

Library modules only create module-level loggers; handlers are attached
here, once, by the host application.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(
    log_path: Path | None = None,
    level: int = logging.INFO,
) -> logging.Logger:
    """Configure logging to output to stdout and, optionally, a file.

    Calling it again replaces the handlers installed by a previous call.

    Args:
        log_path: Optional path to the log file.
        level: Level for the stoneatlas logger.

    Returns:
        The configured "stoneatlas" logger.
    """
    formatter = logging.Formatter(LOG_FORMAT)

    root_logger = logging.getLogger("stoneatlas")
    root_logger.setLevel(level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(formatter)
    root_logger.addHandler(stdout_handler)

    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    return root_logger
