"""Centralized logging configuration.

This module provides consistent logging setup for applications embedding
the relay authentication engine.
"""

import logging
import os
from pathlib import Path

from ..core.config import settings


def setup_logging(
    name: str = "relay_auth",
    level: str | None = None,
    log_file: Path | None = None,
) -> logging.Logger:
    """Configure logging with consistent format.

    Args:
        name: Logger name (typically __name__ from the calling module)
        level: Log level (defaults to LOG_LEVEL env var, then settings.log_level)
        log_file: Optional file path for logging output (defaults to settings.log_file)

    Returns:
        Configured logger instance
    """
    level = level or os.getenv("LOG_LEVEL") or settings.log_level
    log_file = log_file or settings.log_file

    handlers: list[logging.Handler] = [logging.StreamHandler()]

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
        force=True,  # Override any existing configuration
    )

    # httpx logs every request at INFO, which would drown out ceremony logs
    logging.getLogger("httpx").setLevel(max(logging.WARNING, logging.getLogger().level))

    return logging.getLogger(name)
