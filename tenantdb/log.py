"""
Logging setup for applications embedding tenantdb.

Library modules only create module loggers; calling setup_logging() is
the application's choice.
"""

from __future__ import annotations

import logging

import json_log_formatter

from .config import Settings


def setup_logging(settings: Settings) -> None:
    """Configure logging based on configuration.

    Args:
        settings: tenantdb settings
    """
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    if settings.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.WARNING)
