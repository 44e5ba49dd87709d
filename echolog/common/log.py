"""Logging setup for the command line entry points."""

from __future__ import annotations

import logging
import os

LOG_FORMAT = "%(asctime)s %(name)s %(message)s"


def configure_logging(level: str | None = None, log_file: str | None = None) -> None:
    """Attach a single handler to the ``echolog`` logger.

    Args:
        level: Level name, defaults to the LOG_LEVEL environment variable or INFO.
        log_file: Write to this file instead of stderr.
    """
    level_name = (level or os.environ.get("LOG_LEVEL") or "INFO").upper()

    handler: logging.Handler
    if log_file:
        handler = logging.FileHandler(log_file)
    else:
        handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    root = logging.getLogger("echolog")
    for old in list(root.handlers):
        root.removeHandler(old)
    root.addHandler(handler)
    root.setLevel(getattr(logging, level_name, logging.INFO))
