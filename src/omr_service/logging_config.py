"""
Logging setup for the OMR service.

Modules log through ``logging.getLogger(__name__)``; this module only wires a
single stream handler onto the package logger so uvicorn's own handlers stay
untouched.
"""

from __future__ import annotations

import logging
import sys

LOG_FORMAT = "%(asctime)s %(levelname)-8s [%(threadName)s] %(name)s: %(message)s"
PACKAGE_LOGGER = "omr_service"


def configure_logging(level: str = "INFO") -> logging.Logger:
    """
    Attach a stream handler to the package logger.

    Safe to call more than once: the handler is installed only the first
    time, later calls just adjust the level.

    Args:
        level: Log level name (e.g. "INFO", "DEBUG")

    Returns:
        The configured package logger
    """
    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(logging.getLevelName(level.upper()))

    if not any(getattr(handler, "_omr_service", False) for handler in logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._omr_service = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
        logger.propagate = False

    return logger
