"""Logging setup shared by the API server and the background notifier."""

from __future__ import annotations

import logging
from logging import Logger

from quiz_arena.constants.network_constants import DEFAULT_LOG_LEVEL

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def configure_logging(level: int | str = DEFAULT_LOG_LEVEL) -> Logger:
    """Configure root logging once and return the package logger.

    Uvicorn's own loggers are pointed at the same handlers so request logs and
    service logs share one format.
    """
    logging.basicConfig(level=level, format=LOG_FORMAT)
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers.clear()
        uvicorn_logger.propagate = True
    return logging.getLogger("quiz_arena")
