"""JSON structured logging configuration."""
from __future__ import annotations

import logging
import sys

from pythonjsonlogger.json import JsonFormatter

from automember import __version__
from automember.config import settings

# Per-row pool checkouts and driver chatter drown out approval logs.
_QUIET_LOGGERS = (
    "uvicorn.access",
    "aiosqlite",
    "asyncpg",
    "sqlalchemy.pool",
)


def setup_logging(level: str | None = None) -> None:
    """Route every logger through one JSON handler on stdout.

    Each line carries the service, version and environment so staging and
    registry events from several workers can be told apart downstream.
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        JsonFormatter(
            fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={
                "asctime": "timestamp",
                "levelname": "level",
                "name": "logger",
            },
            static_fields={
                "service": "automember",
                "version": __version__,
                "env": settings.APP_ENV,
            },
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level or settings.APP_LOG_LEVEL)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.APP_ENV == "development" else logging.WARNING
    )
    logging.getLogger("automember.registry_client").setLevel(settings.REGISTRY_LOG_LEVEL)
