"""Logging configuration."""

import logging
import sys
from typing import Optional

import structlog

from .config import RewardsSettings, get_settings


def setup_logging(settings: Optional[RewardsSettings] = None) -> None:
    """Configure structured logging."""
    settings = settings or get_settings()
    level = logging.getLevelName(settings.log_level.upper())

    if settings.log_format == "json":
        renderer = structlog.processors.JSONRenderer()
        timestamper = structlog.processors.TimeStamper(fmt="iso")
    else:
        renderer = structlog.dev.ConsoleRenderer()
        timestamper = structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S")

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            timestamper,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )

    # Third-party libraries (uvicorn, sqlalchemy) log through the stdlib.
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)


def get_logger(name: str) -> structlog.BoundLogger:
    return structlog.get_logger(name)
