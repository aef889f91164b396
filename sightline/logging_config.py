"""
Logging - structlog setup for the engine.

Every module logs through `structlog.get_logger(__name__)` and binds the
context it is working in (pair key, decision step, token id). This module only
decides how those events are rendered.

Events are routed through the standard library `logging` module, so the
host's handlers and levels apply to them.
"""

from __future__ import annotations
import logging
import sys

import structlog


_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def configure_logging(level: str = "info", env: str = "development") -> None:
    """
    Configure structlog processors.

    Development renders key=value lines for a console; production renders
    one JSON object per event.
    """
    numeric_level = _LEVELS.get(level.lower(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stderr)
    logging.getLogger("sightline").setLevel(numeric_level)

    renderer = (
        structlog.processors.JSONRenderer()
        if env == "production"
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
