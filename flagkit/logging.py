"""
Structured logging setup.

Every module logs through ``structlog.get_logger()``. Call
``configure_logging`` once at startup to pick a renderer:

    from flagkit.config import get_settings
    from flagkit.logging import configure_logging

    configure_logging(get_settings())
"""

import logging
from typing import Any

import structlog

from .config import FlagSettings


def add_library_name(
    logger: Any,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Structlog processor that tags every event with the library name."""
    event_dict.setdefault("library", "flagkit")
    return event_dict


def configure_logging(settings: FlagSettings) -> None:
    """Configure structlog from settings (json or text rendering)."""
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    renderer: Any
    if settings.log_format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            add_library_name,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=False,
    )
