"""
structlog configuration for process entrypoints (API server, worker script).

Library modules only ever call ``structlog.get_logger()``; this is the one
place that decides level filtering and rendering.
"""
from __future__ import annotations

import logging

import structlog

from config.settings import LoggingConfig


def configure_logging(config: LoggingConfig | None = None) -> None:
    config = config or LoggingConfig()
    level = logging.getLevelName(config.level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    if config.json:
        renderers = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        renderers = [structlog.dev.ConsoleRenderer()]

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            *renderers,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )
