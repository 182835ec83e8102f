from __future__ import annotations

import logging
import os
import sys

import structlog

_configured = False


def configure_logging(level: str | None = None, *, json_output: bool | None = None) -> None:
    """Install the structlog pipeline once per process.

    ``FLIGHTOPS_LOG_LEVEL`` and ``FLIGHTOPS_LOG_JSON`` are consulted when the
    arguments are omitted.
    """

    global _configured
    if _configured:
        return

    level_name = (level or os.getenv("FLIGHTOPS_LOG_LEVEL") or "INFO").upper()
    if json_output is None:
        json_output = os.getenv("FLIGHTOPS_LOG_JSON", "").lower() in {"1", "true", "yes"}

    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level_name)

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(level_name)),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )
    _configured = True
