"""Structured logging setup for the API server and workers."""

from __future__ import annotations

import logging

import structlog

# Chatty at INFO; raised to WARNING unless running verbose.
NOISY_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine", "uvicorn.access", "asyncio")


def configure_logging(verbose: bool = False, json_output: bool = False) -> None:
    """
    Configure structlog and the stdlib root logger.

    Args:
        verbose: Log at DEBUG and keep third-party loggers at their defaults
        json_output: Emit one JSON object per line instead of console output
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="%(message)s")
    if not verbose:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    shared = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    if json_output:
        tail = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        tail = [structlog.dev.ConsoleRenderer(colors=verbose)]

    structlog.configure(
        processors=[*shared, *tail],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
