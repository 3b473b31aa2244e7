"""Structured logging configuration using structlog.

Tree and ledger services log through ``get_logger``. Long-running operations
(bulk moves, imports, rebuilds) wrap their work in ``operation_context`` so
that every line emitted by the nested per-category and per-question calls
carries the same ``operation`` and ``operation_id`` fields.
"""

import logging
import sys
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from structlog.types import Processor

from qbank.config import settings

NOISY_LOGGERS = ("sqlalchemy.engine", "sqlalchemy.pool", "asyncpg", "aiosqlite")


def setup_logging(level: str | None = None, json_output: bool | None = None) -> None:
    """Configure structlog for services and maintenance scripts.

    Args:
        level: Overrides ``settings.log_level``
        json_output: Overrides the environment-based choice between JSON
            lines (staging/prod) and the colored console renderer (dev)
    """
    level = (level or settings.log_level).upper()
    if json_output is None:
        json_output = settings.log_json and settings.environment != "dev"

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if json_output:
        processors: list[Processor] = [
            *shared_processors,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [
            *shared_processors,
            structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(level)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    # SQL echo is controlled by settings.debug, not by the log level
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str | None = None, **initial_context: Any) -> structlog.BoundLogger:
    """Get a logger, optionally bound to ``initial_context``."""
    logger = structlog.get_logger(name)
    if initial_context:
        logger = logger.bind(**initial_context)
    return logger


@contextmanager
def operation_context(operation: str, **fields: Any) -> Iterator[str]:
    """Tag all log lines emitted inside the block with one operation id.

    Nested contexts keep the outermost ``operation_id``, so a bulk call that
    fans out into single-item calls logs under a single id.

    Yields:
        The operation id in effect
    """
    current = structlog.contextvars.get_contextvars().get("operation_id")
    if current is not None:
        with structlog.contextvars.bound_contextvars(**fields):
            yield current
        return

    operation_id = uuid.uuid4().hex[:12]
    with structlog.contextvars.bound_contextvars(
        operation=operation, operation_id=operation_id, **fields
    ):
        yield operation_id
