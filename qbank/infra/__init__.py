"""Infrastructure - Database, locking, logging."""

from qbank.infra.database import (
    DatabaseSession,
    SessionFactory,
    close_db_engine,
    create_schema,
    read_session,
    unit_of_work,
)
from qbank.infra.locks import WHOLE_TREE, LockManager, get_lock_manager
from qbank.infra.logging import get_logger, operation_context, setup_logging

__all__ = [
    "DatabaseSession",
    "SessionFactory",
    "close_db_engine",
    "create_schema",
    "read_session",
    "unit_of_work",
    "WHOLE_TREE",
    "LockManager",
    "get_lock_manager",
    "get_logger",
    "operation_context",
    "setup_logging",
]
