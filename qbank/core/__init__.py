"""Core module - Errors, path helpers and actor identity."""

from qbank.core.errors import (
    BusinessRuleViolation,
    CategoryTreeError,
    ErrorKind,
    LockTimeoutError,
    TransientStorageError,
)
from qbank.core.identity import ActorProvider, StaticActorProvider

__all__ = [
    "BusinessRuleViolation",
    "CategoryTreeError",
    "ErrorKind",
    "LockTimeoutError",
    "TransientStorageError",
    "ActorProvider",
    "StaticActorProvider",
]
