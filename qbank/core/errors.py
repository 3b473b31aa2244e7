"""Error taxonomy for the category tree engine.

Business-rule outcomes are reported through result objects carrying an
``ErrorKind``. Exceptions are reserved for two cases: aborting a unit of work
from deep inside a helper (``BusinessRuleViolation``, converted back into a
result at the service boundary) and storage failures the caller may retry
(``TransientStorageError``).
"""

from enum import Enum


class ErrorKind(str, Enum):
    """Kind of an expected, non-exceptional failure."""

    NOT_FOUND = "not_found"
    INVALID_OPERATION = "invalid_operation"
    INTEGRITY_VIOLATION = "integrity_violation"


class CategoryTreeError(Exception):
    """Base class for all engine errors."""


class BusinessRuleViolation(CategoryTreeError):
    """Raised inside a unit of work to reject an operation and roll back."""

    def __init__(self, kind: ErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message

    @classmethod
    def not_found(cls, message: str) -> "BusinessRuleViolation":
        return cls(ErrorKind.NOT_FOUND, message)

    @classmethod
    def invalid(cls, message: str) -> "BusinessRuleViolation":
        return cls(ErrorKind.INVALID_OPERATION, message)


class TransientStorageError(CategoryTreeError):
    """Lock timeout, deadlock or connectivity loss.

    The failed operation was rolled back as a whole and can be retried.
    """


class LockTimeoutError(TransientStorageError):
    """Gave up waiting for a subtree or question lock."""
