"""Common result and paging schemas."""

from math import ceil
from typing import Any, Generic, Self, TypeVar

from pydantic import BaseModel, Field, computed_field

from qbank.core.errors import BusinessRuleViolation, ErrorKind

T = TypeVar("T")


class OperationResult(BaseModel):
    """Outcome of a service operation.

    Expected business-rule failures are reported here instead of raised.
    Subclasses add operation-specific fields, all with defaults.
    """

    success: bool = Field(default=True, description="Whether the operation was applied")
    error_kind: ErrorKind | None = Field(default=None, description="Failure category")
    error_message: str | None = Field(default=None, description="Human readable failure reason")

    @classmethod
    def failure(cls, kind: ErrorKind, message: str, **fields: Any) -> Self:
        return cls(success=False, error_kind=kind, error_message=message, **fields)

    @classmethod
    def from_violation(cls, violation: BusinessRuleViolation, **fields: Any) -> Self:
        return cls.failure(violation.kind, violation.message, **fields)


class PagedResult(BaseModel, Generic[T]):
    """One page of a larger result set."""

    items: list[T] = Field(default_factory=list)
    total_count: int = 0
    page_number: int = 1
    page_size: int = 50

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_pages(self) -> int:
        if self.page_size <= 0:
            return 0
        return ceil(self.total_count / self.page_size)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def has_next_page(self) -> bool:
        return self.page_number < self.total_pages

    @computed_field  # type: ignore[prop-decorator]
    @property
    def has_previous_page(self) -> bool:
        return self.page_number > 1
