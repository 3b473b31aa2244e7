"""Category schemas: input payloads, read models and operation results."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from qbank.models.category import CategoryLevel, CategoryType
from qbank.schemas.common import OperationResult


def _normalize_code(value: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError("code must not be blank")
    if any(ch.isspace() for ch in value):
        raise ValueError("code must not contain whitespace")
    return value


class CategoryCreate(BaseModel):
    """Payload for creating a category."""

    model_config = ConfigDict(extra="forbid")

    code: str = Field(min_length=1, max_length=50)
    name: str = Field(min_length=1, max_length=200)
    type: CategoryType
    level: CategoryLevel
    parent_id: int | None = None
    description: str | None = Field(default=None, max_length=500)
    sort_order: int | None = Field(
        default=None,
        description="Position among siblings; appended after the last one when omitted",
    )
    allow_questions: bool = True
    is_active: bool = True
    metadata_json: str | None = Field(default=None, max_length=2000)
    curriculum_code: str | None = Field(default=None, max_length=100)
    grade_level: str | None = Field(default=None, max_length=100)
    subject: str | None = Field(default=None, max_length=100)

    @field_validator("code")
    @classmethod
    def validate_code(cls, v: str) -> str:
        return _normalize_code(v)


class CategoryUpdate(BaseModel):
    """Attribute edits.

    Parent, path and depth are deliberately absent: structural changes go
    through ``TreeMutator``. Unknown fields are rejected.
    """

    model_config = ConfigDict(extra="forbid")

    code: str | None = Field(default=None, min_length=1, max_length=50)
    name: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=500)
    type: CategoryType | None = None
    level: CategoryLevel | None = None
    sort_order: int | None = None
    allow_questions: bool | None = None
    metadata_json: str | None = Field(default=None, max_length=2000)
    curriculum_code: str | None = Field(default=None, max_length=100)
    grade_level: str | None = Field(default=None, max_length=100)
    subject: str | None = Field(default=None, max_length=100)

    @field_validator("code")
    @classmethod
    def validate_code(cls, v: str | None) -> str | None:
        return None if v is None else _normalize_code(v)


class CategoryRead(BaseModel):
    """Snapshot of a category row."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    code: str
    name: str
    description: str | None = None
    type: CategoryType
    level: CategoryLevel
    parent_id: int | None
    materialized_path: str
    depth: int
    sort_order: int
    allow_questions: bool
    is_active: bool
    metadata_json: str | None = None
    curriculum_code: str | None = None
    grade_level: str | None = None
    subject: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class CategoryResult(OperationResult):
    """Result of a create/update/reorder on a single category."""

    category: CategoryRead | None = None


class BulkCategoryResult(OperationResult):
    """Per-item outcome of a bulk category call, in request order."""

    results: list[CategoryResult] = Field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.success)


class CategoryBreadcrumb(BaseModel):
    """One step of the root-to-node trail."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    code: str
    type: CategoryType
    depth: int


class CategoryTreeNode(BaseModel):
    """A category with its (possibly depth-limited) children."""

    category: CategoryRead
    children: list[CategoryTreeNode] = Field(default_factory=list)
    direct_question_count: int = 0
    question_count: int = Field(default=0, description="Questions in the whole subtree")
    has_children: bool = False

    def walk(self):
        """Yield this node and its descendants depth-first."""
        yield self
        for child in self.children:
            yield from child.walk()


class ReorderResult(OperationResult):
    """Result of re-sequencing siblings."""

    categories_updated: int = 0
