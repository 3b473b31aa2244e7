"""Export/import documents for category subtrees.

Example JSON:
    {
        "version": "1.0",
        "exported_at": "2026-01-01T00:00:00Z",
        "categories": [
            {
                "code": "MATH",
                "name": "Mathematics",
                "type": "subject",
                "level": "level_1",
                "children": [
                    {"code": "ALG", "name": "Algebra", "type": "chapter", "level": "level_2"}
                ]
            }
        ]
    }
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from qbank.models.base import utcnow
from qbank.models.category import CategoryLevel, CategoryType
from qbank.schemas.common import OperationResult


class CategoryImportNode(BaseModel):
    """A category to import together with its children."""

    code: str = Field(min_length=1, max_length=50)
    name: str = Field(min_length=1, max_length=200)
    description: str | None = None
    type: CategoryType
    level: CategoryLevel
    is_active: bool = True
    allow_questions: bool = True
    sort_order: int = 0
    curriculum_code: str | None = None
    grade_level: str | None = None
    subject: str | None = None
    metadata_json: str | None = Field(default=None, max_length=2000)
    children: list[CategoryImportNode] = Field(default_factory=list)


class CategoryExportNode(CategoryImportNode):
    """Exported category. Carries source-side ids and counts for reference."""

    id: int
    question_count: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None
    children: list[CategoryExportNode] = Field(default_factory=list)  # type: ignore[assignment]


class CategoryTreeImport(BaseModel):
    categories: list[CategoryImportNode] = Field(default_factory=list)


class CategoryTreeExport(BaseModel):
    categories: list[CategoryExportNode] = Field(default_factory=list)
    exported_at: datetime = Field(default_factory=utcnow)
    version: str = "1.0"

    def to_import(self) -> CategoryTreeImport:
        """Re-read the export as an import document (ids and counts dropped)."""
        return CategoryTreeImport.model_validate(
            {"categories": [node.model_dump() for node in self.categories]}
        )


class MergeStrategy(str, Enum):
    """What to do when an imported code already exists."""

    SKIP = "skip"
    OVERWRITE = "overwrite"
    CREATE_NEW = "create_new"


class TreeImportResult(OperationResult):
    categories_created: int = 0
    categories_skipped: int = 0
    categories_updated: int = 0
    code_to_id: dict[str, int] = Field(default_factory=dict)
    warnings: list[str] = Field(default_factory=list)
