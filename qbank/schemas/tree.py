"""Schemas for structural tree operations, validation, statistics and search."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from qbank.core.errors import ErrorKind
from qbank.models.category import CategoryLevel, CategoryType
from qbank.schemas.category import CategoryBreadcrumb, CategoryRead
from qbank.schemas.common import OperationResult


class TreeMoveResult(OperationResult):
    """Result of moving a subtree."""

    categories_affected: int = Field(default=0, description="Nodes whose path/depth changed")
    warnings: list[str] = Field(default_factory=list)


class TreeCopyResult(OperationResult):
    """Result of deep-copying a subtree."""

    new_category_id: int | None = None
    categories_copied: int = 0
    id_mapping: dict[int, int] = Field(
        default_factory=dict,
        description="Source id -> copy id",
    )


class TreeDeleteResult(OperationResult):
    """Result of a soft delete."""

    categories_deleted: int = 0
    questions_reassigned: int = 0
    warnings: list[str] = Field(default_factory=list)


class MoveRequest(BaseModel):
    """One entry of a bulk move."""

    model_config = ConfigDict(extra="forbid")

    category_id: int
    new_parent_id: int | None = None
    new_sort_order: int | None = None


class BulkMoveResult(OperationResult):
    """Per-item outcomes of a bulk move, in request order."""

    results: list[TreeMoveResult] = Field(default_factory=list)


class BulkDeleteResult(OperationResult):
    """Per-item outcomes of a bulk delete, in request order."""

    results: list[TreeDeleteResult] = Field(default_factory=list)


class IssueSeverity(str, Enum):
    WARNING = "warning"
    ERROR = "error"


class TreeIssueType(str, Enum):
    ORPHANED_CATEGORY = "orphaned_category"
    CIRCULAR_REFERENCE = "circular_reference"
    INVALID_PATH = "invalid_path"
    INVALID_DEPTH = "invalid_depth"
    MISSING_CLOSURE_ROW = "missing_closure_row"
    EXTRA_CLOSURE_ROW = "extra_closure_row"
    CLOSURE_DEPTH_MISMATCH = "closure_depth_mismatch"


class TreeValidationIssue(BaseModel):
    type: TreeIssueType
    description: str
    category_id: int | None = None
    severity: IssueSeverity = IssueSeverity.ERROR


class TreeValidationResult(BaseModel):
    """Divergences found between parent pointers, paths and the closure table."""

    is_valid: bool = True
    issues: list[TreeValidationIssue] = Field(default_factory=list)
    orphaned_categories: int = 0
    invalid_paths: int = 0
    invalid_depths: int = 0
    circular_references: int = 0
    closure_discrepancies: int = 0

    @property
    def error_kind(self) -> ErrorKind | None:
        return None if self.is_valid else ErrorKind.INTEGRITY_VIOLATION

    def add(self, issue: TreeValidationIssue) -> None:
        self.issues.append(issue)
        if issue.severity == IssueSeverity.ERROR:
            self.is_valid = False
        match issue.type:
            case TreeIssueType.ORPHANED_CATEGORY:
                self.orphaned_categories += 1
            case TreeIssueType.CIRCULAR_REFERENCE:
                self.circular_references += 1
            case TreeIssueType.INVALID_PATH:
                self.invalid_paths += 1
            case TreeIssueType.INVALID_DEPTH:
                self.invalid_depths += 1
            case _:
                self.closure_discrepancies += 1


class TreeStatistics(BaseModel):
    total_categories: int = 0
    root_categories: int = 0
    leaf_categories: int = 0
    max_depth: int = 0
    average_depth: float = 0.0
    average_children_per_node: float = Field(
        default=0.0,
        description="Mean child count over nodes that have children",
    )
    categories_per_depth: dict[int, int] = Field(default_factory=dict)
    last_modified: datetime | None = None


class TreeSearchCriteria(BaseModel):
    model_config = ConfigDict(extra="forbid")

    search_term: str | None = None
    type: CategoryType | None = None
    level: CategoryLevel | None = None
    search_in_descriptions: bool = True
    search_in_codes: bool = True
    within_category_id: int | None = Field(
        default=None,
        description="Restrict to the subtree of this category",
    )
    include_inactive: bool = False
    max_results: int | None = Field(default=None, ge=1)


class MatchType(str, Enum):
    CODE = "code"
    NAME = "name"
    DESCRIPTION = "description"
    FILTER = "filter"


class CategorySearchResult(BaseModel):
    category: CategoryRead
    breadcrumbs: list[CategoryBreadcrumb] = Field(default_factory=list)
    match_type: MatchType
    relevance_score: float
