"""Categorization schemas: link read models, results and audit reports."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from qbank.core.errors import ErrorKind
from qbank.schemas.common import OperationResult
from qbank.schemas.tree import IssueSeverity


class CategorizationRead(BaseModel):
    """Snapshot of a question <-> category link."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    question_id: int
    category_id: int
    is_primary: bool
    weight: float | None = None
    confidence_score: float | None = None
    assigned_by: int | None = None
    assigned_at: datetime
    is_automatic: bool = False


class CategorizationResult(OperationResult):
    """Result of a single assign/remove/set-primary/update call."""

    categorization: CategorizationRead | None = None
    primary_category_id: int | None = Field(
        default=None,
        description="Primary category of the question after the call",
    )


class BulkCategorizationFailure(BaseModel):
    question_id: int
    error_kind: str
    error_message: str


class BulkCategorizationResult(OperationResult):
    """Outcome of a bulk call; each question is applied independently."""

    processed: int = 0
    succeeded: list[int] = Field(default_factory=list)
    failures: list[BulkCategorizationFailure] = Field(default_factory=list)


class CategorizationIssueType(str, Enum):
    ORPHANED_CATEGORIZATION = "orphaned_categorization"
    INACTIVE_CATEGORY = "inactive_category"
    MISSING_PRIMARY = "missing_primary"
    MULTIPLE_PRIMARY = "multiple_primary"
    INVALID_HIERARCHY_ENTRY = "invalid_hierarchy_entry"


class CategorizationValidationIssue(BaseModel):
    type: CategorizationIssueType
    description: str
    question_id: int | None = None
    category_id: int | None = None
    severity: IssueSeverity = IssueSeverity.ERROR


class CategorizationValidationResult(BaseModel):
    """Ledger audit report. Produced only by explicit audit calls."""

    is_valid: bool = True
    issues: list[CategorizationValidationIssue] = Field(default_factory=list)
    orphaned_categorizations: int = 0
    questions_without_primary: int = 0
    questions_with_multiple_primaries: int = 0
    invalid_hierarchy_entries: int = 0

    @property
    def error_kind(self) -> ErrorKind | None:
        return None if self.is_valid else ErrorKind.INTEGRITY_VIOLATION

    def add(self, issue: CategorizationValidationIssue) -> None:
        self.issues.append(issue)
        if issue.severity == IssueSeverity.ERROR:
            self.is_valid = False
        match issue.type:
            case CategorizationIssueType.ORPHANED_CATEGORIZATION:
                self.orphaned_categorizations += 1
            case CategorizationIssueType.MISSING_PRIMARY:
                self.questions_without_primary += 1
            case CategorizationIssueType.MULTIPLE_PRIMARY:
                self.questions_with_multiple_primaries += 1
            case CategorizationIssueType.INVALID_HIERARCHY_ENTRY:
                self.invalid_hierarchy_entries += 1
            case _:
                pass


class CategorizationStatistics(BaseModel):
    categorized_questions: int = 0
    questions_with_primary_category: int = 0
    questions_with_multiple_categories: int = 0
    average_categories_per_question: float = 0.0
    total_categorizations: int = 0
    automatic_categorizations: int = 0
    manual_categorizations: int = 0
    last_updated: datetime | None = None
