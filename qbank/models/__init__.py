"""SQLAlchemy models for the category tree and categorization ledger."""

from qbank.models.base import Base, TimestampMixin
from qbank.models.category import CategoryLevel, CategoryType, QuestionBankCategory
from qbank.models.hierarchy_edge import HierarchyEdge
from qbank.models.question_categorization import QuestionCategorization

__all__ = [
    "Base",
    "TimestampMixin",
    "CategoryLevel",
    "CategoryType",
    "HierarchyEdge",
    "QuestionBankCategory",
    "QuestionCategorization",
]
