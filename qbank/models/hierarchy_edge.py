"""QuestionBankHierarchy model - closure table of the category tree."""

from sqlalchemy import ForeignKey, Index, Integer
from sqlalchemy.orm import Mapped, mapped_column

from qbank.models.base import Base


class HierarchyEdge(Base):
    """One (ancestor, descendant, depth) triple.

    Every category has a self edge with depth 0.
    """

    __tablename__ = "question_bank_hierarchy"
    __table_args__ = (
        Index("ix_question_bank_hierarchy_descendant", "descendant_id", "ancestor_id"),
    )

    ancestor_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("question_bank_categories.id"),
        primary_key=True,
    )
    descendant_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("question_bank_categories.id"),
        primary_key=True,
    )
    depth: Mapped[int] = mapped_column(Integer, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<HierarchyEdge(ancestor={self.ancestor_id}, "
            f"descendant={self.descendant_id}, depth={self.depth})>"
        )
