"""QuestionCategorization model - question <-> category link."""

from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from qbank.models.base import Base, utcnow

PRIMARY_LINK_INDEX = "uq_question_primary"


class QuestionCategorization(Base):
    """Links a question to a category.

    Questions live in another service; only their ids are stored here.
    At most one row per question has ``is_primary`` set; the partial unique
    index ``uq_question_primary`` enforces it across processes.
    """

    __tablename__ = "question_categorizations"
    __table_args__ = (
        UniqueConstraint("question_id", "category_id", name="uq_question_category"),
        Index(
            PRIMARY_LINK_INDEX,
            "question_id",
            unique=True,
            postgresql_where=text("is_primary"),
            sqlite_where=text("is_primary"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    question_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    category_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("question_bank_categories.id"),
        nullable=False,
        index=True,
    )
    is_primary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    weight: Mapped[float | None] = mapped_column(Float, nullable=True)
    confidence_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    assigned_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    assigned_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )

    @property
    def is_automatic(self) -> bool:
        """Assigned by an automated categorizer (carries a confidence score)."""
        return self.confidence_score is not None

    def __repr__(self) -> str:
        return (
            f"<QuestionCategorization(question_id={self.question_id}, "
            f"category_id={self.category_id}, primary={self.is_primary})>"
        )
