"""QuestionBankCategory model - node of the question-bank classification tree."""

import enum

from sqlalchemy import Boolean, Enum, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from qbank.models.base import Base, TimestampMixin


class CategoryType(str, enum.Enum):
    """What a category represents in the curriculum."""

    SUBJECT = "subject"
    CHAPTER = "chapter"
    TOPIC = "topic"
    SUBTOPIC = "subtopic"
    SKILL = "skill"
    OBJECTIVE = "objective"


class CategoryLevel(str, enum.Enum):
    """Editorial level of a category, independent of its depth in the tree."""

    LEVEL_1 = "level_1"
    LEVEL_2 = "level_2"
    LEVEL_3 = "level_3"
    LEVEL_4 = "level_4"
    LEVEL_5 = "level_5"
    LEVEL_6 = "level_6"


class QuestionBankCategory(Base, TimestampMixin):
    """A node of the category tree.

    ``materialized_path`` and ``depth`` are derived from the ``parent_id``
    chain and are written only by the tree services.
    """

    __tablename__ = "question_bank_categories"
    __table_args__ = (
        Index("ix_question_bank_categories_parent_sort", "parent_id", "sort_order"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    type: Mapped[CategoryType] = mapped_column(
        Enum(CategoryType, native_enum=False, length=20),
        nullable=False,
    )
    level: Mapped[CategoryLevel] = mapped_column(
        Enum(CategoryLevel, native_enum=False, length=20),
        nullable=False,
    )
    parent_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("question_bank_categories.id"),
        nullable=True,
        index=True,
    )
    materialized_path: Mapped[str] = mapped_column(
        String(500),
        nullable=False,
        default="",
        index=True,
    )
    depth: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    allow_questions: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    metadata_json: Mapped[str | None] = mapped_column(String(2000), nullable=True)

    # Curriculum alignment
    curriculum_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    grade_level: Mapped[str | None] = mapped_column(String(100), nullable=True)
    subject: Mapped[str | None] = mapped_column(String(100), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<QuestionBankCategory(id={self.id}, code='{self.code}', "
            f"path='{self.materialized_path}')>"
        )
