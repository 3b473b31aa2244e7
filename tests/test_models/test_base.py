"""Tests for base model infrastructure."""

from datetime import timezone

from sqlalchemy.orm import DeclarativeBase

from qbank.models.base import Base, TimestampMixin, utcnow


def test_base_is_declarative_base():
    """Base should be a SQLAlchemy DeclarativeBase."""
    assert hasattr(Base, "metadata")
    assert issubclass(Base, DeclarativeBase)


def test_timestamp_mixin_has_created_at():
    """TimestampMixin should provide created_at column."""
    assert hasattr(TimestampMixin, "created_at")


def test_timestamp_mixin_has_updated_at():
    """TimestampMixin should provide updated_at column."""
    assert hasattr(TimestampMixin, "updated_at")


def test_utcnow_is_timezone_aware():
    assert utcnow().tzinfo == timezone.utc


def test_all_tables_registered():
    assert set(Base.metadata.tables) == {
        "question_bank_categories",
        "question_bank_hierarchy",
        "question_categorizations",
    }
