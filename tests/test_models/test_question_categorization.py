"""Tests for QuestionCategorization model."""

from qbank.models import QuestionCategorization
from qbank.models.question_categorization import PRIMARY_LINK_INDEX


def test_categorization_tablename():
    assert QuestionCategorization.__tablename__ == "question_categorizations"


def test_question_category_pair_is_unique():
    constraints = {
        tuple(c.name for c in constraint.columns)
        for constraint in QuestionCategorization.__table__.constraints
        if constraint.name == "uq_question_category"
    }
    assert constraints == {("question_id", "category_id")}


def test_is_automatic_follows_confidence_score():
    manual = QuestionCategorization(question_id=1, category_id=1, is_primary=True)
    automatic = QuestionCategorization(
        question_id=1, category_id=2, is_primary=False, confidence_score=0.7
    )
    assert manual.is_automatic is False
    assert automatic.is_automatic is True


def test_one_primary_per_question_index():
    (index,) = [
        index
        for index in QuestionCategorization.__table__.indexes
        if index.name == PRIMARY_LINK_INDEX
    ]
    assert index.unique
    assert [c.name for c in index.columns] == ["question_id"]
    assert str(index.dialect_options["postgresql"]["where"]) == "is_primary"
    assert str(index.dialect_options["sqlite"]["where"]) == "is_primary"
