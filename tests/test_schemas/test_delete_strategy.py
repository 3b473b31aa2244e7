"""Tests for the delete strategy tagged union."""

import pytest
from pydantic import BaseModel, ValidationError

from qbank.schemas.delete_strategy import (
    Block,
    CascadeDelete,
    DeleteStrategy,
    ReparentChildren,
    parse_delete_strategy,
)


class _Request(BaseModel):
    strategy: DeleteStrategy


@pytest.mark.parametrize(
    ("kind", "expected"),
    [
        ("reparent_children", ReparentChildren),
        ("cascade_delete", CascadeDelete),
        ("block", Block),
    ],
)
def test_parse_from_kind(kind, expected):
    assert isinstance(parse_delete_strategy(kind), expected)
    assert isinstance(parse_delete_strategy({"kind": kind}), expected)


def test_unknown_kind_is_rejected():
    with pytest.raises(ValidationError):
        parse_delete_strategy("purge")


def test_discriminator_in_nested_model():
    request = _Request.model_validate({"strategy": {"kind": "block"}})
    assert request.strategy == Block()
    assert request.model_dump() == {"strategy": {"kind": "block"}}


def test_strategies_are_frozen():
    strategy = CascadeDelete()
    with pytest.raises(ValidationError):
        strategy.kind = "block"  # type: ignore[misc]
