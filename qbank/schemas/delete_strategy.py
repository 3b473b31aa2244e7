"""Child-handling strategies for category deletion.

A closed set of variants discriminated by ``kind``; handlers ``match`` on the
class and end with ``assert_never`` so a new variant cannot be silently
ignored.

Example JSON:
    {"kind": "reparent_children"}
"""

from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class ReparentChildren(BaseModel):
    """Promote direct children to the deleted node's parent, then delete it."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["reparent_children"] = "reparent_children"


class CascadeDelete(BaseModel):
    """Soft-delete the node together with its whole subtree."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["cascade_delete"] = "cascade_delete"


class Block(BaseModel):
    """Refuse to delete a node that has children or questions."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["block"] = "block"


DeleteStrategy = Annotated[
    ReparentChildren | CascadeDelete | Block,
    Field(discriminator="kind"),
]

_adapter: TypeAdapter[ReparentChildren | CascadeDelete | Block] = TypeAdapter(DeleteStrategy)


def parse_delete_strategy(value: str | dict) -> ReparentChildren | CascadeDelete | Block:
    """Build a strategy from its ``kind`` string or its JSON object."""
    if isinstance(value, str):
        value = {"kind": value}
    return _adapter.validate_python(value)
