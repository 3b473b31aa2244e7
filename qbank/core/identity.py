"""Actor identity used to attribute categorizations."""

from typing import Protocol, runtime_checkable


@runtime_checkable
class ActorProvider(Protocol):
    """Supplies the id of the user performing the current operation.

    Implemented by the application layer (request context, job runner, ...).
    """

    def current_actor_id(self) -> int | None:
        ...


class StaticActorProvider:
    """Always reports the same actor. Used by scripts and tests."""

    def __init__(self, actor_id: int | None = None) -> None:
        self._actor_id = actor_id

    def current_actor_id(self) -> int | None:
        return self._actor_id
