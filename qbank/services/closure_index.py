"""ClosureIndex - explicit (ancestor, descendant, depth) rows.

Answers "is X inside the subtree of Y" with a single primary-key lookup and
feeds aggregate joins (subtree question counts). Edges inside a moved
subtree never change; a move only swaps the edges that cross the subtree
boundary.
"""

from collections.abc import Iterable, Mapping

from sqlalchemy import delete, insert, literal, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from qbank.infra.logging import get_logger
from qbank.models import HierarchyEdge

logger = get_logger(__name__)


class ClosureIndex:
    """Maintains the closure table."""

    async def add_node(
        self,
        session: AsyncSession,
        node_id: int,
        parent_id: int | None,
    ) -> int:
        """Insert the self edge of a new leaf plus one edge per ancestor.

        Returns the number of edges inserted.
        """
        await session.execute(
            insert(HierarchyEdge).values(ancestor_id=node_id, descendant_id=node_id, depth=0)
        )
        inserted = 1
        if parent_id is not None:
            result = await session.execute(
                insert(HierarchyEdge).from_select(
                    ["ancestor_id", "descendant_id", "depth"],
                    select(
                        HierarchyEdge.ancestor_id,
                        literal(node_id),
                        HierarchyEdge.depth + 1,
                    ).where(HierarchyEdge.descendant_id == parent_id),
                )
            )
            inserted += max(result.rowcount or 0, 0)
        return inserted

    async def move_subtree(
        self,
        session: AsyncSession,
        node_id: int,
        new_parent_id: int | None,
    ) -> tuple[int, int]:
        """Re-link the subtree of ``node_id`` below ``new_parent_id``.

        1. Delete every edge from an ancestor of the old position to a node of
           the subtree.
        2. Insert an edge from every ancestor of the new position (the new
           parent included) to every node of the subtree, with depth
           ``ancestor->parent + 1 + node->descendant``.

        Returns (edges deleted, edges inserted).
        """
        subtree_ids = select(HierarchyEdge.descendant_id).where(
            HierarchyEdge.ancestor_id == node_id
        )
        old_ancestor_ids = select(HierarchyEdge.ancestor_id).where(
            HierarchyEdge.descendant_id == node_id,
            HierarchyEdge.ancestor_id != node_id,
        )
        # Materialize both sets first: the delete below changes what the
        # subqueries would return on some backends.
        subtree = list(await session.scalars(subtree_ids))
        old_ancestors = list(await session.scalars(old_ancestor_ids))

        deleted = 0
        if old_ancestors:
            result = await session.execute(
                delete(HierarchyEdge)
                .where(
                    HierarchyEdge.descendant_id.in_(subtree),
                    HierarchyEdge.ancestor_id.in_(old_ancestors),
                )
                .execution_options(synchronize_session=False)
            )
            deleted = max(result.rowcount or 0, 0)

        inserted = 0
        if new_parent_id is not None:
            above = aliased(HierarchyEdge)
            below = aliased(HierarchyEdge)
            result = await session.execute(
                insert(HierarchyEdge).from_select(
                    ["ancestor_id", "descendant_id", "depth"],
                    select(
                        above.ancestor_id,
                        below.descendant_id,
                        above.depth + below.depth + 1,
                    ).where(
                        above.descendant_id == new_parent_id,
                        below.ancestor_id == node_id,
                    ),
                )
            )
            inserted = max(result.rowcount or 0, 0)

        logger.debug(
            "Closure edges swapped",
            category_id=node_id,
            new_parent_id=new_parent_id,
            deleted=deleted,
            inserted=inserted,
        )
        return deleted, inserted

    async def contains(
        self,
        session: AsyncSession,
        ancestor_id: int,
        descendant_id: int,
    ) -> bool:
        """True if ``descendant_id`` is ``ancestor_id`` or lies below it."""
        found = await session.scalar(
            select(HierarchyEdge.depth).where(
                HierarchyEdge.ancestor_id == ancestor_id,
                HierarchyEdge.descendant_id == descendant_id,
            )
        )
        return found is not None

    async def all_edges(self, session: AsyncSession) -> dict[tuple[int, int], int]:
        """Every edge as ``{(ancestor, descendant): depth}``."""
        rows = await session.execute(
            select(HierarchyEdge.ancestor_id, HierarchyEdge.descendant_id, HierarchyEdge.depth)
        )
        return {(a, d): depth for a, d, depth in rows}

    async def replace_all(
        self,
        session: AsyncSession,
        edges: Mapping[tuple[int, int], int],
    ) -> int:
        """Drop the whole table and insert ``edges``. Returns rows inserted."""
        await session.execute(
            delete(HierarchyEdge).execution_options(synchronize_session=False)
        )
        rows = [
            {"ancestor_id": a, "descendant_id": d, "depth": depth}
            for (a, d), depth in sorted(edges.items())
        ]
        if rows:
            await session.execute(insert(HierarchyEdge), rows)
        return len(rows)

    async def edges_referencing(
        self,
        session: AsyncSession,
        category_ids: Iterable[int],
    ) -> list[tuple[int, int]]:
        """Edges whose endpoints are not all in ``category_ids``."""
        known = set(category_ids)
        edges = await self.all_edges(session)
        return sorted(
            (a, d) for (a, d) in edges if a not in known or d not in known
        )


def expected_edges(parent_of: Mapping[int, int | None]) -> dict[tuple[int, int], int]:
    """Closure edges implied by parent pointers.

    Nodes on a parent cycle or below a missing parent get only the edges up to
    the point where the chain breaks.
    """
    edges: dict[tuple[int, int], int] = {}
    for node_id in parent_of:
        edges[(node_id, node_id)] = 0
        seen = {node_id}
        current = parent_of[node_id]
        distance = 1
        while current is not None and current in parent_of and current not in seen:
            edges[(current, node_id)] = distance
            seen.add(current)
            current = parent_of[current]
            distance += 1
    return edges
