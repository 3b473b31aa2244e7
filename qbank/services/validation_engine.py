"""ValidationEngine - audits and full-rebuild repairs.

Audits are read-only: they compare parent pointers, materialized paths and
closure rows (and the primary-category rule of the ledger) and report what
diverges. Nothing is corrected unless one of the explicit repair calls runs.

Rebuilds recompute everything from parent pointers. They are idempotent and
hold the whole-tree lock, but are only guaranteed correct when no writer in
another process is active.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from qbank.core import paths
from qbank.infra.database import SessionFactory, read_session, unit_of_work
from qbank.infra.locks import WHOLE_TREE, LockManager
from qbank.infra.logging import get_logger, operation_context
from qbank.models import QuestionBankCategory, QuestionCategorization
from qbank.schemas.categorization import (
    CategorizationIssueType,
    CategorizationValidationIssue,
    CategorizationValidationResult,
)
from qbank.schemas.tree import (
    IssueSeverity,
    TreeIssueType,
    TreeValidationIssue,
    TreeValidationResult,
)
from qbank.services.categorization_ledger import CategorizationLedger
from qbank.services.category_store import CategoryStore
from qbank.services.closure_index import expected_edges

logger = get_logger(__name__)


@dataclass
class Ancestry:
    """Parent chains resolved from parent pointers."""

    chains: dict[int, list[int]] = field(default_factory=dict)
    orphaned: set[int] = field(default_factory=set)
    cyclic: set[int] = field(default_factory=set)
    broken: set[int] = field(default_factory=set)


def resolve_ancestry(parent_of: Mapping[int, int | None]) -> Ancestry:
    """Walk every parent chain.

    ``chains`` maps each node with a clean chain to its ancestor ids, root
    first. ``orphaned`` nodes point at a missing parent, ``cyclic`` nodes sit
    on a parent cycle and ``broken`` holds every node without a clean chain.
    """
    result = Ancestry()
    result.orphaned = {
        node_id
        for node_id, parent_id in parent_of.items()
        if parent_id is not None and parent_id not in parent_of
    }

    for node_id in parent_of:
        chain: list[int] = []
        seen = {node_id}
        current = parent_of[node_id]
        while current is not None:
            if current == node_id:
                result.cyclic.add(node_id)
                break
            if current in seen or current not in parent_of:
                break
            seen.add(current)
            chain.append(current)
            current = parent_of[current]
        if current is None:
            result.chains[node_id] = list(reversed(chain))
        else:
            result.broken.add(node_id)
    return result


def clean_parents(
    parent_of: Mapping[int, int | None], ancestry: Ancestry
) -> dict[int, int | None]:
    """Parent pointers of the nodes whose chain reaches a root."""
    return {
        node_id: parent_id
        for node_id, parent_id in parent_of.items()
        if node_id in ancestry.chains
    }


def chain_path(chain: list[int], node_id: int) -> str:
    return paths.SEPARATOR + "".join(f"{i}{paths.SEPARATOR}" for i in [*chain, node_id])


class ValidationEngine:
    """Integrity audits and repairs for the tree and the ledger."""

    def __init__(
        self,
        session_factory: SessionFactory | None = None,
        locks: LockManager | None = None,
        store: CategoryStore | None = None,
        ledger: CategorizationLedger | None = None,
    ) -> None:
        self.store = store or CategoryStore(session_factory, locks)
        self.session_factory = session_factory or self.store.session_factory
        self.locks = locks or self.store.locks
        self.closure = self.store.closure
        self.ledger = ledger or CategorizationLedger(store=self.store)

    async def _load_nodes(
        self,
        session: AsyncSession,
        lock: bool = False,
    ) -> list[QuestionBankCategory]:
        query = select(QuestionBankCategory).order_by(QuestionBankCategory.id)
        if lock:
            query = query.with_for_update()
        return list(await session.scalars(query))

    # ------------------------------------------------------------------
    # Tree audit
    # ------------------------------------------------------------------

    async def validate_tree_integrity(self) -> TreeValidationResult:
        """Compare parent pointers with paths, depths and closure rows.

        Nodes on a cycle or below a missing parent are reported once, as
        CIRCULAR_REFERENCE or ORPHANED_CATEGORY; their paths and closure rows
        are not compared, matching what the rebuilds leave for them.
        """
        result = TreeValidationResult()
        async with read_session(self.session_factory) as session:
            nodes = await self._load_nodes(session)
            actual_edges = await self.closure.all_edges(session)

        parent_of = {node.id: node.parent_id for node in nodes}
        ancestry = resolve_ancestry(parent_of)

        for node in nodes:
            if node.id in ancestry.orphaned:
                result.add(
                    TreeValidationIssue(
                        type=TreeIssueType.ORPHANED_CATEGORY,
                        description=f"Parent {node.parent_id} does not exist",
                        category_id=node.id,
                    )
                )
            if node.id in ancestry.cyclic:
                result.add(
                    TreeValidationIssue(
                        type=TreeIssueType.CIRCULAR_REFERENCE,
                        description=f"Category {node.id} is its own ancestor",
                        category_id=node.id,
                    )
                )

            chain = ancestry.chains.get(node.id)
            if chain is None:
                continue
            expected_path = chain_path(chain, node.id)
            if node.materialized_path != expected_path:
                result.add(
                    TreeValidationIssue(
                        type=TreeIssueType.INVALID_PATH,
                        description=(
                            f"Path is {node.materialized_path!r}, "
                            f"expected {expected_path!r}"
                        ),
                        category_id=node.id,
                    )
                )
            if node.depth != len(chain):
                result.add(
                    TreeValidationIssue(
                        type=TreeIssueType.INVALID_DEPTH,
                        description=f"Depth is {node.depth}, expected {len(chain)}",
                        category_id=node.id,
                    )
                )

        expected = expected_edges(clean_parents(parent_of, ancestry))
        for (ancestor_id, descendant_id), depth in sorted(expected.items()):
            actual = actual_edges.get((ancestor_id, descendant_id))
            if actual is None:
                result.add(
                    TreeValidationIssue(
                        type=TreeIssueType.MISSING_CLOSURE_ROW,
                        description=f"Missing closure row {ancestor_id} -> {descendant_id}",
                        category_id=descendant_id,
                    )
                )
            elif actual != depth:
                result.add(
                    TreeValidationIssue(
                        type=TreeIssueType.CLOSURE_DEPTH_MISMATCH,
                        description=(
                            f"Closure row {ancestor_id} -> {descendant_id} has depth "
                            f"{actual}, expected {depth}"
                        ),
                        category_id=descendant_id,
                    )
                )
        for ancestor_id, descendant_id in sorted(set(actual_edges) - set(expected)):
            if {ancestor_id, descendant_id} & ancestry.broken:
                continue
            result.add(
                TreeValidationIssue(
                    type=TreeIssueType.EXTRA_CLOSURE_ROW,
                    description=f"Unexpected closure row {ancestor_id} -> {descendant_id}",
                    category_id=descendant_id,
                )
            )

        logger.info(
            "Tree integrity validated",
            is_valid=result.is_valid,
            issues=len(result.issues),
            categories=len(nodes),
        )
        return result

    # ------------------------------------------------------------------
    # Ledger audit
    # ------------------------------------------------------------------

    def _primary_counts(self):
        primaries = func.sum(case((QuestionCategorization.is_primary.is_(True), 1), else_=0))
        return (
            select(QuestionCategorization.question_id, primaries.label("primaries"))
            .group_by(QuestionCategorization.question_id)
            .subquery()
        )

    async def get_questions_without_primary_category(self) -> list[int]:
        counts = self._primary_counts()
        async with read_session(self.session_factory) as session:
            rows = await session.scalars(
                select(counts.c.question_id)
                .where(counts.c.primaries == 0)
                .order_by(counts.c.question_id)
            )
            return list(rows)

    async def get_questions_with_multiple_primary_categories(self) -> list[int]:
        counts = self._primary_counts()
        async with read_session(self.session_factory) as session:
            rows = await session.scalars(
                select(counts.c.question_id)
                .where(counts.c.primaries > 1)
                .order_by(counts.c.question_id)
            )
            return list(rows)

    async def validate_categorization_integrity(self) -> CategorizationValidationResult:
        result = CategorizationValidationResult()
        async with read_session(self.session_factory) as session:
            nodes = {node.id: node for node in await self._load_nodes(session)}
            links = list(
                await session.scalars(
                    select(QuestionCategorization).order_by(QuestionCategorization.id)
                )
            )
            dangling_edges = await self.closure.edges_referencing(session, nodes)

        for link in links:
            category = nodes.get(link.category_id)
            if category is None:
                result.add(
                    CategorizationValidationIssue(
                        type=CategorizationIssueType.ORPHANED_CATEGORIZATION,
                        description=f"Category {link.category_id} does not exist",
                        question_id=link.question_id,
                        category_id=link.category_id,
                    )
                )
            elif not category.is_active:
                result.add(
                    CategorizationValidationIssue(
                        type=CategorizationIssueType.INACTIVE_CATEGORY,
                        description=f"Category {link.category_id} is inactive",
                        question_id=link.question_id,
                        category_id=link.category_id,
                        severity=IssueSeverity.WARNING,
                    )
                )

        for question_id in await self.get_questions_without_primary_category():
            result.add(
                CategorizationValidationIssue(
                    type=CategorizationIssueType.MISSING_PRIMARY,
                    description=f"Question {question_id} has no primary category",
                    question_id=question_id,
                )
            )
        for question_id in await self.get_questions_with_multiple_primary_categories():
            result.add(
                CategorizationValidationIssue(
                    type=CategorizationIssueType.MULTIPLE_PRIMARY,
                    description=f"Question {question_id} has several primary categories",
                    question_id=question_id,
                )
            )

        for ancestor_id, descendant_id in dangling_edges:
            result.add(
                CategorizationValidationIssue(
                    type=CategorizationIssueType.INVALID_HIERARCHY_ENTRY,
                    description=(
                        f"Closure row {ancestor_id} -> {descendant_id} references "
                        "a missing category"
                    ),
                    category_id=descendant_id if descendant_id not in nodes else ancestor_id,
                )
            )

        logger.info(
            "Categorization integrity validated",
            is_valid=result.is_valid,
            issues=len(result.issues),
        )
        return result

    # ------------------------------------------------------------------
    # Repairs
    # ------------------------------------------------------------------

    async def fix_invalid_question_category_relationships(self) -> int:
        """Give every question with zero or several primaries exactly one.

        The lowest-id primary is kept when there are several; the lowest-id
        link is promoted when there are none. Returns the questions fixed.
        """
        question_ids = sorted(
            set(await self.get_questions_without_primary_category())
            | set(await self.get_questions_with_multiple_primary_categories())
        )
        fixed = 0
        with operation_context("fix_primary_categories", questions=len(question_ids)):
            for question_id in question_ids:
                async with self.locks.questions([question_id]):
                    async with unit_of_work(self.session_factory) as session:
                        rows = sorted(
                            await self.ledger.rows_for_question(session, question_id),
                            key=lambda row: row.id,
                        )
                        primaries = [row for row in rows if row.is_primary]
                        if len(primaries) == 1 or not rows:
                            continue
                        keep = primaries[0] if primaries else rows[0]
                        await self.ledger.apply_primary(session, rows, keep)
                        fixed += 1
                        logger.info(
                            "Primary category repaired",
                            question_id=question_id,
                            category_id=keep.category_id,
                        )
        return fixed

    async def rebuild_tree_paths(self) -> int:
        """Recompute every path and depth from parent pointers.

        Nodes on a cycle or below a missing parent are left untouched.
        Returns the number of rows rewritten.
        """
        async with self.locks.hold([WHOLE_TREE]):
            async with unit_of_work(self.session_factory) as session:
                nodes = await self._load_nodes(session, lock=True)
                ancestry = resolve_ancestry({node.id: node.parent_id for node in nodes})

                rewritten = 0
                for node in nodes:
                    chain = ancestry.chains.get(node.id)
                    if chain is None:
                        continue
                    path = chain_path(chain, node.id)
                    if node.materialized_path != path or node.depth != len(chain):
                        node.materialized_path = path
                        node.depth = len(chain)
                        rewritten += 1
                await session.flush()

        if ancestry.broken:
            logger.warning(
                "Categories skipped by path rebuild", category_ids=sorted(ancestry.broken)
            )
        logger.info("Tree paths rebuilt", rewritten=rewritten, categories=len(nodes))
        return rewritten

    async def rebuild_hierarchy_table(self) -> int:
        """Replace the closure table with the rows implied by parent pointers.

        Nodes on a cycle or below a missing parent get no rows. Returns the
        number of rows inserted.
        """
        async with self.locks.hold([WHOLE_TREE]):
            async with unit_of_work(self.session_factory) as session:
                nodes = await self._load_nodes(session, lock=True)
                parent_of = {node.id: node.parent_id for node in nodes}
                ancestry = resolve_ancestry(parent_of)
                inserted = await self.closure.replace_all(
                    session, expected_edges(clean_parents(parent_of, ancestry))
                )

        if ancestry.broken:
            logger.warning(
                "Categories skipped by closure rebuild",
                category_ids=sorted(ancestry.broken),
            )
        logger.info("Closure table rebuilt", inserted=inserted)
        return inserted
