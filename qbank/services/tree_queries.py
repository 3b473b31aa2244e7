"""TreeQueries - read-only views over the category tree.

Reads run outside any transaction and take no locks. Because structural
rewrites commit as one unit, a read sees the tree either before or after a
concurrent move, never half of it.
"""

from collections import Counter

from sqlalchemy import func, or_, select

from qbank.config import settings
from qbank.core import paths
from qbank.infra.database import SessionFactory, read_session
from qbank.infra.logging import get_logger
from qbank.models import HierarchyEdge, QuestionBankCategory, QuestionCategorization
from qbank.schemas.category import CategoryBreadcrumb, CategoryRead, CategoryTreeNode
from qbank.schemas.tree import (
    CategorySearchResult,
    MatchType,
    TreeSearchCriteria,
    TreeStatistics,
)
from qbank.services.category_store import CategoryStore

logger = get_logger(__name__)


def _read(rows) -> list[CategoryRead]:
    return [CategoryRead.model_validate(row) for row in rows]


def score_match(
    category: QuestionBankCategory,
    term: str | None,
    search_in_codes: bool = True,
    search_in_descriptions: bool = True,
) -> tuple[MatchType, float] | None:
    """Relevance of ``category`` for a search term; ``None`` if it does not match."""
    if not term:
        return MatchType.FILTER, 1.0

    needle = term.lower()
    name = category.name.lower()
    code = category.code.lower()
    if search_in_codes and code == needle:
        return MatchType.CODE, 1.0
    if name == needle:
        return MatchType.NAME, 0.9
    if name.startswith(needle):
        return MatchType.NAME, 0.8
    if needle in name:
        return MatchType.NAME, 0.6
    if search_in_codes and needle in code:
        return MatchType.CODE, 0.5
    if search_in_descriptions and category.description and needle in category.description.lower():
        return MatchType.DESCRIPTION, 0.3
    return None


class TreeQueries:
    """Ancestor, descendant, tree, statistics and search reads."""

    def __init__(
        self,
        session_factory: SessionFactory | None = None,
        store: CategoryStore | None = None,
    ) -> None:
        self.store = store or CategoryStore(session_factory)
        self.session_factory = session_factory or self.store.session_factory
        self.paths = self.store.paths
        self.closure = self.store.closure

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    async def get_ancestors(self, category_id: int) -> list[CategoryRead]:
        """Ancestors root first, derived from the materialized path."""
        async with read_session(self.session_factory) as session:
            node = await self.store.load(session, category_id)
            if node is None:
                return []
            return _read(await self.paths.ancestors(session, node))

    async def get_ancestors_from_closure(self, category_id: int) -> list[CategoryRead]:
        """Ancestors root first, derived from the closure table."""
        async with read_session(self.session_factory) as session:
            rows = await session.scalars(
                select(QuestionBankCategory)
                .join(HierarchyEdge, HierarchyEdge.ancestor_id == QuestionBankCategory.id)
                .where(HierarchyEdge.descendant_id == category_id, HierarchyEdge.depth > 0)
                .order_by(HierarchyEdge.depth.desc())
            )
            return _read(rows)

    async def get_descendants(
        self,
        category_id: int,
        max_depth: int | None = None,
        include_inactive: bool = False,
    ) -> list[CategoryRead]:
        async with read_session(self.session_factory) as session:
            node = await self.store.load(session, category_id)
            if node is None:
                return []
            return _read(
                await self.paths.descendants(
                    session, node, max_depth=max_depth, include_inactive=include_inactive
                )
            )

    async def get_children(
        self,
        category_id: int,
        include_inactive: bool = False,
    ) -> list[CategoryRead]:
        query = select(QuestionBankCategory).where(QuestionBankCategory.parent_id == category_id)
        if not include_inactive:
            query = query.where(QuestionBankCategory.is_active.is_(True))
        query = query.order_by(QuestionBankCategory.sort_order, QuestionBankCategory.id)
        async with read_session(self.session_factory) as session:
            return _read(await session.scalars(query))

    async def get_siblings(self, category_id: int) -> list[CategoryRead]:
        """Active nodes sharing the parent of ``category_id``, itself excluded."""
        async with read_session(self.session_factory) as session:
            node = await self.store.load(session, category_id)
            if node is None:
                return []
            if node.parent_id is None:
                condition = QuestionBankCategory.parent_id.is_(None)
            else:
                condition = QuestionBankCategory.parent_id == node.parent_id
            rows = await session.scalars(
                select(QuestionBankCategory)
                .where(
                    condition,
                    QuestionBankCategory.id != node.id,
                    QuestionBankCategory.is_active.is_(True),
                )
                .order_by(QuestionBankCategory.sort_order, QuestionBankCategory.id)
            )
            return _read(rows)

    async def get_parent(self, category_id: int) -> CategoryRead | None:
        async with read_session(self.session_factory) as session:
            node = await self.store.load(session, category_id)
            if node is None or node.parent_id is None:
                return None
            parent = await self.store.load(session, node.parent_id)
            return CategoryRead.model_validate(parent) if parent else None

    async def get_breadcrumbs(self, category_id: int) -> list[CategoryBreadcrumb]:
        """Root-to-node trail, the node itself last."""
        async with read_session(self.session_factory) as session:
            node = await self.store.load(session, category_id)
            if node is None:
                return []
            trail = await self.paths.ancestors(session, node)
            return [CategoryBreadcrumb.model_validate(row) for row in [*trail, node]]

    async def get_category_depth(self, category_id: int) -> int | None:
        async with read_session(self.session_factory) as session:
            return await session.scalar(
                select(QuestionBankCategory.depth).where(QuestionBankCategory.id == category_id)
            )

    async def is_descendant_of(self, category_id: int, potential_ancestor_id: int) -> bool:
        """True if ``category_id`` lies strictly below ``potential_ancestor_id``."""
        if category_id == potential_ancestor_id:
            return False
        async with read_session(self.session_factory) as session:
            return await self.closure.contains(session, potential_ancestor_id, category_id)

    async def would_create_circular_reference(
        self,
        category_id: int,
        new_parent_id: int | None,
    ) -> bool:
        if new_parent_id is None:
            return False
        if new_parent_id == category_id:
            return True
        async with read_session(self.session_factory) as session:
            return await self.closure.contains(session, category_id, new_parent_id)

    async def find_by_path(self, path: str) -> CategoryRead | None:
        if not paths.is_valid_path(path):
            return None
        async with read_session(self.session_factory) as session:
            node = await self.paths.find_by_path(session, path)
            return CategoryRead.model_validate(node) if node else None

    # ------------------------------------------------------------------
    # Trees and counts
    # ------------------------------------------------------------------

    async def get_subtree_question_count(self, category_id: int) -> int:
        """Distinct questions linked anywhere in the subtree of ``category_id``."""
        async with read_session(self.session_factory) as session:
            count = await session.scalar(
                select(func.count(func.distinct(QuestionCategorization.question_id)))
                .join(
                    HierarchyEdge,
                    HierarchyEdge.descendant_id == QuestionCategorization.category_id,
                )
                .where(HierarchyEdge.ancestor_id == category_id)
            )
            return count or 0

    async def get_tree(
        self,
        root_id: int | None = None,
        max_depth: int | None = None,
        include_question_counts: bool = False,
    ) -> list[CategoryTreeNode]:
        """Nested active categories below ``root_id`` (or every root).

        Args:
            root_id: Subtree to return; ``None`` for the whole forest
            max_depth: Levels below the top nodes (defaults to ``max_tree_depth``)
            include_question_counts: Fill direct and subtree question counts
        """
        if max_depth is None:
            max_depth = settings.max_tree_depth

        async with read_session(self.session_factory) as session:
            if root_id is not None:
                root = await self.store.load(session, root_id)
                if root is None or not root.is_active:
                    return []
                rows = [root, *await self.paths.descendants(session, root, max_depth=max_depth)]
                top_depth = root.depth
            else:
                rows = list(
                    await session.scalars(
                        select(QuestionBankCategory)
                        .where(
                            QuestionBankCategory.is_active.is_(True),
                            QuestionBankCategory.depth <= max_depth,
                        )
                        .order_by(
                            QuestionBankCategory.depth,
                            QuestionBankCategory.sort_order,
                            QuestionBankCategory.id,
                        )
                    )
                )
                top_depth = 0

            direct: dict[int, int] = {}
            subtree: dict[int, int] = {}
            if include_question_counts and rows:
                ids = [row.id for row in rows]
                direct = dict(
                    (
                        await session.execute(
                            select(
                                QuestionCategorization.category_id,
                                func.count(func.distinct(QuestionCategorization.question_id)),
                            )
                            .where(QuestionCategorization.category_id.in_(ids))
                            .group_by(QuestionCategorization.category_id)
                        )
                    ).all()
                )
                subtree = dict(
                    (
                        await session.execute(
                            select(
                                HierarchyEdge.ancestor_id,
                                func.count(func.distinct(QuestionCategorization.question_id)),
                            )
                            .join(
                                QuestionCategorization,
                                QuestionCategorization.category_id == HierarchyEdge.descendant_id,
                            )
                            .where(HierarchyEdge.ancestor_id.in_(ids))
                            .group_by(HierarchyEdge.ancestor_id)
                        )
                    ).all()
                )

        nodes: dict[int, CategoryTreeNode] = {}
        top: list[CategoryTreeNode] = []
        # Rows come shallowest first, so parents are built before children.
        for row in rows:
            node = CategoryTreeNode(
                category=CategoryRead.model_validate(row),
                direct_question_count=direct.get(row.id, 0),
                question_count=subtree.get(row.id, 0),
            )
            nodes[row.id] = node
            if row.depth == top_depth:
                top.append(node)
                continue
            parent = nodes.get(row.parent_id)
            if parent is not None:
                parent.children.append(node)
                parent.has_children = True
        return top

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    async def get_tree_statistics(self, root_id: int | None = None) -> TreeStatistics:
        """Shape of the active tree, or of one subtree."""
        async with read_session(self.session_factory) as session:
            if root_id is not None:
                root = await self.store.load(session, root_id)
                if root is None:
                    return TreeStatistics()
                rows = [root, *await self.paths.descendants(session, root)]
            else:
                rows = list(
                    await session.scalars(
                        select(QuestionBankCategory).where(
                            QuestionBankCategory.is_active.is_(True)
                        )
                    )
                )

        if not rows:
            return TreeStatistics()

        ids = {row.id for row in rows}
        child_counts = Counter(row.parent_id for row in rows if row.parent_id in ids)
        per_depth = Counter(row.depth for row in rows)
        roots = sum(
            1 for row in rows if row.parent_id is None or row.parent_id not in ids
        )
        parents = len(child_counts)
        timestamps = [row.updated_at or row.created_at for row in rows]
        timestamps = [ts for ts in timestamps if ts is not None]

        return TreeStatistics(
            total_categories=len(rows),
            root_categories=roots,
            leaf_categories=len(rows) - parents,
            max_depth=max(per_depth),
            average_depth=round(sum(row.depth for row in rows) / len(rows), 2),
            average_children_per_node=(
                round(sum(child_counts.values()) / parents, 2) if parents else 0.0
            ),
            categories_per_depth=dict(sorted(per_depth.items())),
            last_modified=max(timestamps) if timestamps else None,
        )

    async def _distribution(self, column) -> dict[str, int]:
        async with read_session(self.session_factory) as session:
            rows = await session.execute(
                select(column, func.count())
                .where(QuestionBankCategory.is_active.is_(True))
                .group_by(column)
            )
            return {value.value: count for value, count in rows}

    async def get_category_distribution(self) -> dict[str, int]:
        """Active categories per type."""
        return await self._distribution(QuestionBankCategory.type)

    async def get_level_distribution(self) -> dict[str, int]:
        """Active categories per level."""
        return await self._distribution(QuestionBankCategory.level)

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def search_tree(self, criteria: TreeSearchCriteria) -> list[CategorySearchResult]:
        """Filter categories and rank them by how well they match the term.

        Hits are ordered by relevance, then depth and name.
        """
        limit = criteria.max_results or settings.max_search_results
        query = select(QuestionBankCategory)
        if not criteria.include_inactive:
            query = query.where(QuestionBankCategory.is_active.is_(True))
        if criteria.type is not None:
            query = query.where(QuestionBankCategory.type == criteria.type)
        if criteria.level is not None:
            query = query.where(QuestionBankCategory.level == criteria.level)
        # SQL lower() folds ASCII only on some backends; non-ASCII terms are
        # matched by score_match alone.
        if criteria.search_term and criteria.search_term.isascii():
            term = criteria.search_term.lower()
            columns = [QuestionBankCategory.name]
            if criteria.search_in_codes:
                columns.append(QuestionBankCategory.code)
            if criteria.search_in_descriptions:
                columns.append(QuestionBankCategory.description)
            query = query.where(
                or_(*(func.lower(column).contains(term, autoescape=True) for column in columns))
            )

        async with read_session(self.session_factory) as session:
            if criteria.within_category_id is not None:
                scope = await self.store.load(session, criteria.within_category_id)
                if scope is None:
                    return []
                query = query.where(
                    QuestionBankCategory.materialized_path.startswith(
                        scope.materialized_path, autoescape=True
                    )
                )

            hits: list[tuple[QuestionBankCategory, MatchType, float]] = []
            for row in await session.scalars(query):
                scored = score_match(
                    row,
                    criteria.search_term,
                    search_in_codes=criteria.search_in_codes,
                    search_in_descriptions=criteria.search_in_descriptions,
                )
                if scored is not None:
                    hits.append((row, *scored))
            hits.sort(key=lambda hit: (-hit[2], hit[0].depth, hit[0].name))
            hits = hits[:limit]

            ancestor_ids = {
                i for row, _, _ in hits for i in paths.ancestor_ids(row.materialized_path)
            }
            by_id: dict[int, QuestionBankCategory] = {}
            if ancestor_ids:
                by_id.update(
                    (row.id, row)
                    for row in await session.scalars(
                        select(QuestionBankCategory).where(
                            QuestionBankCategory.id.in_(ancestor_ids)
                        )
                    )
                )

            results = []
            for row, match_type, score in hits:
                trail = [
                    by_id[i] for i in paths.ancestor_ids(row.materialized_path) if i in by_id
                ]
                trail.append(row)
                results.append(
                    CategorySearchResult(
                        category=CategoryRead.model_validate(row),
                        breadcrumbs=[CategoryBreadcrumb.model_validate(n) for n in trail],
                        match_type=match_type,
                        relevance_score=score,
                    )
                )

        logger.debug("Tree search", term=criteria.search_term, hits=len(results))
        return results
