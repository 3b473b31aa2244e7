"""PathIndex - ancestry stored as a materialized path on every category.

Ancestors come from splitting a node's own path; descendants are found with a
prefix scan (``LIKE '/1/4/%'``), which a b-tree index on the path column
serves as a range scan.

All methods work inside a session supplied by the caller so that path rewrites
commit in the same transaction as the matching closure-table changes.
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from qbank.core import paths
from qbank.core.errors import TransientStorageError
from qbank.infra.logging import get_logger
from qbank.models import QuestionBankCategory

logger = get_logger(__name__)


class PathIndex:
    """Reads and rewrites materialized paths."""

    def place(self, node: QuestionBankCategory, parent: QuestionBankCategory | None) -> None:
        """Set path and depth of a freshly flushed node (its id must be known)."""
        if parent is None:
            node.materialized_path = paths.root_path(node.id)
            node.depth = 0
        else:
            node.materialized_path = paths.child_path(parent.materialized_path, node.id)
            node.depth = parent.depth + 1

    async def ancestors(
        self,
        session: AsyncSession,
        node: QuestionBankCategory,
    ) -> list[QuestionBankCategory]:
        """Proper ancestors of ``node``, root first."""
        ids = paths.ancestor_ids(node.materialized_path)
        if not ids:
            return []
        rows = await session.scalars(
            select(QuestionBankCategory).where(QuestionBankCategory.id.in_(ids))
        )
        by_id = {row.id: row for row in rows}
        return [by_id[i] for i in ids if i in by_id]

    def _subtree_query(self, node: QuestionBankCategory):
        return select(QuestionBankCategory).where(
            QuestionBankCategory.materialized_path.startswith(
                node.materialized_path, autoescape=True
            )
        )

    async def descendants(
        self,
        session: AsyncSession,
        node: QuestionBankCategory,
        max_depth: int | None = None,
        include_inactive: bool = False,
    ) -> list[QuestionBankCategory]:
        """Descendants of ``node`` (excluding itself), shallowest first.

        Args:
            max_depth: Levels below ``node`` to include; ``None`` for all
        """
        query = self._subtree_query(node).where(QuestionBankCategory.id != node.id)
        if max_depth is not None:
            query = query.where(QuestionBankCategory.depth <= node.depth + max_depth)
        if not include_inactive:
            query = query.where(QuestionBankCategory.is_active.is_(True))
        query = query.order_by(
            QuestionBankCategory.depth,
            QuestionBankCategory.sort_order,
            QuestionBankCategory.id,
        )
        rows = await session.scalars(query)
        return list(rows)

    async def subtree(
        self,
        session: AsyncSession,
        node: QuestionBankCategory,
        lock: bool = False,
    ) -> list[QuestionBankCategory]:
        """``node`` and every descendant regardless of state, shallowest first.

        Args:
            lock: Take row locks (``FOR UPDATE``) on the whole subtree
        """
        query = self._subtree_query(node).order_by(
            QuestionBankCategory.depth,
            QuestionBankCategory.sort_order,
            QuestionBankCategory.id,
        )
        if lock:
            query = query.with_for_update()
        rows = await session.scalars(query)
        return list(rows)

    async def rewrite_subtree(
        self,
        session: AsyncSession,
        node: QuestionBankCategory,
        new_path: str,
    ) -> int:
        """Replace the path prefix of ``node`` and all its descendants.

        Depth is recomputed from the new path. Returns the number of rows
        rewritten.
        """
        old_path = node.materialized_path
        if old_path == new_path:
            return 0

        subtree = await self.subtree(session, node, lock=True)
        for row in subtree:
            row.materialized_path = paths.rebase(row.materialized_path, old_path, new_path)
            row.depth = paths.depth_of(row.materialized_path)
        await session.flush()

        logger.debug(
            "Subtree paths rewritten",
            category_id=node.id,
            old_path=old_path,
            new_path=new_path,
            rows=len(subtree),
        )
        return len(subtree)

    async def find_by_path(
        self,
        session: AsyncSession,
        path: str,
    ) -> QuestionBankCategory | None:
        return await session.scalar(
            select(QuestionBankCategory).where(QuestionBankCategory.materialized_path == path)
        )

    def verify_locked(self, node: QuestionBankCategory, locked_path: str | None) -> None:
        """Fail if ``node`` moved after its path was read for locking.

        Raises:
            TransientStorageError: The lock covers a stale position; retry
        """
        if locked_path is not None and node.materialized_path != locked_path:
            raise TransientStorageError(
                f"Category {node.id} moved from {locked_path} to "
                f"{node.materialized_path} concurrently; retry the operation"
            )
