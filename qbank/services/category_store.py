"""CategoryStore - canonical category records.

Creates categories (placing them in both the path and the closure index),
edits their attributes and answers simple lookups. Structural changes
(parent, path, depth) are never made here; they belong to ``TreeMutator``.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from qbank.core.errors import BusinessRuleViolation, ErrorKind
from qbank.infra.database import SessionFactory, read_session, unit_of_work
from qbank.infra.locks import LockManager, get_lock_manager
from qbank.infra.logging import get_logger
from qbank.models import CategoryLevel, CategoryType, QuestionBankCategory
from qbank.schemas.category import (
    BulkCategoryResult,
    CategoryCreate,
    CategoryRead,
    CategoryResult,
    CategoryUpdate,
    ReorderResult,
)
from qbank.schemas.delete_strategy import DeleteStrategy
from qbank.services.closure_index import ClosureIndex
from qbank.services.path_index import PathIndex

if TYPE_CHECKING:
    from qbank.schemas.tree import TreeDeleteResult
    from qbank.services.tree_mutator import TreeMutator

logger = get_logger(__name__)


class CategoryStore:
    """Service for category records."""

    def __init__(
        self,
        session_factory: SessionFactory | None = None,
        locks: LockManager | None = None,
        path_index: PathIndex | None = None,
        closure_index: ClosureIndex | None = None,
    ) -> None:
        """Initialize the store.

        Args:
            session_factory: Async session factory (defaults to the app engine)
            locks: Subtree lock manager (defaults to the process-wide one)
            path_index: Materialized path maintenance
            closure_index: Closure table maintenance
        """
        self.session_factory = session_factory
        self.locks = locks or get_lock_manager()
        self.paths = path_index or PathIndex()
        self.closure = closure_index or ClosureIndex()
        self._mutator: TreeMutator | None = None

    def _get_mutator(self) -> TreeMutator:
        """Lazy initialization to avoid a circular import."""
        if self._mutator is None:
            from qbank.services.tree_mutator import TreeMutator

            self._mutator = TreeMutator(store=self)
        return self._mutator

    # ------------------------------------------------------------------
    # Session-scoped helpers shared with the other services
    # ------------------------------------------------------------------

    async def load(
        self,
        session: AsyncSession,
        category_id: int,
        lock: bool = False,
    ) -> QuestionBankCategory | None:
        query = select(QuestionBankCategory).where(QuestionBankCategory.id == category_id)
        if lock:
            query = query.with_for_update()
        return await session.scalar(query)

    async def require(
        self,
        session: AsyncSession,
        category_id: int,
        lock: bool = False,
    ) -> QuestionBankCategory:
        """Load a category or abort the unit of work with NOT_FOUND."""
        node = await self.load(session, category_id, lock=lock)
        if node is None:
            raise BusinessRuleViolation.not_found(f"Category {category_id} not found")
        return node

    async def code_exists(
        self,
        session: AsyncSession,
        code: str,
        exclude_id: int | None = None,
    ) -> bool:
        query = select(QuestionBankCategory.id).where(QuestionBankCategory.code == code)
        if exclude_id is not None:
            query = query.where(QuestionBankCategory.id != exclude_id)
        return await session.scalar(query.limit(1)) is not None

    async def next_sort_order(self, session: AsyncSession, parent_id: int | None) -> int:
        """One past the largest sort order among the children of ``parent_id``."""
        if parent_id is None:
            condition = QuestionBankCategory.parent_id.is_(None)
        else:
            condition = QuestionBankCategory.parent_id == parent_id
        current = await session.scalar(
            select(func.max(QuestionBankCategory.sort_order)).where(condition)
        )
        return 0 if current is None else current + 1

    async def add_node(
        self,
        session: AsyncSession,
        values: Mapping[str, Any],
        parent: QuestionBankCategory | None,
    ) -> QuestionBankCategory:
        """Insert a category below ``parent`` and index it.

        The row is flushed once to obtain its id, then its path, depth and
        closure edges are written. Callers have already validated the code.
        """
        fields = dict(values)
        fields["parent_id"] = parent.id if parent is not None else None
        if fields.get("sort_order") is None:
            fields["sort_order"] = await self.next_sort_order(session, fields["parent_id"])

        node = QuestionBankCategory(**fields)
        session.add(node)
        await session.flush()

        self.paths.place(node, parent)
        await session.flush()
        await self.closure.add_node(session, node.id, fields["parent_id"])
        return node

    async def create_in_session(
        self,
        session: AsyncSession,
        payload: CategoryCreate,
        locked_parent_path: str | None = None,
    ) -> QuestionBankCategory:
        parent: QuestionBankCategory | None = None
        if payload.parent_id is not None:
            parent = await self.require(session, payload.parent_id, lock=True)
            self.paths.verify_locked(parent, locked_parent_path)
            if not parent.is_active:
                raise BusinessRuleViolation.invalid(
                    f"Parent category {parent.id} is inactive"
                )

        if await self.code_exists(session, payload.code):
            raise BusinessRuleViolation.invalid(
                f"Category code '{payload.code}' already exists"
            )

        values = payload.model_dump(exclude={"parent_id"})
        return await self.add_node(session, values, parent)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def current_path(self, category_id: int | None) -> str | None:
        """Committed path of a category, used to pick lock keys."""
        if category_id is None:
            return None
        async with read_session(self.session_factory) as session:
            return await session.scalar(
                select(QuestionBankCategory.materialized_path).where(
                    QuestionBankCategory.id == category_id
                )
            )

    async def get(self, category_id: int) -> CategoryRead | None:
        async with read_session(self.session_factory) as session:
            node = await self.load(session, category_id)
            return CategoryRead.model_validate(node) if node else None

    async def get_by_code(self, code: str) -> CategoryRead | None:
        async with read_session(self.session_factory) as session:
            node = await session.scalar(
                select(QuestionBankCategory).where(QuestionBankCategory.code == code)
            )
            return CategoryRead.model_validate(node) if node else None

    async def _list(self, *conditions: Any, include_inactive: bool = False) -> list[CategoryRead]:
        query = select(QuestionBankCategory).where(*conditions)
        if not include_inactive:
            query = query.where(QuestionBankCategory.is_active.is_(True))
        query = query.order_by(
            QuestionBankCategory.materialized_path,
            QuestionBankCategory.sort_order,
        )
        async with read_session(self.session_factory) as session:
            rows = await session.scalars(query)
            return [CategoryRead.model_validate(row) for row in rows]

    async def list_roots(self, include_inactive: bool = False) -> list[CategoryRead]:
        roots = await self._list(
            QuestionBankCategory.parent_id.is_(None),
            include_inactive=include_inactive,
        )
        return sorted(roots, key=lambda c: (c.sort_order, c.id))

    async def get_by_type(self, category_type: CategoryType) -> list[CategoryRead]:
        return await self._list(QuestionBankCategory.type == category_type)

    async def get_by_level(self, level: CategoryLevel) -> list[CategoryRead]:
        return await self._list(QuestionBankCategory.level == level)

    async def is_code_unique(self, code: str, exclude_id: int | None = None) -> bool:
        async with read_session(self.session_factory) as session:
            return not await self.code_exists(session, code, exclude_id)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create(self, payload: CategoryCreate) -> CategoryResult:
        """Create a category as a root or below an existing parent.

        Rejects a duplicate code. The new node gets path ``/{id}/`` as a root,
        or the parent's path plus its id, and depth ``parent.depth + 1``.
        """
        parent_path = await self.current_path(payload.parent_id)
        if payload.parent_id is not None and parent_path is None:
            return CategoryResult.failure(
                ErrorKind.NOT_FOUND, f"Category {payload.parent_id} not found"
            )

        try:
            async with self.locks.subtrees(parent_path):
                async with unit_of_work(self.session_factory) as session:
                    node = await self.create_in_session(session, payload, parent_path)
                    category = CategoryRead.model_validate(node)
        except BusinessRuleViolation as e:
            logger.warning("Category creation rejected", code=payload.code, reason=e.message)
            return CategoryResult.from_violation(e)

        logger.info(
            "Category created",
            category_id=category.id,
            code=category.code,
            parent_id=category.parent_id,
        )
        return CategoryResult(category=category)

    async def bulk_create(self, payloads: Sequence[CategoryCreate]) -> BulkCategoryResult:
        """Create categories one by one, each in its own transaction.

        Items are processed in order, so an item may name an earlier item's
        parent once that one has been created.
        """
        results = [await self.create(payload) for payload in payloads]
        failed = sum(1 for r in results if not r.success)
        logger.info("Bulk category creation finished", total=len(results), failed=failed)
        return BulkCategoryResult(success=failed == 0, results=results)

    async def update(self, category_id: int, payload: CategoryUpdate) -> CategoryResult:
        """Edit attributes of a category. Only fields set on ``payload`` change."""
        changes = payload.model_dump(exclude_unset=True)
        try:
            async with unit_of_work(self.session_factory) as session:
                node = await self.require(session, category_id, lock=True)

                new_code = changes.get("code")
                if new_code and new_code != node.code:
                    if await self.code_exists(session, new_code, exclude_id=node.id):
                        raise BusinessRuleViolation.invalid(
                            f"Category code '{new_code}' already exists"
                        )

                for field, value in changes.items():
                    setattr(node, field, value)
                await session.flush()
                category = CategoryRead.model_validate(node)
        except BusinessRuleViolation as e:
            logger.warning("Category update rejected", category_id=category_id, reason=e.message)
            return CategoryResult.from_violation(e)

        logger.info("Category updated", category_id=category_id, fields=sorted(changes))
        return CategoryResult(category=category)

    async def reorder_categories(
        self,
        parent_id: int | None,
        orders: Mapping[int, int],
    ) -> ReorderResult:
        """Assign new sort orders to children of ``parent_id``.

        Args:
            parent_id: Parent whose children are reordered (``None`` for roots)
            orders: Child id -> new sort order
        """
        try:
            async with unit_of_work(self.session_factory) as session:
                if parent_id is not None:
                    await self.require(session, parent_id)
                rows = list(
                    await session.scalars(
                        select(QuestionBankCategory)
                        .where(QuestionBankCategory.id.in_(list(orders)))
                        .with_for_update()
                    )
                )
                found = {row.id for row in rows}
                missing = sorted(set(orders) - found)
                if missing:
                    raise BusinessRuleViolation.not_found(f"Categories not found: {missing}")
                strangers = sorted(row.id for row in rows if row.parent_id != parent_id)
                if strangers:
                    raise BusinessRuleViolation.invalid(
                        f"Categories {strangers} are not children of {parent_id}"
                    )

                for row in rows:
                    row.sort_order = orders[row.id]
                await session.flush()
        except BusinessRuleViolation as e:
            logger.warning("Reorder rejected", parent_id=parent_id, reason=e.message)
            return ReorderResult.from_violation(e)

        logger.info("Categories reordered", parent_id=parent_id, count=len(orders))
        return ReorderResult(categories_updated=len(orders))

    async def delete(self, category_id: int, strategy: DeleteStrategy) -> TreeDeleteResult:
        """Soft-delete a category; children are handled per ``strategy``."""
        return await self._get_mutator().delete_category(category_id, strategy)
