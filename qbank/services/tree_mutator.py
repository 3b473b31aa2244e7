"""TreeMutator - the only place where a category's position changes.

Every structural change (move, copy, delete) runs in one transaction that
updates parent pointers, materialized paths and closure rows together, under
subtree locks on all the subtrees it touches.

Lock keys are read before the transaction starts; once the locks are held the
rows are re-read and checked against those keys, so a concurrent move that
slipped in between surfaces as a retryable ``TransientStorageError``.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING, Any, assert_never

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from qbank.core import paths
from qbank.core.errors import BusinessRuleViolation, ErrorKind
from qbank.infra.database import read_session, unit_of_work
from qbank.infra.logging import get_logger, operation_context
from qbank.models import QuestionBankCategory, QuestionCategorization
from qbank.schemas.delete_strategy import Block, CascadeDelete, DeleteStrategy, ReparentChildren
from qbank.schemas.tree import (
    BulkDeleteResult,
    BulkMoveResult,
    MoveRequest,
    TreeCopyResult,
    TreeDeleteResult,
    TreeMoveResult,
)
from qbank.services.category_store import CategoryStore

if TYPE_CHECKING:
    from qbank.services.categorization_ledger import CategorizationLedger

logger = get_logger(__name__)

CODE_MAX_LENGTH = 50
COPY_SUFFIX = "_COPY"

# Attributes carried over to a copied category
COPIED_FIELDS = (
    "name",
    "description",
    "type",
    "level",
    "sort_order",
    "allow_questions",
    "is_active",
    "metadata_json",
    "curriculum_code",
    "grade_level",
    "subject",
)


class TreeMutator:
    """Service for structural tree changes."""

    def __init__(
        self,
        store: CategoryStore | None = None,
        ledger: CategorizationLedger | None = None,
    ) -> None:
        self.store = store or CategoryStore()
        self.session_factory = self.store.session_factory
        self.locks = self.store.locks
        self.paths = self.store.paths
        self.closure = self.store.closure
        self._ledger = ledger

    def _get_ledger(self) -> CategorizationLedger:
        """Lazy initialization to avoid a circular import."""
        if self._ledger is None:
            from qbank.services.categorization_ledger import CategorizationLedger

            self._ledger = CategorizationLedger(store=self.store)
        return self._ledger

    # ------------------------------------------------------------------
    # Move
    # ------------------------------------------------------------------

    async def relocate(
        self,
        session: AsyncSession,
        node: QuestionBankCategory,
        new_parent: QuestionBankCategory | None,
        sort_order: int | None = None,
    ) -> int:
        """Put ``node`` and its subtree under ``new_parent``. No rule checks.

        Returns the number of categories whose path changed.
        """
        new_parent_id = new_parent.id if new_parent is not None else None
        if sort_order is None:
            sort_order = await self.store.next_sort_order(session, new_parent_id)

        new_path = paths.build_path(
            new_parent.materialized_path if new_parent is not None else None,
            node.id,
        )
        affected = await self.paths.rewrite_subtree(session, node, new_path)

        node.parent_id = new_parent_id
        node.sort_order = sort_order
        await session.flush()
        await self.closure.move_subtree(session, node.id, new_parent_id)
        return affected

    async def move_in_session(
        self,
        session: AsyncSession,
        category_id: int,
        new_parent_id: int | None,
        new_sort_order: int | None = None,
        locked_path: str | None = None,
        locked_parent_path: str | None = None,
    ) -> TreeMoveResult:
        if new_parent_id == category_id:
            raise BusinessRuleViolation.invalid(
                f"Category {category_id} cannot become its own parent"
            )

        node = await self.store.require(session, category_id, lock=True)
        self.paths.verify_locked(node, locked_path)
        if not node.is_active:
            raise BusinessRuleViolation.invalid(f"Category {category_id} is inactive")

        new_parent: QuestionBankCategory | None = None
        if new_parent_id is not None:
            new_parent = await self.store.require(session, new_parent_id, lock=True)
            self.paths.verify_locked(new_parent, locked_parent_path)
            if not new_parent.is_active:
                raise BusinessRuleViolation.invalid(
                    f"Target parent {new_parent_id} is inactive"
                )
            if await self.closure.contains(
                session, node.id, new_parent.id
            ) or new_parent.materialized_path.startswith(node.materialized_path):
                raise BusinessRuleViolation.invalid(
                    f"Moving category {category_id} under {new_parent_id} "
                    "would create a circular reference"
                )

        if node.parent_id == new_parent_id:
            if new_sort_order is not None:
                node.sort_order = new_sort_order
                await session.flush()
            return TreeMoveResult(
                categories_affected=0,
                warnings=["Category already has this parent; only sort order applied"],
            )

        affected = await self.relocate(session, node, new_parent, new_sort_order)
        return TreeMoveResult(categories_affected=affected)

    async def move_category(
        self,
        category_id: int,
        new_parent_id: int | None,
        new_sort_order: int | None = None,
    ) -> TreeMoveResult:
        """Move a category with its subtree.

        ``new_parent_id=None`` makes the category a root. Without
        ``new_sort_order`` the node is appended after its new siblings.
        Moving a node below itself or one of its descendants is rejected.
        """
        node_path = await self.store.current_path(category_id)
        if node_path is None:
            return TreeMoveResult.failure(ErrorKind.NOT_FOUND, f"Category {category_id} not found")
        parent_path = await self.store.current_path(new_parent_id)
        if new_parent_id is not None and parent_path is None:
            return TreeMoveResult.failure(
                ErrorKind.NOT_FOUND, f"Category {new_parent_id} not found"
            )

        try:
            async with self.locks.subtrees(node_path, parent_path):
                async with unit_of_work(self.session_factory) as session:
                    result = await self.move_in_session(
                        session,
                        category_id,
                        new_parent_id,
                        new_sort_order,
                        locked_path=node_path,
                        locked_parent_path=parent_path,
                    )
        except BusinessRuleViolation as e:
            logger.warning(
                "Move rejected",
                category_id=category_id,
                new_parent_id=new_parent_id,
                reason=e.message,
            )
            return TreeMoveResult.from_violation(e)

        logger.info(
            "Category moved",
            category_id=category_id,
            new_parent_id=new_parent_id,
            categories_affected=result.categories_affected,
        )
        return result

    async def bulk_move(self, moves: Sequence[MoveRequest]) -> BulkMoveResult:
        """Apply moves in order, each in its own transaction."""
        with operation_context("bulk_move", categories=len(moves)):
            results = [
                await self.move_category(m.category_id, m.new_parent_id, m.new_sort_order)
                for m in moves
            ]
            failed = sum(1 for r in results if not r.success)
            logger.info("Bulk move finished", total=len(results), failed=failed)
        return BulkMoveResult(success=failed == 0, results=results)

    # ------------------------------------------------------------------
    # Copy
    # ------------------------------------------------------------------

    async def _copy_code(self, session: AsyncSession, code: str, taken: set[str]) -> str:
        """First free code of the form ``{code}_COPY``, ``{code}_COPY2``, ..."""
        attempt = 1
        while True:
            suffix = COPY_SUFFIX if attempt == 1 else f"{COPY_SUFFIX}{attempt}"
            candidate = code[: CODE_MAX_LENGTH - len(suffix)] + suffix
            if candidate not in taken and not await self.store.code_exists(session, candidate):
                taken.add(candidate)
                return candidate
            attempt += 1

    async def copy_in_session(
        self,
        session: AsyncSession,
        category_id: int,
        new_parent_id: int | None,
        include_descendants: bool = True,
        new_name: str | None = None,
        locked_path: str | None = None,
        locked_parent_path: str | None = None,
    ) -> TreeCopyResult:
        source = await self.store.require(session, category_id)
        self.paths.verify_locked(source, locked_path)

        target: QuestionBankCategory | None = None
        if new_parent_id is not None:
            target = await self.store.require(session, new_parent_id, lock=True)
            self.paths.verify_locked(target, locked_parent_path)
            if not target.is_active:
                raise BusinessRuleViolation.invalid(
                    f"Target parent {new_parent_id} is inactive"
                )

        # Snapshot before inserting: copying into the source's own subtree
        # must not pick up the fresh copies.
        snapshot = [source]
        if include_descendants:
            snapshot += await self.paths.descendants(session, source)
        originals: list[dict[str, Any]] = [
            {
                "id": row.id,
                "parent_id": row.parent_id,
                "code": row.code,
                **{field: getattr(row, field) for field in COPIED_FIELDS},
            }
            for row in snapshot
        ]

        copies: dict[int, QuestionBankCategory] = {}
        taken: set[str] = set()
        for original in originals:
            if original["id"] == source.id:
                parent = target
                values = {field: original[field] for field in COPIED_FIELDS}
                values["name"] = new_name or f"{original['name']} (Copy)"
                values["sort_order"] = None
            elif original["parent_id"] in copies:
                parent = copies[original["parent_id"]]
                values = {field: original[field] for field in COPIED_FIELDS}
            else:
                # Below an inactive intermediate node that was not copied
                continue
            values["code"] = await self._copy_code(session, original["code"], taken)
            copies[original["id"]] = await self.store.add_node(session, values, parent)

        root = copies[source.id]
        return TreeCopyResult(
            new_category_id=root.id,
            categories_copied=len(copies),
            id_mapping={old: new.id for old, new in copies.items()},
        )

    async def copy_category(
        self,
        category_id: int,
        new_parent_id: int | None,
        include_descendants: bool = True,
        new_name: str | None = None,
    ) -> TreeCopyResult:
        """Deep-copy a category (and its active descendants) under a new parent.

        Copies get fresh ids and codes suffixed ``_COPY``; questions are not
        copied.
        """
        source_path = await self.store.current_path(category_id)
        if source_path is None:
            return TreeCopyResult.failure(
                ErrorKind.NOT_FOUND, f"Category {category_id} not found"
            )
        parent_path = await self.store.current_path(new_parent_id)
        if new_parent_id is not None and parent_path is None:
            return TreeCopyResult.failure(
                ErrorKind.NOT_FOUND, f"Category {new_parent_id} not found"
            )

        try:
            async with self.locks.subtrees(source_path, parent_path):
                async with unit_of_work(self.session_factory) as session:
                    result = await self.copy_in_session(
                        session,
                        category_id,
                        new_parent_id,
                        include_descendants=include_descendants,
                        new_name=new_name,
                        locked_path=source_path,
                        locked_parent_path=parent_path,
                    )
        except BusinessRuleViolation as e:
            logger.warning("Copy rejected", category_id=category_id, reason=e.message)
            return TreeCopyResult.from_violation(e)

        logger.info(
            "Category copied",
            category_id=category_id,
            new_category_id=result.new_category_id,
            categories_copied=result.categories_copied,
        )
        return result

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    async def _direct_question_count(self, session: AsyncSession, category_id: int) -> int:
        count = await session.scalar(
            select(func.count())
            .select_from(QuestionCategorization)
            .where(QuestionCategorization.category_id == category_id)
        )
        return count or 0

    async def _children(
        self,
        session: AsyncSession,
        category_id: int,
        active_only: bool = False,
    ) -> list[QuestionBankCategory]:
        query = (
            select(QuestionBankCategory)
            .where(QuestionBankCategory.parent_id == category_id)
            .order_by(QuestionBankCategory.sort_order, QuestionBankCategory.id)
            .with_for_update()
        )
        if active_only:
            query = query.where(QuestionBankCategory.is_active.is_(True))
        return list(await session.scalars(query))

    async def delete_in_session(
        self,
        session: AsyncSession,
        category_id: int,
        strategy: DeleteStrategy,
        locked_path: str | None = None,
    ) -> TreeDeleteResult:
        node = await self.store.require(session, category_id, lock=True)
        self.paths.verify_locked(node, locked_path)
        if not node.is_active:
            raise BusinessRuleViolation.invalid(f"Category {category_id} is already deleted")

        result = TreeDeleteResult()
        match strategy:
            case Block():
                if await self._children(session, node.id, active_only=True):
                    raise BusinessRuleViolation.invalid(
                        f"Category {category_id} has children"
                    )
                if await self._direct_question_count(session, node.id):
                    raise BusinessRuleViolation.invalid(
                        f"Category {category_id} has questions"
                    )
                node.is_active = False
                result.categories_deleted = 1

            case ReparentChildren():
                parent = None
                if node.parent_id is not None:
                    parent = await self.store.require(session, node.parent_id, lock=True)

                for child in await self._children(session, node.id):
                    await self.relocate(session, child, parent)

                if await self._direct_question_count(session, node.id):
                    if parent is not None and parent.is_active and parent.allow_questions:
                        ledger = self._get_ledger()
                        result.questions_reassigned = (
                            await ledger.move_category_links_in_session(session, node.id, parent.id)
                        )
                    else:
                        result.warnings.append(
                            f"Questions of category {category_id} were left in place: "
                            "no parent accepting questions"
                        )
                node.is_active = False
                result.categories_deleted = 1

            case CascadeDelete():
                for row in await self.paths.subtree(session, node, lock=True):
                    if row.is_active:
                        row.is_active = False
                        result.categories_deleted += 1

            case _:
                assert_never(strategy)

        await session.flush()
        return result

    async def delete_category(
        self,
        category_id: int,
        strategy: DeleteStrategy,
    ) -> TreeDeleteResult:
        """Soft-delete a category, handling its children per ``strategy``.

        Rows are never removed: deleted categories keep their path and
        closure rows and disappear from default reads.
        """
        node_path = await self.store.current_path(category_id)
        if node_path is None:
            return TreeDeleteResult.failure(
                ErrorKind.NOT_FOUND, f"Category {category_id} not found"
            )
        # Reparenting writes below the parent; lock from there.
        lock_path = node_path
        if isinstance(strategy, ReparentChildren):
            lock_path = paths.parent_path(node_path) or node_path

        async with read_session(self.session_factory) as session:
            question_ids = await self._get_ledger().question_ids_in_category(session, category_id)

        try:
            async with self.locks.subtrees(lock_path), self.locks.questions(question_ids):
                async with unit_of_work(self.session_factory) as session:
                    result = await self.delete_in_session(
                        session, category_id, strategy, locked_path=node_path
                    )
        except BusinessRuleViolation as e:
            logger.warning(
                "Delete rejected",
                category_id=category_id,
                strategy=strategy.kind,
                reason=e.message,
            )
            return TreeDeleteResult.from_violation(e)

        logger.info(
            "Category deleted",
            category_id=category_id,
            strategy=strategy.kind,
            categories_deleted=result.categories_deleted,
            questions_reassigned=result.questions_reassigned,
        )
        return result

    async def bulk_delete(
        self,
        category_ids: Sequence[int],
        strategy: DeleteStrategy,
    ) -> BulkDeleteResult:
        """Delete categories in order, each in its own transaction."""
        with operation_context(
            "bulk_delete", categories=len(category_ids), strategy=strategy.kind
        ):
            results = [await self.delete_category(cid, strategy) for cid in category_ids]
            failed = sum(1 for r in results if not r.success)
            logger.info("Bulk delete finished", total=len(results), failed=failed)
        return BulkDeleteResult(success=failed == 0, results=results)
