"""CategorizationLedger - question <-> category links.

Every question with at least one link has exactly one primary link. All
writes to ``is_primary`` go through ``apply_primary`` so that the rule holds
after each call, not only after an audit.

Per-question updates are serialized with question locks; bulk calls process
each question in its own transaction and report per-question outcomes.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import Any

from sqlalchemy import distinct, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from qbank.config import settings
from qbank.core.errors import BusinessRuleViolation, ErrorKind, TransientStorageError
from qbank.core.identity import ActorProvider, StaticActorProvider
from qbank.infra.database import SessionFactory, read_session, unit_of_work
from qbank.infra.locks import LockManager
from qbank.infra.logging import get_logger, operation_context
from qbank.models import HierarchyEdge, QuestionBankCategory, QuestionCategorization
from qbank.schemas.categorization import (
    BulkCategorizationFailure,
    BulkCategorizationResult,
    CategorizationRead,
    CategorizationResult,
    CategorizationStatistics,
)
from qbank.schemas.category import CategoryRead
from qbank.schemas.common import PagedResult
from qbank.services.category_store import CategoryStore

logger = get_logger(__name__)

TRANSIENT_FAILURE = "transient_storage_failure"


def check_link_scores(weight: float | None, confidence_score: float | None) -> None:
    """Reject a negative weight or a confidence score outside 0..1."""
    if weight is not None and weight < 0:
        raise BusinessRuleViolation.invalid(f"Weight must not be negative, got {weight}")
    if confidence_score is not None and not 0 <= confidence_score <= 1:
        raise BusinessRuleViolation.invalid(
            f"Confidence score must be between 0 and 1, got {confidence_score}"
        )


def _chunks(items: Sequence[int], size: int) -> Iterable[Sequence[int]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


class CategorizationLedger:
    """Service for question categorizations."""

    def __init__(
        self,
        session_factory: SessionFactory | None = None,
        locks: LockManager | None = None,
        store: CategoryStore | None = None,
        actor_provider: ActorProvider | None = None,
        chunk_size: int | None = None,
    ) -> None:
        """Initialize the ledger.

        Args:
            session_factory: Async session factory (defaults to the store's)
            locks: Lock manager (defaults to the store's)
            store: Category store used to validate target categories
            actor_provider: Supplies ``assigned_by`` when a call omits it
            chunk_size: Questions per chunk in bulk calls
        """
        self.store = store or CategoryStore(session_factory, locks)
        self.session_factory = session_factory or self.store.session_factory
        self.locks = locks or self.store.locks
        self.actor_provider = actor_provider or StaticActorProvider()
        self.chunk_size = chunk_size or settings.bulk_chunk_size

    # ------------------------------------------------------------------
    # Primary flag
    # ------------------------------------------------------------------

    async def apply_primary(
        self,
        session: AsyncSession,
        rows: Sequence[QuestionCategorization],
        preferred: QuestionCategorization | None = None,
    ) -> QuestionCategorization | None:
        """Leave exactly one primary among ``rows`` (none if empty).

        ``preferred`` becomes primary when given. Otherwise the current
        primary stays, or the earliest assigned link is promoted.

        Demotions are flushed before the promotion so the partial unique
        index on primary links never sees two primaries for one question.
        """
        if not rows:
            return None
        if preferred is None:
            current = [row for row in rows if row.is_primary]
            preferred = current[0] if current else rows[0]
        demoted = False
        for row in rows:
            if row is not preferred and row.is_primary:
                row.is_primary = False
                demoted = True
        if demoted:
            await session.flush()
        preferred.is_primary = True
        await session.flush()
        return preferred

    # ------------------------------------------------------------------
    # Session-scoped helpers
    # ------------------------------------------------------------------

    async def rows_for_question(
        self,
        session: AsyncSession,
        question_id: int,
        lock: bool = True,
    ) -> list[QuestionCategorization]:
        """Links of a question in assignment order."""
        query = (
            select(QuestionCategorization)
            .where(QuestionCategorization.question_id == question_id)
            .order_by(QuestionCategorization.assigned_at, QuestionCategorization.id)
        )
        if lock:
            query = query.with_for_update()
        return list(await session.scalars(query))

    async def question_ids_in_category(
        self,
        session: AsyncSession,
        category_id: int,
    ) -> list[int]:
        rows = await session.scalars(
            select(QuestionCategorization.question_id)
            .where(QuestionCategorization.category_id == category_id)
            .order_by(QuestionCategorization.question_id)
        )
        return list(rows)

    async def require_assignable(
        self,
        session: AsyncSession,
        category_id: int,
    ) -> QuestionBankCategory:
        category = await self.store.require(session, category_id)
        if not category.is_active:
            raise BusinessRuleViolation.invalid(f"Category {category_id} is inactive")
        if not category.allow_questions:
            raise BusinessRuleViolation.invalid(
                f"Category {category_id} does not accept questions"
            )
        return category

    async def assign_in_session(
        self,
        session: AsyncSession,
        question_id: int,
        category_id: int,
        is_primary: bool = False,
        assigned_by: int | None = None,
        weight: float | None = None,
        confidence_score: float | None = None,
    ) -> QuestionCategorization:
        check_link_scores(weight, confidence_score)
        await self.require_assignable(session, category_id)

        rows = await self.rows_for_question(session, question_id)
        if any(row.category_id == category_id for row in rows):
            raise BusinessRuleViolation.invalid(
                f"Question {question_id} is already in category {category_id}"
            )

        link = QuestionCategorization(
            question_id=question_id,
            category_id=category_id,
            is_primary=False,
            weight=weight,
            confidence_score=confidence_score,
            assigned_by=(
                assigned_by if assigned_by is not None else self.actor_provider.current_actor_id()
            ),
        )
        session.add(link)
        await session.flush()

        has_primary = any(row.is_primary for row in rows)
        rows.append(link)
        await self.apply_primary(session, rows, link if is_primary or not has_primary else None)
        return link

    async def remove_in_session(
        self,
        session: AsyncSession,
        question_id: int,
        category_id: int,
    ) -> QuestionCategorization | None:
        """Delete a link; returns the primary link remaining afterwards."""
        rows = await self.rows_for_question(session, question_id)
        target = next((row for row in rows if row.category_id == category_id), None)
        if target is None:
            raise BusinessRuleViolation.not_found(
                f"Question {question_id} is not in category {category_id}"
            )

        rows.remove(target)
        await session.delete(target)
        await session.flush()
        return await self.apply_primary(session, rows)

    async def set_primary_in_session(
        self,
        session: AsyncSession,
        question_id: int,
        category_id: int,
    ) -> QuestionCategorization:
        rows = await self.rows_for_question(session, question_id)
        target = next((row for row in rows if row.category_id == category_id), None)
        if target is None:
            raise BusinessRuleViolation.not_found(
                f"Question {question_id} is not in category {category_id}"
            )
        await self.apply_primary(session, rows, target)
        return target

    async def move_question_in_session(
        self,
        session: AsyncSession,
        question_id: int,
        from_category_id: int,
        to_category_id: int,
    ) -> QuestionCategorization:
        """Re-point one link; merges into an existing link to the target.

        The caller validates the target category.
        """
        rows = await self.rows_for_question(session, question_id)
        source = next((row for row in rows if row.category_id == from_category_id), None)
        if source is None:
            raise BusinessRuleViolation.not_found(
                f"Question {question_id} is not in category {from_category_id}"
            )
        existing = next((row for row in rows if row.category_id == to_category_id), None)
        if existing is None:
            source.category_id = to_category_id
            await session.flush()
            return source

        was_primary = source.is_primary
        rows.remove(source)
        await session.delete(source)
        await session.flush()
        await self.apply_primary(session, rows, existing if was_primary else None)
        return existing

    async def move_category_links_in_session(
        self,
        session: AsyncSession,
        from_category_id: int,
        to_category_id: int,
    ) -> int:
        """Move every link of one category to another. Returns questions moved."""
        question_ids = await self.question_ids_in_category(session, from_category_id)
        for question_id in question_ids:
            await self.move_question_in_session(
                session, question_id, from_category_id, to_category_id
            )
        return len(question_ids)

    async def _primary_id(self, session: AsyncSession, question_id: int) -> int | None:
        return await session.scalar(
            select(QuestionCategorization.category_id).where(
                QuestionCategorization.question_id == question_id,
                QuestionCategorization.is_primary.is_(True),
            )
        )

    # ------------------------------------------------------------------
    # Single-question writes
    # ------------------------------------------------------------------

    async def assign(
        self,
        question_id: int,
        category_id: int,
        is_primary: bool = False,
        assigned_by: int | None = None,
        weight: float | None = None,
        confidence_score: float | None = None,
    ) -> CategorizationResult:
        """Link a question to a category.

        The link becomes primary when requested or when the question has no
        primary yet; any previous primary is cleared in the same transaction.
        """
        try:
            async with self.locks.questions([question_id]):
                async with unit_of_work(self.session_factory) as session:
                    link = await self.assign_in_session(
                        session,
                        question_id,
                        category_id,
                        is_primary=is_primary,
                        assigned_by=assigned_by,
                        weight=weight,
                        confidence_score=confidence_score,
                    )
                    result = CategorizationResult(
                        categorization=CategorizationRead.model_validate(link),
                        primary_category_id=await self._primary_id(session, question_id),
                    )
        except BusinessRuleViolation as e:
            logger.warning(
                "Assignment rejected",
                question_id=question_id,
                category_id=category_id,
                reason=e.message,
            )
            return CategorizationResult.from_violation(e)

        logger.info(
            "Question assigned",
            question_id=question_id,
            category_id=category_id,
            primary_category_id=result.primary_category_id,
        )
        return result

    async def remove(self, question_id: int, category_id: int) -> CategorizationResult:
        """Unlink a question; promotes the earliest remaining link if needed."""
        try:
            async with self.locks.questions([question_id]):
                async with unit_of_work(self.session_factory) as session:
                    primary = await self.remove_in_session(session, question_id, category_id)
        except BusinessRuleViolation as e:
            return CategorizationResult.from_violation(e)

        logger.info("Question unassigned", question_id=question_id, category_id=category_id)
        return CategorizationResult(
            primary_category_id=primary.category_id if primary else None,
        )

    async def set_primary(self, question_id: int, category_id: int) -> CategorizationResult:
        try:
            async with self.locks.questions([question_id]):
                async with unit_of_work(self.session_factory) as session:
                    link = await self.set_primary_in_session(session, question_id, category_id)
                    categorization = CategorizationRead.model_validate(link)
        except BusinessRuleViolation as e:
            return CategorizationResult.from_violation(e)

        logger.info("Primary category set", question_id=question_id, category_id=category_id)
        return CategorizationResult(
            categorization=categorization,
            primary_category_id=category_id,
        )

    async def update_categorization(
        self,
        question_id: int,
        category_id: int,
        weight: float | None = None,
        confidence_score: float | None = None,
        is_primary: bool | None = None,
    ) -> CategorizationResult:
        """Edit weight/confidence of a link; ``is_primary=True`` also promotes it.

        Clearing the primary flag is not supported: pick another primary
        instead.
        """
        if is_primary is False:
            return CategorizationResult.failure(
                ErrorKind.INVALID_OPERATION,
                "Clear a primary by setting another category as primary",
            )
        try:
            check_link_scores(weight, confidence_score)
            async with self.locks.questions([question_id]):
                async with unit_of_work(self.session_factory) as session:
                    rows = await self.rows_for_question(session, question_id)
                    link = next((r for r in rows if r.category_id == category_id), None)
                    if link is None:
                        raise BusinessRuleViolation.not_found(
                            f"Question {question_id} is not in category {category_id}"
                        )
                    if weight is not None:
                        link.weight = weight
                    if confidence_score is not None:
                        link.confidence_score = confidence_score
                    primary = await self.apply_primary(
                        session, rows, link if is_primary else None
                    )
                    categorization = CategorizationRead.model_validate(link)
        except BusinessRuleViolation as e:
            return CategorizationResult.from_violation(e)

        return CategorizationResult(
            categorization=categorization,
            primary_category_id=primary.category_id if primary else None,
        )

    # ------------------------------------------------------------------
    # Bulk writes
    # ------------------------------------------------------------------

    async def _bulk(
        self,
        question_ids: Sequence[int],
        operation: str,
        apply: Any,
    ) -> BulkCategorizationResult:
        """Run ``apply(session, question_id)`` once per question.

        Each question commits or rolls back on its own; questions are locked a
        chunk at a time.
        """
        ordered = list(dict.fromkeys(question_ids))
        result = BulkCategorizationResult()
        with operation_context(f"bulk_{operation}", questions=len(ordered)):
            for chunk in _chunks(ordered, self.chunk_size):
                async with self.locks.questions(chunk):
                    for question_id in chunk:
                        result.processed += 1
                        try:
                            async with unit_of_work(self.session_factory) as session:
                                await apply(session, question_id)
                        except BusinessRuleViolation as e:
                            failure = BulkCategorizationFailure(
                                question_id=question_id,
                                error_kind=e.kind.value,
                                error_message=e.message,
                            )
                        except TransientStorageError as e:
                            failure = BulkCategorizationFailure(
                                question_id=question_id,
                                error_kind=TRANSIENT_FAILURE,
                                error_message=str(e),
                            )
                        else:
                            result.succeeded.append(question_id)
                            continue
                        logger.warning(
                            "Question skipped",
                            question_id=question_id,
                            error_kind=failure.error_kind,
                            reason=failure.error_message,
                        )
                        result.failures.append(failure)

            result.success = not result.failures
            logger.info(
                "Bulk categorization finished",
                processed=result.processed,
                succeeded=len(result.succeeded),
                failed=len(result.failures),
            )
        return result

    async def bulk_assign(
        self,
        question_ids: Sequence[int],
        category_id: int,
        is_primary: bool = False,
        assigned_by: int | None = None,
    ) -> BulkCategorizationResult:
        async def apply(session: AsyncSession, question_id: int) -> None:
            await self.assign_in_session(
                session,
                question_id,
                category_id,
                is_primary=is_primary,
                assigned_by=assigned_by,
            )

        return await self._bulk(question_ids, "assign", apply)

    async def bulk_unassign(
        self,
        question_ids: Sequence[int],
        category_id: int,
    ) -> BulkCategorizationResult:
        async def apply(session: AsyncSession, question_id: int) -> None:
            await self.remove_in_session(session, question_id, category_id)

        return await self._bulk(question_ids, "unassign", apply)

    async def move_questions(
        self,
        question_ids: Sequence[int],
        from_category_id: int,
        to_category_id: int,
    ) -> BulkCategorizationResult:
        """Re-point links from one category to another, keeping primaries."""

        async def apply(session: AsyncSession, question_id: int) -> None:
            await self.require_assignable(session, to_category_id)
            await self.move_question_in_session(
                session, question_id, from_category_id, to_category_id
            )

        return await self._bulk(question_ids, "move", apply)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_question_categories(self, question_id: int) -> list[CategorizationRead]:
        async with read_session(self.session_factory) as session:
            rows = await self.rows_for_question(session, question_id, lock=False)
            return [CategorizationRead.model_validate(row) for row in rows]

    async def get_primary_category(self, question_id: int) -> CategoryRead | None:
        async with read_session(self.session_factory) as session:
            category = await session.scalar(
                select(QuestionBankCategory)
                .join(
                    QuestionCategorization,
                    QuestionCategorization.category_id == QuestionBankCategory.id,
                )
                .where(
                    QuestionCategorization.question_id == question_id,
                    QuestionCategorization.is_primary.is_(True),
                )
            )
            return CategoryRead.model_validate(category) if category else None

    def _category_filter(self, category_id: int, include_descendants: bool):
        if not include_descendants:
            return QuestionCategorization.category_id == category_id
        subtree = select(HierarchyEdge.descendant_id).where(
            HierarchyEdge.ancestor_id == category_id
        )
        return QuestionCategorization.category_id.in_(subtree)

    async def get_category_questions(
        self,
        category_id: int,
        include_descendants: bool = False,
        page_number: int = 1,
        page_size: int = 50,
    ) -> PagedResult[CategorizationRead]:
        """Links of a category (or its subtree), newest first."""
        page_number = max(page_number, 1)
        condition = self._category_filter(category_id, include_descendants)
        async with read_session(self.session_factory) as session:
            total = await session.scalar(
                select(func.count()).select_from(QuestionCategorization).where(condition)
            )
            rows = await session.scalars(
                select(QuestionCategorization)
                .where(condition)
                .order_by(
                    QuestionCategorization.assigned_at.desc(),
                    QuestionCategorization.id.desc(),
                )
                .offset((page_number - 1) * page_size)
                .limit(page_size)
            )
            items = [CategorizationRead.model_validate(row) for row in rows]

        return PagedResult[CategorizationRead](
            items=items,
            total_count=total or 0,
            page_number=page_number,
            page_size=page_size,
        )

    async def get_category_question_count(
        self,
        category_id: int,
        include_descendants: bool = False,
    ) -> int:
        """Distinct questions linked to the category (or anywhere in its subtree)."""
        condition = self._category_filter(category_id, include_descendants)
        async with read_session(self.session_factory) as session:
            count = await session.scalar(
                select(func.count(distinct(QuestionCategorization.question_id))).where(condition)
            )
            return count or 0

    async def is_question_in_category(
        self,
        question_id: int,
        category_id: int,
        include_descendants: bool = False,
    ) -> bool:
        condition = self._category_filter(category_id, include_descendants)
        async with read_session(self.session_factory) as session:
            found = await session.scalar(
                select(QuestionCategorization.id)
                .where(QuestionCategorization.question_id == question_id, condition)
                .limit(1)
            )
            return found is not None

    async def has_category_assignments(self, question_id: int) -> bool:
        async with read_session(self.session_factory) as session:
            found = await session.scalar(
                select(QuestionCategorization.id)
                .where(QuestionCategorization.question_id == question_id)
                .limit(1)
            )
            return found is not None

    async def get_categorization_statistics(self) -> CategorizationStatistics:
        async with read_session(self.session_factory) as session:
            total = await session.scalar(
                select(func.count()).select_from(QuestionCategorization)
            ) or 0
            automatic = await session.scalar(
                select(func.count())
                .select_from(QuestionCategorization)
                .where(QuestionCategorization.confidence_score.is_not(None))
            ) or 0
            per_question = (
                select(
                    QuestionCategorization.question_id,
                    func.count().label("links"),
                )
                .group_by(QuestionCategorization.question_id)
                .subquery()
            )
            questions = await session.scalar(
                select(func.count()).select_from(per_question)
            ) or 0
            multiple = await session.scalar(
                select(func.count()).select_from(per_question).where(per_question.c.links > 1)
            ) or 0
            with_primary = await session.scalar(
                select(func.count(distinct(QuestionCategorization.question_id))).where(
                    QuestionCategorization.is_primary.is_(True)
                )
            ) or 0
            last_updated = await session.scalar(
                select(func.max(QuestionCategorization.assigned_at))
            )

        return CategorizationStatistics(
            categorized_questions=questions,
            questions_with_primary_category=with_primary,
            questions_with_multiple_categories=multiple,
            average_categories_per_question=round(total / questions, 2) if questions else 0.0,
            total_categorizations=total,
            automatic_categorizations=automatic,
            manual_categorizations=total - automatic,
            last_updated=last_updated,
        )
