"""TreeTransfer - export subtrees as nested documents and import them back.

Exports carry active categories only, children ordered by sort order. An
import runs in a single transaction: either the whole document lands or
nothing does.
"""

from __future__ import annotations

from pydantic import ValidationError
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from qbank.config import settings
from qbank.core.errors import BusinessRuleViolation, ErrorKind
from qbank.infra.database import read_session, unit_of_work
from qbank.infra.locks import WHOLE_TREE
from qbank.infra.logging import get_logger, operation_context
from qbank.models import QuestionBankCategory, QuestionCategorization
from qbank.schemas.transfer import (
    CategoryExportNode,
    CategoryImportNode,
    CategoryTreeExport,
    CategoryTreeImport,
    MergeStrategy,
    TreeImportResult,
)
from qbank.services.category_store import CategoryStore

logger = get_logger(__name__)

IMPORT_SUFFIX = "_IMPORT"
CODE_MAX_LENGTH = 50

# Attributes written from an import node onto a category
IMPORTED_FIELDS = (
    "name",
    "description",
    "type",
    "level",
    "is_active",
    "allow_questions",
    "sort_order",
    "curriculum_code",
    "grade_level",
    "subject",
    "metadata_json",
)

# Activation changes go through delete, not through an import
OVERWRITE_EXCLUDED = frozenset({"is_active"})


class TreeTransfer:
    """Export and import of category subtrees."""

    def __init__(self, store: CategoryStore | None = None) -> None:
        self.store = store or CategoryStore()
        self.session_factory = self.store.session_factory
        self.locks = self.store.locks
        self.paths = self.store.paths

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    async def export_tree(
        self,
        root_id: int | None = None,
        include_question_counts: bool = False,
    ) -> CategoryTreeExport | None:
        """Export the subtree of ``root_id`` (or every root).

        Returns ``None`` when ``root_id`` does not name an active category.
        """
        async with read_session(self.session_factory) as session:
            if root_id is not None:
                root = await self.store.load(session, root_id)
                if root is None or not root.is_active:
                    return None
                rows = [root, *await self.paths.descendants(session, root)]
            else:
                rows = list(
                    await session.scalars(
                        select(QuestionBankCategory)
                        .where(QuestionBankCategory.is_active.is_(True))
                        .order_by(
                            QuestionBankCategory.depth,
                            QuestionBankCategory.sort_order,
                            QuestionBankCategory.id,
                        )
                    )
                )

            counts: dict[int, int] = {}
            if include_question_counts and rows:
                counts = dict(
                    (
                        await session.execute(
                            select(QuestionCategorization.category_id, func.count())
                            .where(
                                QuestionCategorization.category_id.in_([r.id for r in rows])
                            )
                            .group_by(QuestionCategorization.category_id)
                        )
                    ).all()
                )

        nodes: dict[int, CategoryExportNode] = {}
        top: list[CategoryExportNode] = []
        for row in rows:
            node = CategoryExportNode(
                id=row.id,
                code=row.code,
                question_count=counts.get(row.id, 0),
                created_at=row.created_at,
                updated_at=row.updated_at,
                **{name: getattr(row, name) for name in IMPORTED_FIELDS},
            )
            nodes[row.id] = node
            if row.id == root_id or (root_id is None and row.parent_id is None):
                top.append(node)
            elif row.parent_id in nodes:
                nodes[row.parent_id].children.append(node)

        logger.info("Tree exported", root_id=root_id, categories=len(nodes))
        return CategoryTreeExport(categories=top, version=settings.export_format_version)

    async def export_tree_json(
        self,
        root_id: int | None = None,
        include_question_counts: bool = False,
    ) -> str | None:
        export = await self.export_tree(root_id, include_question_counts)
        return export.model_dump_json(indent=2) if export is not None else None

    # ------------------------------------------------------------------
    # Import
    # ------------------------------------------------------------------

    async def _free_code(self, session: AsyncSession, code: str) -> str:
        attempt = 1
        while True:
            suffix = IMPORT_SUFFIX if attempt == 1 else f"{IMPORT_SUFFIX}{attempt}"
            candidate = code[: CODE_MAX_LENGTH - len(suffix)] + suffix
            if not await self.store.code_exists(session, candidate):
                return candidate
            attempt += 1

    async def _create(
        self,
        session: AsyncSession,
        code: str,
        values: dict,
        parent: QuestionBankCategory | None,
    ) -> QuestionBankCategory:
        if values["is_active"] and parent is not None and not parent.is_active:
            raise BusinessRuleViolation.invalid(
                f"Category '{code}' is active but its parent '{parent.code}' is inactive"
            )
        return await self.store.add_node(session, {"code": code, **values}, parent)

    async def _import_node(
        self,
        session: AsyncSession,
        node: CategoryImportNode,
        parent: QuestionBankCategory | None,
        strategy: MergeStrategy,
        result: TreeImportResult,
    ) -> None:
        values = {name: getattr(node, name) for name in IMPORTED_FIELDS}
        existing = await session.scalar(
            select(QuestionBankCategory).where(QuestionBankCategory.code == node.code)
        )

        if existing is None:
            target = await self._create(session, node.code, values, parent)
            result.categories_created += 1
        else:
            match strategy:
                case MergeStrategy.SKIP:
                    target = existing
                    result.categories_skipped += 1
                case MergeStrategy.OVERWRITE:
                    for name, value in values.items():
                        if name not in OVERWRITE_EXCLUDED:
                            setattr(existing, name, value)
                    await session.flush()
                    target = existing
                    result.categories_updated += 1
                case MergeStrategy.CREATE_NEW:
                    code = await self._free_code(session, node.code)
                    target = await self._create(session, code, values, parent)
                    result.categories_created += 1
                    result.warnings.append(f"Code '{node.code}' exists; imported as '{code}'")

        result.code_to_id[node.code] = target.id
        for child in node.children:
            await self._import_node(session, child, target, strategy, result)

    async def import_tree(
        self,
        document: CategoryTreeImport | CategoryTreeExport,
        parent_id: int | None = None,
        merge_strategy: MergeStrategy = MergeStrategy.SKIP,
    ) -> TreeImportResult:
        """Create the categories of ``document`` below ``parent_id``.

        Args:
            document: Nested categories; an export document is accepted as is
            parent_id: Where to attach the top-level nodes (``None`` for roots)
            merge_strategy: What to do with codes that already exist
        """
        if isinstance(document, CategoryTreeExport):
            document = document.to_import()

        parent_path = await self.store.current_path(parent_id)
        if parent_id is not None and parent_path is None:
            return TreeImportResult.failure(ErrorKind.NOT_FOUND, f"Category {parent_id} not found")

        result = TreeImportResult()
        with operation_context(
            "import_tree", parent_id=parent_id, strategy=merge_strategy.value
        ):
            try:
                async with self.locks.subtrees(parent_path or WHOLE_TREE):
                    async with unit_of_work(self.session_factory) as session:
                        parent = None
                        if parent_id is not None:
                            parent = await self.store.require(session, parent_id, lock=True)
                            self.paths.verify_locked(parent, parent_path)
                            if not parent.is_active:
                                raise BusinessRuleViolation.invalid(
                                    f"Parent category {parent_id} is inactive"
                                )
                        for node in document.categories:
                            await self._import_node(
                                session, node, parent, merge_strategy, result
                            )
            except BusinessRuleViolation as e:
                logger.warning("Tree import rejected", reason=e.message)
                return TreeImportResult.from_violation(e)

            logger.info(
                "Tree imported",
                created=result.categories_created,
                skipped=result.categories_skipped,
                updated=result.categories_updated,
            )
        return result

    async def import_tree_json(
        self,
        payload: str,
        parent_id: int | None = None,
        merge_strategy: MergeStrategy = MergeStrategy.SKIP,
    ) -> TreeImportResult:
        try:
            document = CategoryTreeImport.model_validate_json(payload)
        except ValidationError as e:
            return TreeImportResult.failure(
                ErrorKind.INVALID_OPERATION,
                f"Invalid import document: {e.error_count()} error(s)",
            )
        return await self.import_tree(document, parent_id, merge_strategy)
