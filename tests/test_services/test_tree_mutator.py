"""Tests for TreeMutator: move, copy and delete."""

import pytest
from sqlalchemy import select

from qbank.core.errors import ErrorKind, LockTimeoutError
from qbank.infra.database import read_session
from qbank.models import QuestionBankCategory
from qbank.schemas.category import CategoryUpdate
from qbank.schemas.delete_strategy import Block, CascadeDelete, ReparentChildren
from qbank.schemas.tree import MoveRequest
from qbank.services import (
    CategorizationLedger,
    CategoryStore,
    TreeMutator,
    TreeQueries,
    ValidationEngine,
)


async def assert_indexes_agree(session_factory, queries: TreeQueries) -> None:
    """Path-derived and closure-derived ancestors match for every node."""
    async with read_session(session_factory) as session:
        ids = list(await session.scalars(select(QuestionBankCategory.id)))
    for category_id in ids:
        from_path = [c.id for c in await queries.get_ancestors(category_id)]
        from_closure = [c.id for c in await queries.get_ancestors_from_closure(category_id)]
        assert from_path == from_closure, category_id


class TestMove:
    @pytest.mark.asyncio
    async def test_created_chain(self, queries: TreeQueries, abc_tree):
        a, b, c = abc_tree

        assert [x.id for x in await queries.get_ancestors(c.id)] == [a.id, b.id]
        assert [x.id for x in await queries.get_descendants(a.id)] == [b.id, c.id]
        assert await queries.get_category_depth(c.id) == 2

    @pytest.mark.asyncio
    async def test_move_under_own_grandchild_fails(
        self, mutator: TreeMutator, queries: TreeQueries, abc_tree
    ):
        a, b, c = abc_tree

        result = await mutator.move_category(a.id, c.id)

        assert not result.success
        assert result.error_kind == ErrorKind.INVALID_OPERATION
        assert "circular" in result.error_message
        assert (await queries.get_parent(c.id)).id == b.id
        assert [x.id for x in await queries.get_descendants(a.id)] == [b.id, c.id]
        assert (await queries.get_breadcrumbs(a.id))[0].id == a.id

    @pytest.mark.asyncio
    async def test_move_under_itself_fails(self, mutator: TreeMutator, abc_tree):
        _, b, _ = abc_tree
        result = await mutator.move_category(b.id, b.id)
        assert result.error_kind == ErrorKind.INVALID_OPERATION

    @pytest.mark.asyncio
    async def test_promote_to_root(
        self, mutator: TreeMutator, store: CategoryStore, queries: TreeQueries, abc_tree
    ):
        a, b, c = abc_tree

        result = await mutator.move_category(c.id, None)

        assert result.success
        assert result.categories_affected == 1
        moved = await store.get(c.id)
        assert moved.depth == 0
        assert moved.materialized_path == f"/{c.id}/"
        assert moved.parent_id is None
        assert c.id not in [x.id for x in await queries.get_descendants(a.id)]
        assert c.id not in [x.id for x in await queries.get_descendants(b.id)]
        assert await queries.get_ancestors_from_closure(c.id) == []

    @pytest.mark.asyncio
    async def test_descendant_depths_shift_with_subtree(
        self, mutator: TreeMutator, store: CategoryStore, make_category, session_factory, queries
    ):
        x = await make_category("X")
        y = await make_category("Y", x.id)
        z = await make_category("Z")
        w = await make_category("W", z.id)
        v = await make_category("V", w.id)

        result = await mutator.move_category(w.id, y.id)

        assert result.categories_affected == 2
        moved = await store.get(w.id)
        child = await store.get(v.id)
        assert moved.depth == (await store.get(y.id)).depth + 1
        assert child.depth - v.depth == moved.depth - w.depth
        assert child.materialized_path == f"/{x.id}/{y.id}/{w.id}/{v.id}/"
        assert await queries.is_descendant_of(v.id, x.id)
        assert not await queries.is_descendant_of(v.id, z.id)
        await assert_indexes_agree(session_factory, queries)

    @pytest.mark.asyncio
    async def test_move_appends_after_new_siblings(
        self, mutator: TreeMutator, store: CategoryStore, make_category
    ):
        root = await make_category("ROOT")
        await make_category("FIRST", root.id)
        await make_category("SECOND", root.id)
        loose = await make_category("LOOSE")

        await mutator.move_category(loose.id, root.id)
        assert (await store.get(loose.id)).sort_order == 2

        await mutator.move_category(loose.id, None, new_sort_order=0)
        assert (await store.get(loose.id)).sort_order == 0

    @pytest.mark.asyncio
    async def test_same_parent_only_changes_sort_order(
        self, mutator: TreeMutator, store: CategoryStore, abc_tree
    ):
        _, b, c = abc_tree

        result = await mutator.move_category(c.id, b.id, new_sort_order=7)

        assert result.success
        assert result.categories_affected == 0
        assert result.warnings
        moved = await store.get(c.id)
        assert moved.sort_order == 7
        assert moved.materialized_path == c.materialized_path

    @pytest.mark.asyncio
    async def test_missing_nodes(self, mutator: TreeMutator, abc_tree):
        a, _, _ = abc_tree
        assert (await mutator.move_category(404, a.id)).error_kind == ErrorKind.NOT_FOUND
        assert (await mutator.move_category(a.id, 404)).error_kind == ErrorKind.NOT_FOUND

    @pytest.mark.asyncio
    async def test_inactive_parent_rejected(self, mutator: TreeMutator, make_category, abc_tree):
        _, _, c = abc_tree
        closed = await make_category("CLOSED", is_active=False)

        result = await mutator.move_category(c.id, closed.id)
        assert result.error_kind == ErrorKind.INVALID_OPERATION

    @pytest.mark.asyncio
    async def test_lock_timeout_propagates(self, mutator: TreeMutator, locks, abc_tree):
        a, _, c = abc_tree

        async with locks.subtrees(a.materialized_path):
            with pytest.raises(LockTimeoutError):
                await mutator.move_category(c.id, None)

    @pytest.mark.asyncio
    async def test_bulk_move_reports_each_item(self, mutator: TreeMutator, make_category, abc_tree):
        a, b, c = abc_tree
        other = await make_category("OTHER")

        result = await mutator.bulk_move(
            [
                MoveRequest(category_id=c.id, new_parent_id=other.id),
                MoveRequest(category_id=a.id, new_parent_id=b.id),
            ]
        )

        assert result.success is False
        assert [r.success for r in result.results] == [True, False]

    @pytest.mark.asyncio
    async def test_many_moves_keep_tree_valid(
        self, mutator: TreeMutator, make_category, validation: ValidationEngine,
        session_factory, queries,
    ):
        nodes = [await make_category("N0")]
        for i in range(1, 7):
            nodes.append(await make_category(f"N{i}", nodes[(i - 1) // 2].id))

        await mutator.move_category(nodes[1].id, nodes[6].id)
        await mutator.move_category(nodes[3].id, None)
        await mutator.move_category(nodes[2].id, nodes[3].id)
        await mutator.move_category(nodes[0].id, nodes[4].id)

        report = await validation.validate_tree_integrity()
        assert report.is_valid, report.issues
        await assert_indexes_agree(session_factory, queries)


class TestCopy:
    @pytest.mark.asyncio
    async def test_copy_subtree(
        self, mutator: TreeMutator, store: CategoryStore, queries, abc_tree
    ):
        _, b, c = abc_tree

        result = await mutator.copy_category(b.id, None)

        assert result.success
        assert result.categories_copied == 2
        assert set(result.id_mapping) == {b.id, c.id}
        root = await store.get(result.new_category_id)
        assert root.name == "B (Copy)"
        assert root.code == "B_COPY"
        assert root.materialized_path == f"/{root.id}/"
        children = await queries.get_children(root.id)
        assert [child.code for child in children] == ["C_COPY"]
        assert children[0].id == result.id_mapping[c.id]

    @pytest.mark.asyncio
    async def test_copy_codes_get_numeric_suffix(self, mutator: TreeMutator, store, abc_tree):
        _, b, _ = abc_tree

        await mutator.copy_category(b.id, None)
        second = await mutator.copy_category(b.id, None, new_name="Second")

        root = await store.get(second.new_category_id)
        assert root.code == "B_COPY2"
        assert root.name == "Second"

    @pytest.mark.asyncio
    async def test_copy_without_descendants(self, mutator: TreeMutator, abc_tree):
        a, b, _ = abc_tree
        result = await mutator.copy_category(b.id, a.id, include_descendants=False)
        assert result.categories_copied == 1

    @pytest.mark.asyncio
    async def test_copy_into_own_subtree(
        self, mutator: TreeMutator, validation: ValidationEngine, queries, abc_tree
    ):
        a, _, c = abc_tree

        result = await mutator.copy_category(a.id, c.id)

        assert result.categories_copied == 3
        assert len(await queries.get_descendants(a.id)) == 5
        assert (await validation.validate_tree_integrity()).is_valid

    @pytest.mark.asyncio
    async def test_inactive_descendants_are_not_copied(self, mutator: TreeMutator, abc_tree):
        _, b, c = abc_tree
        await mutator.delete_category(c.id, CascadeDelete())

        result = await mutator.copy_category(b.id, None)
        assert result.categories_copied == 1

    @pytest.mark.asyncio
    async def test_questions_are_not_copied(
        self, mutator: TreeMutator, ledger: CategorizationLedger, abc_tree
    ):
        _, b, _ = abc_tree
        await ledger.assign(1, b.id)

        result = await mutator.copy_category(b.id, None)
        assert await ledger.get_category_question_count(result.new_category_id) == 0

    @pytest.mark.asyncio
    async def test_copy_missing_source(self, mutator: TreeMutator):
        result = await mutator.copy_category(99, None)
        assert result.error_kind == ErrorKind.NOT_FOUND


class TestDelete:
    @pytest.mark.asyncio
    async def test_block_with_children_then_reparent(
        self, mutator: TreeMutator, store: CategoryStore, queries, abc_tree
    ):
        a, b, c = abc_tree

        blocked = await mutator.delete_category(b.id, Block())
        assert blocked.error_kind == ErrorKind.INVALID_OPERATION
        assert (await store.get(b.id)).is_active

        result = await mutator.delete_category(b.id, ReparentChildren())

        assert result.success
        assert result.categories_deleted == 1
        promoted = await store.get(c.id)
        assert promoted.parent_id == a.id
        assert promoted.depth == 1
        assert promoted.materialized_path == f"/{a.id}/{c.id}/"
        assert not (await store.get(b.id)).is_active
        assert [x.id for x in await queries.get_descendants(a.id)] == [c.id]

    @pytest.mark.asyncio
    async def test_block_with_questions(
        self, mutator: TreeMutator, ledger: CategorizationLedger, abc_tree
    ):
        _, _, c = abc_tree
        await ledger.assign(10, c.id)

        result = await mutator.delete_category(c.id, Block())
        assert result.error_kind == ErrorKind.INVALID_OPERATION

    @pytest.mark.asyncio
    async def test_block_deletes_empty_leaf(self, mutator: TreeMutator, store, abc_tree):
        _, _, c = abc_tree
        result = await mutator.delete_category(c.id, Block())

        assert result.categories_deleted == 1
        assert not (await store.get(c.id)).is_active

    @pytest.mark.asyncio
    async def test_reparent_moves_questions_to_parent(
        self, mutator: TreeMutator, ledger: CategorizationLedger, abc_tree
    ):
        a, b, _ = abc_tree
        await ledger.assign(10, b.id, is_primary=True)
        await ledger.assign(11, a.id, is_primary=True)
        await ledger.assign(11, b.id)

        result = await mutator.delete_category(b.id, ReparentChildren())

        assert result.questions_reassigned == 2
        assert (await ledger.get_primary_category(10)).id == a.id
        assert (await ledger.get_primary_category(11)).id == a.id
        assert [c.category_id for c in await ledger.get_question_categories(11)] == [a.id]
        assert await ledger.get_category_question_count(b.id) == 0

    @pytest.mark.asyncio
    async def test_reparent_keeps_questions_when_parent_refuses_them(
        self, mutator: TreeMutator, store, ledger: CategorizationLedger, abc_tree
    ):
        a, b, _ = abc_tree
        await ledger.assign(10, b.id)
        await store.update(a.id, CategoryUpdate(allow_questions=False))

        result = await mutator.delete_category(b.id, ReparentChildren())

        assert result.success
        assert result.questions_reassigned == 0
        assert result.warnings
        assert await ledger.is_question_in_category(10, b.id)

    @pytest.mark.asyncio
    async def test_reparent_root_promotes_children_to_roots(
        self, mutator: TreeMutator, store, abc_tree
    ):
        a, b, _ = abc_tree
        await mutator.delete_category(a.id, ReparentChildren())

        promoted = await store.get(b.id)
        assert promoted.parent_id is None
        assert promoted.materialized_path == f"/{b.id}/"

    @pytest.mark.asyncio
    async def test_cascade_soft_deletes_subtree(
        self, mutator: TreeMutator, store, queries, ledger, abc_tree
    ):
        a, _, c = abc_tree
        await ledger.assign(10, c.id)

        result = await mutator.delete_category(a.id, CascadeDelete())

        assert result.categories_deleted == 3
        assert await store.list_roots() == []
        assert await queries.get_descendants(a.id) == []
        assert len(await queries.get_descendants(a.id, include_inactive=True)) == 2
        assert await ledger.is_question_in_category(10, c.id)

    @pytest.mark.asyncio
    async def test_deleting_twice_is_invalid(self, mutator: TreeMutator, abc_tree):
        _, _, c = abc_tree
        await mutator.delete_category(c.id, CascadeDelete())

        result = await mutator.delete_category(c.id, CascadeDelete())
        assert result.error_kind == ErrorKind.INVALID_OPERATION

    @pytest.mark.asyncio
    async def test_store_delete_delegates(self, store: CategoryStore, abc_tree):
        _, _, c = abc_tree
        result = await store.delete(c.id, Block())
        assert result.success

    @pytest.mark.asyncio
    async def test_bulk_delete(self, mutator: TreeMutator, abc_tree):
        a, _, c = abc_tree
        result = await mutator.bulk_delete([c.id, 404], Block())

        assert [r.success for r in result.results] == [True, False]
        assert result.results[1].error_kind == ErrorKind.NOT_FOUND

    @pytest.mark.asyncio
    async def test_tree_valid_after_deletes(self, mutator, validation, abc_tree, make_category):
        a, b, _ = abc_tree
        d = await make_category("D", b.id)
        await make_category("E", d.id)

        await mutator.delete_category(b.id, ReparentChildren())
        await mutator.delete_category(d.id, CascadeDelete())

        assert (await validation.validate_tree_integrity()).is_valid
