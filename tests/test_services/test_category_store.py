"""Tests for CategoryStore."""

import pytest

from qbank.core.errors import ErrorKind
from qbank.models import CategoryLevel, CategoryType
from qbank.schemas.category import CategoryCreate, CategoryUpdate
from qbank.services import CategoryStore


def _payload(code: str, parent_id: int | None = None, **fields) -> CategoryCreate:
    return CategoryCreate(
        code=code,
        name=fields.pop("name", code.title()),
        type=fields.pop("type", CategoryType.TOPIC),
        level=fields.pop("level", CategoryLevel.LEVEL_1),
        parent_id=parent_id,
        **fields,
    )


class TestCreate:
    @pytest.mark.asyncio
    async def test_root_gets_own_path(self, store: CategoryStore):
        result = await store.create(_payload("MATH"))

        assert result.success
        category = result.category
        assert category.materialized_path == f"/{category.id}/"
        assert category.depth == 0
        assert category.parent_id is None

    @pytest.mark.asyncio
    async def test_child_extends_parent_path(self, abc_tree):
        a, b, c = abc_tree
        assert b.materialized_path == f"/{a.id}/{b.id}/"
        assert c.materialized_path == f"/{a.id}/{b.id}/{c.id}/"
        assert c.depth == 2

    @pytest.mark.asyncio
    async def test_sort_order_appends(self, store: CategoryStore, make_category):
        root = await make_category("ROOT")
        first = await make_category("FIRST", root.id)
        second = await make_category("SECOND", root.id)
        explicit = await make_category("EXPLICIT", root.id, sort_order=10)
        after = await make_category("AFTER", root.id)

        assert (first.sort_order, second.sort_order) == (0, 1)
        assert explicit.sort_order == 10
        assert after.sort_order == 11

    @pytest.mark.asyncio
    async def test_duplicate_code_rejected(self, store: CategoryStore, make_category):
        await make_category("MATH")
        result = await store.create(_payload("MATH"))

        assert not result.success
        assert result.error_kind == ErrorKind.INVALID_OPERATION

    @pytest.mark.asyncio
    async def test_unknown_parent(self, store: CategoryStore):
        result = await store.create(_payload("ORPHAN", parent_id=404))

        assert not result.success
        assert result.error_kind == ErrorKind.NOT_FOUND

    @pytest.mark.asyncio
    async def test_inactive_parent_rejected(self, store: CategoryStore, make_category):
        parent = await make_category("OLD", is_active=False)
        result = await store.create(_payload("NEW", parent_id=parent.id))

        assert result.error_kind == ErrorKind.INVALID_OPERATION

    @pytest.mark.asyncio
    async def test_rejected_create_leaves_nothing_behind(self, store: CategoryStore, make_category):
        await make_category("MATH")
        await store.create(_payload("MATH"))

        assert await store.list_roots() == [await store.get_by_code("MATH")]

    @pytest.mark.asyncio
    async def test_bulk_create_in_order(self, store: CategoryStore, make_category):
        root = await make_category("ROOT")
        results = await store.bulk_create(
            [
                _payload("ONE", root.id),
                _payload("ONE", root.id),
                _payload("TWO", root.id),
            ]
        )

        assert [r.success for r in results.results] == [True, False, True]
        assert results.success is False
        assert results.succeeded == 2


class TestReads:
    @pytest.mark.asyncio
    async def test_get_and_get_by_code(self, store: CategoryStore, abc_tree):
        a, b, _ = abc_tree
        assert (await store.get(b.id)).code == "B"
        assert (await store.get_by_code("A")).id == a.id
        assert await store.get(999) is None
        assert await store.get_by_code("NOPE") is None

    @pytest.mark.asyncio
    async def test_list_roots_skips_inactive(self, store: CategoryStore, make_category):
        first = await make_category("R1")
        await make_category("R2", is_active=False)

        roots = await store.list_roots()
        assert [r.id for r in roots] == [first.id]
        assert len(await store.list_roots(include_inactive=True)) == 2

    @pytest.mark.asyncio
    async def test_filter_by_type_and_level(self, store: CategoryStore, make_category):
        await make_category("MATH", type=CategoryType.SUBJECT)
        await make_category("ALG", type=CategoryType.CHAPTER, level=CategoryLevel.LEVEL_2)

        assert [c.code for c in await store.get_by_type(CategoryType.CHAPTER)] == ["ALG"]
        assert [c.code for c in await store.get_by_level(CategoryLevel.LEVEL_2)] == ["ALG"]

    @pytest.mark.asyncio
    async def test_is_code_unique(self, store: CategoryStore, abc_tree):
        a, _, _ = abc_tree
        assert await store.is_code_unique("NEW")
        assert not await store.is_code_unique("A")
        assert await store.is_code_unique("A", exclude_id=a.id)


class TestUpdate:
    @pytest.mark.asyncio
    async def test_updates_only_given_fields(self, store: CategoryStore, abc_tree):
        _, b, _ = abc_tree
        result = await store.update(b.id, CategoryUpdate(name="Algebra", allow_questions=False))

        assert result.success
        assert result.category.name == "Algebra"
        assert result.category.allow_questions is False
        assert result.category.code == "B"
        assert result.category.materialized_path == b.materialized_path

    @pytest.mark.asyncio
    async def test_code_collision(self, store: CategoryStore, abc_tree):
        _, b, _ = abc_tree
        result = await store.update(b.id, CategoryUpdate(code="A"))

        assert result.error_kind == ErrorKind.INVALID_OPERATION
        assert (await store.get(b.id)).code == "B"

    @pytest.mark.asyncio
    async def test_missing_category(self, store: CategoryStore):
        result = await store.update(12, CategoryUpdate(name="x"))
        assert result.error_kind == ErrorKind.NOT_FOUND


class TestReorder:
    @pytest.mark.asyncio
    async def test_reorder_children(self, store: CategoryStore, make_category):
        root = await make_category("ROOT")
        x = await make_category("X", root.id)
        y = await make_category("Y", root.id)

        result = await store.reorder_categories(root.id, {x.id: 5, y.id: 1})

        assert result.success
        assert result.categories_updated == 2
        assert (await store.get(x.id)).sort_order == 5
        assert (await store.get(y.id)).sort_order == 1

    @pytest.mark.asyncio
    async def test_reorder_rejects_non_children(self, store: CategoryStore, abc_tree):
        a, _, c = abc_tree
        result = await store.reorder_categories(a.id, {c.id: 3})

        assert result.error_kind == ErrorKind.INVALID_OPERATION
        assert (await store.get(c.id)).sort_order == c.sort_order

    @pytest.mark.asyncio
    async def test_reorder_unknown_ids(self, store: CategoryStore, abc_tree):
        a, _, _ = abc_tree
        result = await store.reorder_categories(a.id, {777: 1})
        assert result.error_kind == ErrorKind.NOT_FOUND
