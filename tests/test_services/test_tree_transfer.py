"""Tests for TreeTransfer export and import."""

import json

import pytest

from qbank.config import settings
from qbank.core.errors import ErrorKind
from qbank.models import CategoryLevel, CategoryType
from qbank.schemas.delete_strategy import CascadeDelete
from qbank.schemas.transfer import CategoryTreeImport, MergeStrategy
from qbank.services import CategoryStore, TreeQueries, TreeTransfer, ValidationEngine


def _doc(*categories) -> CategoryTreeImport:
    return CategoryTreeImport.model_validate({"categories": list(categories)})


def _node(code: str, *children, **fields) -> dict:
    return {
        "code": code,
        "name": fields.pop("name", code.title()),
        "type": fields.pop("type", "topic"),
        "level": fields.pop("level", "level_1"),
        "children": list(children),
        **fields,
    }


class TestExport:
    @pytest.mark.asyncio
    async def test_nested_export(self, transfer: TreeTransfer, abc_tree):
        a, b, c = abc_tree

        export = await transfer.export_tree()

        assert export.version == settings.export_format_version
        (root,) = export.categories
        assert (root.id, root.code) == (a.id, "A")
        assert [child.code for child in root.children] == ["B"]
        assert root.children[0].children[0].id == c.id

    @pytest.mark.asyncio
    async def test_subtree_with_counts(self, transfer: TreeTransfer, ledger, abc_tree):
        _, b, c = abc_tree
        await ledger.assign(1, c.id)
        await ledger.assign(2, c.id)

        export = await transfer.export_tree(b.id, include_question_counts=True)

        (root,) = export.categories
        assert root.code == "B"
        assert root.question_count == 0
        assert root.children[0].question_count == 2

    @pytest.mark.asyncio
    async def test_missing_or_inactive_root(self, transfer: TreeTransfer, mutator, abc_tree):
        _, _, c = abc_tree
        assert await transfer.export_tree(999) is None

        await mutator.delete_category(c.id, CascadeDelete())
        assert await transfer.export_tree(c.id) is None
        assert await transfer.export_tree_json(c.id) is None

    @pytest.mark.asyncio
    async def test_inactive_nodes_left_out(self, transfer: TreeTransfer, mutator, abc_tree):
        _, _, c = abc_tree
        await mutator.delete_category(c.id, CascadeDelete())

        (root,) = (await transfer.export_tree()).categories
        assert root.children[0].children == []


class TestRoundTrip:
    @pytest.mark.asyncio
    async def test_import_into_empty_database(
        self, transfer: TreeTransfer, make_category, other_store: CategoryStore
    ):
        math = await make_category(
            "MATH", name="Mathematics", type=CategoryType.SUBJECT, subject="math"
        )
        await make_category(
            "ALG",
            math.id,
            name="Algebra",
            type=CategoryType.CHAPTER,
            level=CategoryLevel.LEVEL_2,
            description="Equations",
            allow_questions=False,
            curriculum_code="CC-ALG",
            metadata_json='{"source": "syllabus", "weight": 1}',
        )
        await make_category("GEO", math.id, name="Geometry", grade_level="9")
        payload = await transfer.export_tree_json()

        target = TreeTransfer(other_store)
        result = await target.import_tree_json(payload)

        assert result.success
        assert result.categories_created == 3
        (tree,) = await TreeQueries(store=other_store).get_tree()
        assert [n.category.code for n in tree.walk()] == ["MATH", "ALG", "GEO"]
        alg = tree.children[0].category
        assert alg.name == "Algebra"
        assert alg.type == CategoryType.CHAPTER
        assert alg.level == CategoryLevel.LEVEL_2
        assert alg.description == "Equations"
        assert alg.allow_questions is False
        assert alg.curriculum_code == "CC-ALG"
        assert alg.metadata_json == '{"source": "syllabus", "weight": 1}'
        assert tree.category.subject == "math"
        assert tree.children[1].category.grade_level == "9"
        assert (await ValidationEngine(store=other_store).validate_tree_integrity()).is_valid

    @pytest.mark.asyncio
    async def test_export_document_accepted_directly(
        self, transfer: TreeTransfer, abc_tree, other_store: CategoryStore
    ):
        export = await transfer.export_tree()

        result = await TreeTransfer(other_store).import_tree(export)

        assert result.categories_created == 3
        assert set(result.code_to_id) == {"A", "B", "C"}


class TestImport:
    @pytest.mark.asyncio
    async def test_below_parent(self, transfer: TreeTransfer, store, abc_tree):
        _, _, c = abc_tree

        result = await transfer.import_tree(_doc(_node("X", _node("Y"))), parent_id=c.id)

        assert result.success
        y = await store.get(result.code_to_id["Y"])
        assert y.depth == 4
        assert y.materialized_path.startswith(c.materialized_path)

    @pytest.mark.asyncio
    async def test_skip_reuses_existing(self, transfer: TreeTransfer, store, abc_tree):
        a, _, _ = abc_tree

        result = await transfer.import_tree(
            _doc(_node("A", _node("NEW"), name="Ignored")), merge_strategy=MergeStrategy.SKIP
        )

        assert (result.categories_created, result.categories_skipped) == (1, 1)
        assert (await store.get(a.id)).name == "A"
        assert (await store.get_by_code("NEW")).parent_id == a.id

    @pytest.mark.asyncio
    async def test_overwrite_updates_attributes(self, transfer: TreeTransfer, store, abc_tree):
        a, _, _ = abc_tree

        result = await transfer.import_tree(
            _doc(_node("A", name="Renamed", description="New text")),
            merge_strategy=MergeStrategy.OVERWRITE,
        )

        assert result.categories_updated == 1
        updated = await store.get(a.id)
        assert (updated.name, updated.description) == ("Renamed", "New text")
        assert updated.materialized_path == a.materialized_path

    @pytest.mark.asyncio
    async def test_create_new_renames_codes(self, transfer: TreeTransfer, store, abc_tree):
        document = _doc(_node("A"))

        first = await transfer.import_tree(document, merge_strategy=MergeStrategy.CREATE_NEW)
        second = await transfer.import_tree(document, merge_strategy=MergeStrategy.CREATE_NEW)

        assert first.code_to_id["A"] == (await store.get_by_code("A_IMPORT")).id
        assert second.code_to_id["A"] == (await store.get_by_code("A_IMPORT2")).id
        assert first.warnings

    @pytest.mark.asyncio
    async def test_unknown_parent(self, transfer: TreeTransfer):
        result = await transfer.import_tree(_doc(_node("X")), parent_id=404)
        assert result.error_kind == ErrorKind.NOT_FOUND

    @pytest.mark.asyncio
    async def test_inactive_parent_imports_nothing(
        self, transfer: TreeTransfer, mutator, store, abc_tree
    ):
        _, _, c = abc_tree
        await mutator.delete_category(c.id, CascadeDelete())

        result = await transfer.import_tree(_doc(_node("X")), parent_id=c.id)

        assert result.error_kind == ErrorKind.INVALID_OPERATION
        assert await store.get_by_code("X") is None

    @pytest.mark.asyncio
    async def test_active_child_of_inactive_node_rejected(self, transfer: TreeTransfer, store):
        document = _doc(_node("P", _node("Q"), is_active=False))

        result = await transfer.import_tree(document)

        assert result.error_kind == ErrorKind.INVALID_OPERATION
        assert await store.get_by_code("P") is None
        assert await store.get_by_code("Q") is None

    @pytest.mark.asyncio
    async def test_inactive_branch_imported_as_a_whole(self, transfer: TreeTransfer, store):
        document = _doc(_node("P", _node("Q", is_active=False), is_active=False))

        result = await transfer.import_tree(document)

        assert result.categories_created == 2
        assert not (await store.get_by_code("Q")).is_active

    @pytest.mark.asyncio
    async def test_overwrite_keeps_activation(self, transfer: TreeTransfer, store, abc_tree):
        a, _, _ = abc_tree

        result = await transfer.import_tree(
            _doc(_node("A", is_active=False, metadata_json='{"k": 1}')),
            merge_strategy=MergeStrategy.OVERWRITE,
        )

        assert result.success
        updated = await store.get(a.id)
        assert updated.is_active
        assert updated.metadata_json == '{"k": 1}'

    @pytest.mark.asyncio
    async def test_invalid_json(self, transfer: TreeTransfer):
        broken = await transfer.import_tree_json("{not json")
        incomplete = await transfer.import_tree_json(
            json.dumps({"categories": [{"code": "X"}]})
        )

        assert broken.error_kind == ErrorKind.INVALID_OPERATION
        assert incomplete.error_kind == ErrorKind.INVALID_OPERATION
