"""Shared fixtures: an in-memory SQLite database and wired services."""

from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

from qbank.core.identity import StaticActorProvider
from qbank.infra.database import SessionFactory, create_session_factory
from qbank.infra.locks import LockManager
from qbank.models import Base, CategoryLevel, CategoryType
from qbank.schemas.category import CategoryCreate, CategoryRead
from qbank.services import (
    CategorizationLedger,
    CategoryStore,
    TreeMutator,
    TreeQueries,
    TreeTransfer,
    ValidationEngine,
)

TEST_ACTOR_ID = 99


async def make_engine() -> AsyncEngine:
    """Fresh in-memory database with the schema created."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return engine


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    engine = await make_engine()
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> SessionFactory:
    return create_session_factory(engine)


@pytest.fixture
def locks() -> LockManager:
    return LockManager(timeout_seconds=0.2)


@pytest.fixture
def store(session_factory: SessionFactory, locks: LockManager) -> CategoryStore:
    return CategoryStore(session_factory, locks)


@pytest.fixture
def ledger(store: CategoryStore) -> CategorizationLedger:
    return CategorizationLedger(
        store=store,
        actor_provider=StaticActorProvider(TEST_ACTOR_ID),
        chunk_size=2,
    )


@pytest.fixture
def mutator(store: CategoryStore, ledger: CategorizationLedger) -> TreeMutator:
    return TreeMutator(store=store, ledger=ledger)


@pytest.fixture
def queries(store: CategoryStore) -> TreeQueries:
    return TreeQueries(store=store)


@pytest.fixture
def validation(store: CategoryStore, ledger: CategorizationLedger) -> ValidationEngine:
    return ValidationEngine(store=store, ledger=ledger)


@pytest.fixture
def transfer(store: CategoryStore) -> TreeTransfer:
    return TreeTransfer(store=store)


@pytest.fixture
def make_category(store: CategoryStore):
    """Create a category and fail the test if creation is rejected."""

    async def _make(code: str, parent_id: int | None = None, **fields) -> CategoryRead:
        fields.setdefault("name", code.title())
        fields.setdefault("type", CategoryType.TOPIC)
        fields.setdefault("level", CategoryLevel.LEVEL_1)
        result = await store.create(CategoryCreate(code=code, parent_id=parent_id, **fields))
        assert result.success, result.error_message
        return result.category

    return _make


@pytest_asyncio.fixture
async def abc_tree(make_category) -> tuple[CategoryRead, CategoryRead, CategoryRead]:
    """A(1) > B(2) > C(3)."""
    a = await make_category("A", type=CategoryType.SUBJECT)
    b = await make_category("B", a.id, type=CategoryType.CHAPTER)
    c = await make_category("C", b.id)
    return a, b, c


@pytest_asyncio.fixture
async def other_store() -> AsyncGenerator[CategoryStore, None]:
    """A store over a second, empty database."""
    engine = await make_engine()
    yield CategoryStore(create_session_factory(engine), LockManager(timeout_seconds=0.2))
    await engine.dispose()
