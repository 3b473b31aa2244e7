"""Async database configuration.

Provides:
- Async SQLAlchemy engine and session factory
- ``unit_of_work``: one transaction per tree/ledger operation
- Mapping of lock timeouts, deadlocks and connectivity loss to
  ``TransientStorageError``
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from qbank.config import settings
from qbank.core.errors import TransientStorageError
from qbank.infra.logging import get_logger
from qbank.models import Base
from qbank.models.question_categorization import PRIMARY_LINK_INDEX

logger = get_logger(__name__)

# Type alias for dependency injection
DatabaseSession = AsyncSession
SessionFactory = async_sessionmaker[AsyncSession]

# serialization_failure, deadlock_detected, lock_not_available, query_canceled
TRANSIENT_SQLSTATES = frozenset({"40001", "40P01", "55P03", "57014"})

# Unique indexes only a concurrent writer in another process can violate
RACE_CONSTRAINTS = frozenset({PRIMARY_LINK_INDEX})

# Global engine (initialized on first use)
_engine: AsyncEngine | None = None
_session_factory: SessionFactory | None = None


def get_engine() -> AsyncEngine:
    """Get or create the async database engine."""
    global _engine

    if _engine is None:
        url = settings.database_url
        logger.info(
            "Creating database engine",
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_pool_max_overflow,
        )

        if url.startswith("sqlite"):
            _engine = create_async_engine(url, echo=settings.debug)
        else:
            _engine = create_async_engine(
                url,
                pool_size=settings.db_pool_size,
                max_overflow=settings.db_pool_max_overflow,
                pool_pre_ping=True,  # Verify connections before use
                pool_recycle=1800,  # Recycle connections after 30 min
                echo=settings.debug,  # Log SQL in debug mode
            )

    return _engine


def create_session_factory(engine: AsyncEngine) -> SessionFactory:
    """Build a session factory bound to ``engine``."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_session_factory() -> SessionFactory:
    """Get or create the session factory."""
    global _session_factory

    if _session_factory is None:
        _session_factory = create_session_factory(get_engine())

    return _session_factory


def is_transient_error(error: BaseException) -> bool:
    """Whether a database error is worth retrying as a whole operation."""
    if isinstance(error, IntegrityError):
        message = str(error.orig)
        return any(name in message for name in RACE_CONSTRAINTS)
    if isinstance(error, OperationalError):
        return True
    if isinstance(error, DBAPIError):
        if error.connection_invalidated:
            return True
        orig = error.orig
        sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
        return sqlstate in TRANSIENT_SQLSTATES
    return False


@asynccontextmanager
async def unit_of_work(
    session_factory: SessionFactory | None = None,
) -> AsyncGenerator[AsyncSession, None]:
    """Open a session and run the body in a single transaction.

    Commits when the body completes, rolls back on any exception. Transient
    storage errors are re-raised as ``TransientStorageError``.

    Example:
        async with unit_of_work() as session:
            session.add(node)
    """
    factory = session_factory or get_session_factory()
    session = factory()

    try:
        async with session.begin():
            if session.bind.dialect.name == "postgresql":
                timeout_ms = int(settings.lock_timeout_seconds * 1000)
                await session.execute(text(f"SET LOCAL lock_timeout = {timeout_ms}"))
            yield session

    except DBAPIError as e:
        if is_transient_error(e):
            logger.error("Transient storage failure", error=str(e))
            raise TransientStorageError(str(e)) from e
        logger.error("Database session error", error=str(e))
        raise

    finally:
        await session.close()


@asynccontextmanager
async def read_session(
    session_factory: SessionFactory | None = None,
) -> AsyncGenerator[AsyncSession, None]:
    """Session for read-only queries. Nothing is committed."""
    factory = session_factory or get_session_factory()
    session = factory()

    try:
        yield session
    except DBAPIError as e:
        if is_transient_error(e):
            logger.error("Transient storage failure", error=str(e))
            raise TransientStorageError(str(e)) from e
        raise
    finally:
        await session.close()


async def create_schema(engine: AsyncEngine | None = None) -> None:
    """Create all tables that do not exist yet."""
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ensured", tables=sorted(Base.metadata.tables))


async def close_db_engine() -> None:
    """Close the database engine and all connections.

    Call this during application shutdown.
    """
    global _engine, _session_factory

    if _engine is not None:
        logger.info("Closing database engine")
        await _engine.dispose()
        _engine = None
        _session_factory = None


async def verify_db_connection() -> bool:
    """Verify database connectivity.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        async with read_session() as session:
            await session.execute(text("SELECT 1"))
            logger.info("Database connection verified")
            return True
    except Exception as e:
        logger.error("Database connection failed", error=str(e))
        return False
