# =============================================================================
# Database Engine & Session Management
# =============================================================================
#
# DESIGN DECISION: Async SQLAlchemy engine.
# The gateway is async end to end (SDK calls, httpx, ledger writes), so the
# ledger uses SQLAlchemy's async engine:
# - All DB queries use `await` (e.g., `await session.execute(...)`)
# - asyncpg is the production PostgreSQL driver; tests use aiosqlite
#
# DESIGN DECISION: Lazy initialisation (not module-level).
# Importing the gateway must not require a reachable database or an
# installed driver. The engine is built the first time a SQL ledger store
# asks for a session.
#
# SESSION LIFECYCLE (session_scope):
#   create → yield → commit (or rollback on error) → close
# =============================================================================

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from ai_gateway.config import settings
from ai_gateway.db.models import Base

_async_engine: AsyncEngine | None = None
_async_session_factory: async_sessionmaker[AsyncSession] | None = None


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """
    Session factory for an engine.

    - expire_on_commit=False: loaded rows stay readable after commit. Without
      it, touching an attribute after commit triggers a lazy reload, which
      fails outside an active async session.
    """
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


def get_async_engine() -> AsyncEngine:
    """Lazily create and cache the async engine from settings.database_url."""
    global _async_engine
    if _async_engine is None:
        _async_engine = create_async_engine(
            settings.database_url,
            echo=settings.debug,
        )
    return _async_engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Lazily create and cache the session factory for the default engine."""
    global _async_session_factory
    if _async_session_factory is None:
        _async_session_factory = build_session_factory(get_async_engine())
    return _async_session_factory


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession] | None = None,
) -> AsyncGenerator[AsyncSession, None]:
    """
    Provide a transactional session.

    Usage:
        async with session_scope() as session:
            session.add(CostLog(...))
            # Auto-commits on exit, auto-rollbacks on exception
    """
    session_factory = factory or get_session_factory()
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def create_tables(engine: AsyncEngine | None = None) -> None:
    """Create the ledger tables if they do not exist (dev and tests)."""
    target = engine or get_async_engine()
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
