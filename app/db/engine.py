# =============================================================================
# Database Engine & Session Management
# =============================================================================
#
# DESIGN DECISION: Async SQLAlchemy engine, built explicitly.
# The engine and session factory are constructed once in the FastAPI
# lifespan (app/main.py) and handed to the data store. Nothing is created
# at import time, so tests can point the same code at an in-memory SQLite
# database without touching PostgreSQL.
#
# SESSION LIFECYCLE:
# The SQL data store opens one short-lived session per operation through
# `session_scope()`: create → yield → commit (or rollback on error) → close.
# Routing and telemetry writes never share a session with each other.
# =============================================================================

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from app.db.models import Base


def build_async_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """
    Create the async engine for `database_url`.

    - PostgreSQL (asyncpg): pooled connections, pool_size=5 and
      max_overflow=10 are plenty for a single-user assistant.
    - SQLite (aiosqlite): a single shared connection (StaticPool) so an
      in-memory database survives across sessions.
    """
    if database_url.startswith("sqlite"):
        return create_async_engine(
            database_url,
            echo=echo,
            poolclass=StaticPool,
        )

    return create_async_engine(
        database_url,
        echo=echo,
        pool_size=5,
        max_overflow=10,
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """
    Create the session factory bound to `engine`.

    expire_on_commit=False: loaded rows stay readable after commit, which
    the store relies on when mapping ORM rows to domain records.
    """
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def create_schema(engine: AsyncEngine) -> None:
    """Create all tables that do not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """
    Provide a transactional session.

    Usage:
        async with session_scope(factory) as session:
            session.add(row)
            # Auto-commits on exit, auto-rollbacks on exception
    """
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
