"""
Database Engine and Sessions

Engine and session factories for the entitlement store. Nothing here is
created at import time: the application lifespan (or a test fixture) builds
one engine per process and hands the session factory to whoever needs it.

PostgreSQL (asyncpg) in production, SQLite (aiosqlite) for tests and local
runs. Both dialects support `INSERT ... ON CONFLICT` and `UPDATE ... RETURNING`,
which the ledger relies on.
"""

import logging
import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import exc
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool

from enhpix.core.conf import Settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Declarative base for every entitlement table."""


def uuid4_str() -> str:
    """Random UUID as a string, used as a default primary key."""
    return str(uuid.uuid4())


def create_engine_from_settings(settings: Settings) -> AsyncEngine:
    """
    Build the async engine.

    SQLite gets a NullPool so each session opens its own connection; the pool
    sizing options only apply to server databases.
    """
    url = settings.DATABASE_URL
    if url.startswith('sqlite'):
        return create_async_engine(
            url,
            echo=settings.DATABASE_ECHO,
            poolclass=NullPool,
            connect_args={'timeout': 30},
        )

    return create_async_engine(
        url,
        echo=settings.DATABASE_ECHO,
        future=True,
        pool_size=settings.DATABASE_POOL_SIZE,
        max_overflow=settings.DATABASE_MAX_OVERFLOW,
        pool_pre_ping=True,
        pool_recycle=settings.DATABASE_POOL_RECYCLE,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, expire_on_commit=False, autoflush=False)


@asynccontextmanager
async def session_scope(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """
    Transactional scope: commit on success, roll back on database errors.

    Yields:
        A session that is committed when the block exits cleanly
    """
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except exc.SQLAlchemyError as db_exc:
            await session.rollback()
            logger.error(f"Exception during session, rolling back, error: {db_exc}")
            raise


def dialect_insert(session: AsyncSession, table):
    """
    `INSERT` construct with `on_conflict_do_nothing` / `on_conflict_do_update`
    for the dialect the session is bound to.
    """
    dialect = session.get_bind().dialect.name
    if dialect == 'postgresql':
        return postgresql_insert(table)
    if dialect == 'sqlite':
        return sqlite_insert(table)
    raise NotImplementedError(f"Upserts are not supported on dialect '{dialect}'")


async def create_tables(engine: AsyncEngine) -> None:
    """Create all tables (tests and local development; production uses alembic)."""
    # Import registers the models on Base.metadata
    from enhpix.src.entitlements.store import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_tables(engine: AsyncEngine) -> None:
    from enhpix.src.entitlements.store import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
