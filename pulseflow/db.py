"""Async database connection and transaction helpers for pulseflow."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy import event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from .config import settings
from .errors import SchemaNotInitializedError, is_schema_missing_error, missing_table_name
from .events import hold_events
from .models import Base

logger = logging.getLogger(__name__)


def _configure_sqlite(engine: AsyncEngine) -> None:
    """Enforce foreign keys and let SQLAlchemy own BEGIN so SAVEPOINTs work."""

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, _connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def build_engine(url: str | None = None, *, echo: bool | None = None) -> AsyncEngine:
    """Create an async engine for ``url`` (defaults to the configured database)."""
    url = url or settings.database_url
    echo = settings.db_echo if echo is None else echo
    if url.startswith("sqlite"):
        engine = create_async_engine(url, echo=echo, poolclass=NullPool)
        _configure_sqlite(engine)
    else:
        engine = create_async_engine(url, echo=echo, pool_pre_ping=True)
    return engine


# Create async engine and session factory
engine = build_engine()
async_session_factory = async_sessionmaker(engine, expire_on_commit=False)


async def init_db(bind: AsyncEngine | None = None) -> None:
    """Create all tables (for development/testing)."""
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession]:
    """Async context manager for database sessions.

    Events published during the unit of work are delivered after the commit.
    """
    async with async_session_factory() as session:
        try:
            async with hold_events():
                yield session
                await session.commit()
        except Exception as exc:
            await session.rollback()
            if isinstance(exc, SQLAlchemyError) and is_schema_missing_error(exc):
                raise SchemaNotInitializedError(missing_table_name(exc)) from exc
            raise


@asynccontextmanager
async def atomic(session: AsyncSession) -> AsyncGenerator[AsyncSession]:
    """Run a block of statements as one unit inside the caller's transaction.

    On error the savepoint is rolled back, leaving the state as it was before
    the block, and the exception propagates. Events published inside the
    block are released only once the savepoint is.
    """
    async with hold_events():
        async with session.begin_nested():
            yield session
