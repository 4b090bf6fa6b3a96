"""Shared test fixtures and configuration for pytest."""

from collections.abc import AsyncGenerator, Generator
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from pulseflow import db
from pulseflow.events import EngineEvent, event_bus


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    """File-backed SQLite URL so every connection sees the same schema."""
    return f"sqlite+aiosqlite:///{tmp_path / 'pulseflow.db'}"


@pytest_asyncio.fixture
async def engine(database_url: str) -> AsyncGenerator[AsyncEngine]:
    test_engine = db.build_engine(database_url, echo=False)
    await db.init_db(test_engine)
    yield test_engine
    await test_engine.dispose()


@pytest_asyncio.fixture
async def session(engine: AsyncEngine) -> AsyncGenerator[AsyncSession]:
    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as s:
        yield s
        await s.rollback()


@pytest.fixture
def events() -> Generator[list[EngineEvent]]:
    """Capture every event published during a test."""
    captured: list[EngineEvent] = []

    def handler(event: EngineEvent) -> None:
        captured.append(event)

    event_bus.on_event(handler)
    yield captured
    event_bus.off_event(handler)
