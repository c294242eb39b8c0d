"""Shared fixtures: a fresh SQLite database per test and a seeded event."""

from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from centelhas.config import Settings
from centelhas.engine import CentelhasEngine
from centelhas.utils.db import create_engine, create_schema, create_session_factory

from helpers import SeededEvent, make_test_settings, seed_event


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return make_test_settings(tmp_path / "centelhas.db")


@pytest_asyncio.fixture
async def db_engine(test_settings) -> AsyncGenerator[AsyncEngine, None]:
    """Engine with the full schema (append-only triggers included)."""
    engine = create_engine(test_settings)
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(db_engine)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """A session whose uncommitted work is rolled back after the test."""
    async with session_factory() as session:
        try:
            yield session
        finally:
            await session.rollback()


@pytest.fixture
def engine(session_factory, test_settings) -> CentelhasEngine:
    return CentelhasEngine(session_factory, settings=test_settings)


# =============================================================================
# Domain Fixtures
# =============================================================================


@pytest_asyncio.fixture
async def seeded(engine) -> SeededEvent:
    """Event with four players, each holding the initial allotment."""
    return await seed_event(engine)
