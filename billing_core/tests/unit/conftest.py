"""Shared fixtures for billing_core unit tests.

Every test gets a fresh in-memory SQLite database built from the ORM
metadata, so repositories run against real SQL without PostgreSQL.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

import pytest_asyncio
from billing_core.state.database import create_tables, get_session_factory
from billing_core.state.sqlite_adapter import get_local_engine
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    engine = get_local_engine(":memory:")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return get_session_factory(engine)


@pytest_asyncio.fixture
async def session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session
