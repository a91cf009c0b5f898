"""
conftest.py - Shared pytest fixtures for the contest engine tests

Every test gets its own SQLite database file, its own engine and its own
lock registry, so tests never share state.
"""

import os

# Settings are read at import time; point them at throwaway values first
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./.pytest-tradearena.db")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")
os.environ.setdefault("SCHEDULER_ENABLED", "false")

import pytest

from tradearena.core.database import create_engine, create_session_factory, init_db
from tradearena.core.locks import KeyedLocks


# =============================================================================
# DATABASE
# =============================================================================

@pytest.fixture
async def engine(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'arena.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def locks():
    return KeyedLocks()
