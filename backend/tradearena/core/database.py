"""
Async database engine and session management.

Production runs on Postgres (asyncpg); tests point DATABASE_URL at SQLite
(aiosqlite). Tables are declared with SQLModel.
"""

from typing import AsyncIterator
import logging

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from tradearena.core.config import settings

logger = logging.getLogger(__name__)


def normalize_database_url(value: str) -> str:
    """
    Hosting providers hand out `postgres://...` or `postgresql://...` URLs.
    The async engine needs an explicit async driver.
    """
    url = value.strip()
    if url.startswith("postgres://"):
        return "postgresql+asyncpg://" + url[len("postgres://"):]
    if url.startswith("postgresql://"):
        return "postgresql+asyncpg://" + url[len("postgresql://"):]
    if url.startswith("sqlite://"):
        return "sqlite+aiosqlite://" + url[len("sqlite://"):]
    return url


def create_engine(url: str, echo: bool = False) -> AsyncEngine:
    url = normalize_database_url(url)
    kwargs = {"echo": echo}
    if not url.startswith("sqlite"):
        kwargs["pool_pre_ping"] = True
    return create_async_engine(url, **kwargs)


def create_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


engine = create_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)
SessionLocal = create_session_factory(engine)


async def init_db(bind: AsyncEngine = engine) -> None:
    """Create all tables. Called once during app lifespan startup."""
    # Register every table on the metadata before create_all
    import tradearena.models  # noqa: F401

    async with bind.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    logger.info("Database schema ready")


async def get_session() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency: one session per request."""
    async with SessionLocal() as session:
        yield session


async def close_db() -> None:
    """Dispose the connection pool. Called during app lifespan shutdown."""
    await engine.dispose()
