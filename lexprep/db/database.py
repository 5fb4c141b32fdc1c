from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from lexprep.config import get_settings
from lexprep.db.models.base import Base

_async_engine: AsyncEngine | None = None
_AsyncSessionLocal: async_sessionmaker[AsyncSession] | None = None


def _get_async_url(url: str) -> str:
    """Convert sync postgres URL to asyncpg URL when needed."""
    if url.startswith("postgresql+asyncpg://"):
        return url
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("sqlite:///"):
        return url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
    return url


def create_engine_for(url: str, echo: bool = False) -> AsyncEngine:
    """Build an async engine for the given URL."""
    async_url = _get_async_url(url)
    kwargs = {"echo": echo}
    if async_url.startswith("postgresql"):
        kwargs["pool_pre_ping"] = True
    return create_async_engine(async_url, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False,
    )


def get_engine() -> AsyncEngine:
    """Get or create the process-wide async engine (lazy initialization)."""
    global _async_engine
    if _async_engine is None:
        settings = get_settings()
        _async_engine = create_engine_for(settings.database_url, echo=settings.log_level == "DEBUG")
    return _async_engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the process-wide async session factory."""
    global _AsyncSessionLocal
    if _AsyncSessionLocal is None:
        _AsyncSessionLocal = create_session_factory(get_engine())
    return _AsyncSessionLocal


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Create all tables that do not exist yet."""
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized")


async def dispose_engine() -> None:
    global _async_engine, _AsyncSessionLocal
    if _async_engine is not None:
        await _async_engine.dispose()
    _async_engine = None
    _AsyncSessionLocal = None


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession] | None = None,
) -> AsyncGenerator[AsyncSession, None]:
    """Provide an async transactional scope around a series of operations."""
    factory = factory or get_session_factory()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:  # Intentionally broad - rollback on any error before re-raising
            await session.rollback()
            raise

