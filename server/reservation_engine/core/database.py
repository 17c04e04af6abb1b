"""Database configuration and async session management."""

from typing import Any, AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

from .config import settings


def _engine_options(database_url: str) -> dict[str, Any]:
    """Engine keyword arguments for the configured backend."""
    options: dict[str, Any] = {"echo": settings.debug, "pool_pre_ping": True}
    if "sqlite" in database_url:
        # Single shared connection so in-memory databases survive across sessions
        options["poolclass"] = StaticPool
        options["connect_args"] = {"check_same_thread": False}
    return options


engine = create_async_engine(settings.database_url, **_engine_options(settings.database_url))

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)

Base = declarative_base()


async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency function that yields database sessions.

    Yields:
        AsyncSession: Database session
    """
    async with async_session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


# Alias for FastAPI dependency injection
get_db = get_async_session


def is_postgresql(session: AsyncSession) -> bool:
    """Return True when the session is bound to a PostgreSQL engine."""
    bind = session.bind
    return bind is not None and bind.dialect.name == "postgresql"


async def init_db() -> None:
    """Initialize the database by creating all tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def check_db() -> bool:
    """Return True if the database answers a trivial query."""
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))
    return True


async def close_db() -> None:
    """Close database connections."""
    await engine.dispose()
