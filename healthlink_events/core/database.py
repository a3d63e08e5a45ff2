"""
Database connection and session management.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from healthlink_events.core.config import get_settings

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def build_session_factory(database_url: str, *, echo: bool = False) -> async_sessionmaker[AsyncSession]:
    """Create an engine for ``database_url`` and return a session factory bound to it."""
    engine = create_async_engine(database_url, echo=echo, future=True)
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the process-wide session factory, creating it on first use."""
    global _engine, _session_factory
    if _session_factory is None:
        settings = get_settings()
        _session_factory = build_session_factory(settings.database_url, echo=settings.debug)
        _engine = _session_factory.kw["bind"]
    return _session_factory


async def init_db(session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
    """Create all tables (development only, use migrations in production)."""
    factory = session_factory or get_session_factory()
    async with factory.kw["bind"].begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


async def close_db() -> None:
    """Dispose of the process-wide engine."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency for database sessions."""
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


@asynccontextmanager
async def get_session_context(session_factory: async_sessionmaker[AsyncSession] | None = None):
    """Context manager for use outside of FastAPI request lifecycle."""
    factory = session_factory or get_session_factory()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def dispose_session_factory(session_factory: async_sessionmaker[AsyncSession]) -> None:
    """Dispose of the engine behind a factory built with ``build_session_factory``."""
    await session_factory.kw["bind"].dispose()
