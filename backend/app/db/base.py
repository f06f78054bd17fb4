"""Declarative base, the process-wide session factory and the staging schema."""

from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from app.core.config import get_settings


class Base(DeclarativeBase):
    pass


_session_factory: async_sessionmaker[AsyncSession] | None = None


def build_session_factory(url: str, **engine_options: Any) -> async_sessionmaker[AsyncSession]:
    """Engine and session factory for ``url``.

    Sessions keep loaded state after commit: services hand committed
    Commit/StagedChange rows back to routes after the session has closed.
    ``engine_options`` go to ``create_async_engine`` (tests pass NullPool).
    """
    options: dict[str, Any] = {"echo": get_settings().debug}
    if not url.startswith("sqlite"):
        options["pool_pre_ping"] = True
    options.update(engine_options)

    engine = create_async_engine(url, **options)
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def engine_of(session_factory: async_sessionmaker[AsyncSession]) -> AsyncEngine:
    return session_factory.kw["bind"]


async def create_schema(session_factory: async_sessionmaker[AsyncSession]) -> None:
    """Create the staged_changes and commits tables if missing."""
    import app.db.models  # noqa: F401

    async with engine_of(session_factory).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def init_db(url: str | None = None, **engine_options: Any) -> None:
    global _session_factory

    if _session_factory is not None:
        return

    _session_factory = build_session_factory(url or get_settings().database_url, **engine_options)
    await create_schema(_session_factory)


async def ping_db(session_factory: async_sessionmaker[AsyncSession]) -> None:
    async with session_factory() as session:
        await session.execute(text("SELECT 1"))


async def close_db() -> None:
    global _session_factory

    if _session_factory is not None:
        await engine_of(_session_factory).dispose()
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """FastAPI dependency. Raises RuntimeError before init_db()."""
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _session_factory
