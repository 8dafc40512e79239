"""
Async SQLAlchemy engine and session factory (SQLite by default, PostgreSQL accepted).
"""

from __future__ import annotations

from typing import Any, Dict

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from config.settings import config
from database.models import Base


def build_engine(database_url: str) -> AsyncEngine:
    """SQLite engines reject pool sizing, so it is only applied to server databases."""
    kwargs: Dict[str, Any] = {"echo": False}
    if not database_url.startswith("sqlite"):
        kwargs.update(pool_size=10, max_overflow=20, pool_recycle=3600)
    return create_async_engine(database_url, **kwargs)


def build_session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


engine = build_engine(config.database_url)

async_session_factory = build_session_factory(engine)


async def init_db(db_engine: AsyncEngine = engine) -> None:
    """Create all tables that do not exist yet."""
    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
