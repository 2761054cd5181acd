"""Async engine and session factory"""
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from planforge.db.base import Base


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    return create_async_engine(database_url, echo=echo, future=True)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, expire_on_commit=False)


async def create_all(engine: AsyncEngine) -> None:
    """Create the primary tables (local development and tests)."""
    import planforge.models  # noqa: F401  registers the tables

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
