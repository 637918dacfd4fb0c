"""Async SQLAlchemy engine and session factory.

Learn: SQLAlchemy 2.0 async mode — create_async_engine for connection pooling,
async_sessionmaker for per-operation sessions. The engine is built by the
process that needs it (API lifespan, worker entry point) instead of at
import time, so importing the package never opens a pool.
"""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)


def build_engine(database_url: str, echo: bool = False, **kwargs) -> AsyncEngine:
    """Create the async engine. Postgres gets a sized pool."""
    if database_url.startswith("postgresql"):
        kwargs.setdefault("pool_size", 5)
        kwargs.setdefault("max_overflow", 15)
    return create_async_engine(database_url, echo=echo, **kwargs)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory — each repository call gets its own session."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
