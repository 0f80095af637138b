"""Async SQLAlchemy engine and session factory.

Learn: SQLAlchemy 2.0 async mode. create_async_engine for connection pooling,
AsyncSession for per-request database access, dependency injection via FastAPI.

Postgres (asyncpg) is the production backend. SQLite (aiosqlite) is
supported for local runs and tests; it gets NullPool so every session has
its own connection and concurrent writers serialize on SQLite's lock.
"""

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from tlca.config import settings


def build_engine(database_url: str, echo: bool = False):
    """Create an async engine with pool settings suited to the backend."""
    if database_url.startswith("sqlite"):
        return create_async_engine(
            database_url,
            echo=echo,
            poolclass=NullPool,
            connect_args={"timeout": 5},
        )
    # Connection pool: min 5, max 20 connections.
    return create_async_engine(
        database_url,
        echo=echo,
        pool_size=5,
        max_overflow=15,
        pool_pre_ping=True,
    )


engine = build_engine(settings.database_url, echo=settings.debug)

# Session factory: each request gets its own session.
async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db() -> AsyncSession:
    """FastAPI dependency, yields a session per request, auto-closes."""
    async with async_session_factory() as session:
        try:
            yield session
        finally:
            await session.close()
