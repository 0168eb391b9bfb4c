"""
Database Session Management - Async SQLAlchemy engine and session factory.

The Database object is constructed once by the application lifespan and
stored on app.state; request handlers receive sessions through get_db.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import Request
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from app.config import Settings


class Database:
    """Owns the async engine and session factory for one process."""

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine
        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "Database":
        engine = create_async_engine(
            settings.database_url,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_timeout=settings.database_pool_timeout,
            pool_recycle=settings.database_pool_recycle,
            echo=settings.log_level == "DEBUG",
        )
        return cls(engine)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """
        Get an async database session.

        Usage:
            async with database.session() as session:
                await session.execute(...)
                await session.commit()
        """
        async with self.session_factory() as session:
            yield session

    async def dispose(self) -> None:
        """Close the engine's connection pool (for graceful shutdown)."""
        await self.engine.dispose()


def get_database(request: Request) -> Database:
    """FastAPI dependency returning the Database owned by the app lifespan."""
    return request.app.state.database  # type: ignore[no-any-return]


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency for a database session.

    Usage:
        @router.post("/endpoint")
        async def endpoint(db: AsyncSession = Depends(get_db)):
            ...
    """
    database = get_database(request)
    async with database.session() as session:
        yield session
