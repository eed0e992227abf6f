"""Database connection and session management.

A Database is built once per process and passed to the components that need
it; nothing here is module-global.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from ortenberg.errors import InfrastructureError
from ortenberg.ledger.models import Base

logger = logging.getLogger(__name__)


def normalize_url(db_url: str) -> str:
    """Convert sync driver URLs to their async equivalents."""
    if db_url.startswith("sqlite:///") and "aiosqlite" not in db_url:
        return db_url.replace("sqlite:///", "sqlite+aiosqlite:///")
    if db_url.startswith("postgres://"):
        return db_url.replace("postgres://", "postgresql+asyncpg://", 1)
    if db_url.startswith("postgresql://"):
        return db_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return db_url


class Database:
    """Owns the async engine and session factory for one process."""

    def __init__(self, db_url: str, echo: bool = False):
        self.url = normalize_url(db_url)
        self.engine: AsyncEngine = create_async_engine(self.url, echo=echo, future=True)
        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Open a session that commits on success and rolls back on error."""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def create_all(self) -> None:
        """Create all tables (development and tests; production uses Alembic)."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def ping(self) -> None:
        """Run a trivial query.

        Raises:
            InfrastructureError: if the database cannot be reached
        """
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except Exception as e:
            raise InfrastructureError(f"Database unreachable: {e}") from e

    async def close(self) -> None:
        """Dispose of pooled connections."""
        await self.engine.dispose()
        logger.info("Database connections closed")
