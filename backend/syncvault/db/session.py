"""SQLite engine and sessions for sync checkpoints."""

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

Base = declarative_base()

log = logging.getLogger(__name__)


class Database:
    """Owns one async engine; created on startup and disposed on shutdown."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        # SQLAlchemy async needs sqlite+aiosqlite and path as URL
        self.url = f"sqlite+aiosqlite:///{self.db_path}"
        self._engine = create_async_engine(self.url, echo=False)
        self._sessionmaker = async_sessionmaker(
            self._engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
        )

    async def init(self) -> None:
        """Create tables if they do not exist."""
        # Register models with Base before create_all
        from syncvault.sync import checkpoints  # noqa: F401

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        log.info("Database ready at %s", self.db_path)

    async def dispose(self) -> None:
        await self._engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Yield an async session; commit on success, roll back on error."""
        async with self._sessionmaker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that yields an async session from the app's database."""
    async with request.app.state.database.session() as session:
        yield session
