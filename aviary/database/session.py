"""Async engine and session management."""

from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .._utils import logger
from ..config import DatabaseConfig
from .models import Base


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class Database:
    """Owns the async engine and hands out sessions."""

    def __init__(self, url: str, database_type: Optional[str] = None, echo: bool = False):
        self.url = url
        self.database_type = database_type or ("sqlite" if url.startswith("sqlite") else "postgres")
        self.engine: AsyncEngine = create_async_engine(url, echo=echo)
        if self.database_type == "sqlite":
            event.listen(self.engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
        self.session_factory = async_sessionmaker(self.engine, expire_on_commit=False)

    @classmethod
    def from_config(cls, config: DatabaseConfig) -> 'Database':
        if config.db_type == "sqlite":
            Path(config.data_dir).mkdir(parents=True, exist_ok=True)
        return cls(config.url, database_type=config.db_type, echo=config.echo)

    def session(self) -> AsyncSession:
        return self.session_factory()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """Session inside a single transaction, committed on clean exit."""
        async with self.session_factory() as session:
            async with session.begin():
                yield session

    async def create_all(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def run_migrations(self, label: str = "STARTUP") -> None:
        """Bring the schema up to date with the current models.

        Called at startup and after a restore, since an archive may come from
        an older release.
        """
        logger.info(f"[{label}] Running database migrations")
        await self.create_all()
        logger.info(f"[{label}] Database migrations complete")

    async def close(self) -> None:
        await self.engine.dispose()
