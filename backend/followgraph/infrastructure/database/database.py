"""
Database configuration and session management for followgraph.
"""

import logging
from typing import Any

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from followgraph.core.config import DatabaseSettings
from followgraph.core.exceptions import StoreUnavailable, handle_store_errors

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


def _enable_sqlite_foreign_keys(dbapi_connection: Any, connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class Database:
    """
    Owns the async engine and session factory.

    Usage:
        db = Database(DatabaseSettings(url="sqlite+aiosqlite:///./graph.db"))
        await db.init_models()

        async with db.session_maker() as session:
            ...
    """

    def __init__(self, settings: DatabaseSettings | None = None):
        self._settings = settings or DatabaseSettings()
        self._engine: AsyncEngine | None = None
        self._session_maker: async_sessionmaker[AsyncSession] | None = None

    @property
    def settings(self) -> DatabaseSettings:
        return self._settings

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = self._create_engine()
        return self._engine

    @property
    def session_maker(self) -> async_sessionmaker[AsyncSession]:
        if self._session_maker is None:
            self._session_maker = async_sessionmaker(
                self.engine,
                class_=AsyncSession,
                expire_on_commit=False,
            )
        return self._session_maker

    def _create_engine(self) -> AsyncEngine:
        url = self._settings.resolve_url()
        kwargs: dict[str, Any] = {
            "echo": self._settings.echo,
            "pool_pre_ping": self._settings.pool_pre_ping,
        }
        if not self._settings.is_sqlite:
            kwargs["pool_size"] = self._settings.pool_size
            kwargs["max_overflow"] = self._settings.max_overflow

        try:
            engine = create_async_engine(url, **kwargs)
        except Exception as e:
            raise StoreUnavailable(f"Database engine creation failed: {e}", operation="connect") from e

        if engine.dialect.name == "sqlite":
            event.listen(engine.sync_engine, "connect", _enable_sqlite_foreign_keys)

        logger.debug(f"Database engine created for dialect {engine.dialect.name}")
        return engine

    @handle_store_errors(operation="init_models")
    async def init_models(self) -> None:
        """Create all tables registered on Base."""
        # Table classes must be imported so they register on Base.metadata.
        from followgraph.domain import models  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database schema ready")

    @handle_store_errors(operation="drop_models")
    async def drop_models(self) -> None:
        """Drop all tables registered on Base."""
        from followgraph.domain import models  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

    async def is_available(self) -> bool:
        """Check if the database answers a trivial query."""
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.warning(f"Database unavailable: {e}")
            return False

    async def dispose(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
        self._engine = None
        self._session_maker = None

