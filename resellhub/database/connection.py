"""Database connection, session and unit-of-work management."""
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from resellhub.config import Settings
from resellhub.database.models import Base

logger = structlog.get_logger(__name__)


def _use_immediate_transactions(engine: AsyncEngine) -> None:
    """
    Make SQLite take the write lock when a transaction begins.

    Concurrent writers then queue on the busy timeout instead of failing
    on a lock upgrade, which is what ``SELECT ... FOR UPDATE`` gives on
    PostgreSQL.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class UnitOfWork:
    """
    Exclusive owner of one session and its transaction.

    Everything written through ``session`` commits together when the
    ``Database.unit_of_work()`` block exits normally and rolls back together
    when it raises.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def flush(self) -> None:
        await self.session.flush()


class Database:
    """
    Engine and session factory with an explicit lifecycle.

    Created once at process start, disposed at shutdown.
    """

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self.session_factory = async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        if engine.dialect.name == "sqlite":
            _use_immediate_transactions(engine)

    @classmethod
    def from_settings(cls, settings: Settings) -> "Database":
        """
        Build the engine from settings.

        Args:
            settings: Application settings

        Returns:
            Database: Ready to use database handle
        """
        engine_kwargs: dict[str, Any] = {"echo": settings.database_echo}
        if not settings.is_sqlite:
            engine_kwargs.update(
                pool_size=settings.database_pool_size,
                max_overflow=settings.database_max_overflow,
                pool_pre_ping=True,  # Verify connections before using
                pool_recycle=3600,  # Recycle connections after 1 hour
            )
        engine = create_async_engine(settings.database_url, **engine_kwargs)
        logger.info("database_engine_created", dialect=engine.dialect.name)
        return cls(engine)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Read-mostly session; callers commit explicitly if they write."""
        async with self.session_factory() as session:
            yield session

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[UnitOfWork]:
        """
        Open a transaction that commits all or nothing.

        Example:
            async with database.unit_of_work() as uow:
                uow.session.add(...)
        """
        async with self.session_factory() as session:
            async with session.begin():
                yield UnitOfWork(session)

    async def create_all(self) -> None:
        """
        Initialize database tables.

        Creates all tables defined in models if they don't exist.
        """
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        """Close database connections and dispose of the engine."""
        await self.engine.dispose()
        logger.info("database_connections_closed")
