"""Async database manager for Inkframe (single-DB)."""

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import CursorResult
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from inkframe.common.config import InkframeSettings, get_settings
from inkframe.common.models import Base

# Import all model modules so Base.metadata is complete for create_all().
import inkframe.stories.models  # noqa: F401
import inkframe.quota.models  # noqa: F401
import inkframe.idempotency.models  # noqa: F401

_INSERT_BY_DIALECT = {
    "sqlite": sqlite.insert,
    "postgresql": postgresql.insert,
}


class DatabaseManager:
    """Manages a single async database engine."""

    def __init__(self, settings: InkframeSettings | None = None):
        self._settings = settings or get_settings()
        self.engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    async def init(self) -> None:
        url = self._settings.db_url
        connect_args: dict[str, Any] = {}
        if url.startswith("sqlite"):
            # Concurrent writers wait for the write lock instead of failing.
            connect_args["timeout"] = 30
        self.engine = create_async_engine(url, echo=False, connect_args=connect_args)
        self._session_factory = async_sessionmaker(
            self.engine, expire_on_commit=False
        )

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        if self._session_factory is None:
            raise RuntimeError("DatabaseManager not initialized: call init() first")
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def create_all(self) -> None:
        if self.engine is None:
            raise RuntimeError("DatabaseManager not initialized: call init() first")
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        if self.engine:
            await self.engine.dispose()
            self.engine = None
            self._session_factory = None


async def insert_if_absent(
    session: AsyncSession, model: type[Base], values: dict[str, Any]
) -> CursorResult:
    """INSERT ... ON CONFLICT DO NOTHING; ``rowcount`` is 1 only when the row was created."""
    dialect = session.get_bind().dialect.name
    insert = _INSERT_BY_DIALECT.get(dialect)
    if insert is None:
        raise RuntimeError(f"Atomic insert-if-absent is not supported on '{dialect}'")
    stmt = insert(model.__table__).values(**values).on_conflict_do_nothing()
    return await session.execute(stmt)
