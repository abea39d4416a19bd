"""Async engine and session management for the transactional store.

PostgreSQL (asyncpg) is the production target. SQLite (aiosqlite) backs local
development and the test suite; it gets one connection per session and a busy
timeout so concurrent writers wait on the write lock.
"""

import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool
from tenacity import retry, stop_after_attempt, wait_exponential

from .models import Base

if TYPE_CHECKING:
    from genguard.config import DatabaseSettings

DEFAULT_POOL_SIZE = 5
DEFAULT_MAX_OVERFLOW = 10
DEFAULT_POOL_TIMEOUT = 30
DEFAULT_POOL_RECYCLE = 1800  # 30 minutes

# Seconds a SQLite connection waits on the database write lock
SQLITE_BUSY_TIMEOUT = 15

_ASYNC_PREFIXES = (
    ("postgres://", "postgresql+asyncpg://"),
    ("postgresql://", "postgresql+asyncpg://"),
    ("sqlite://", "sqlite+aiosqlite://"),
)


def get_database_url() -> str:
    """Read DATABASE_URL and upgrade it to its async driver."""
    url = os.environ.get("DATABASE_URL")
    if not url:
        raise ValueError("Database connection string not found. Set DATABASE_URL")
    return to_async_url(url)


def to_async_url(url: str) -> str:
    """Rewrite a driver-less URL to use the async driver for its dialect.

    URLs that already name a driver are returned unchanged.
    """
    for prefix, replacement in _ASYNC_PREFIXES:
        if url.startswith(prefix):
            return replacement + url[len(prefix):]
    return url


def is_sqlite_url(url: str) -> bool:
    return url.startswith("sqlite")


def create_engine(
    url: str | None = None,
    pool_size: int = DEFAULT_POOL_SIZE,
    max_overflow: int = DEFAULT_MAX_OVERFLOW,
    pool_timeout: int = DEFAULT_POOL_TIMEOUT,
    pool_recycle: int = DEFAULT_POOL_RECYCLE,
    echo: bool = False,
    **kwargs: Any,
) -> AsyncEngine:
    """Build an async engine for ``url`` (DATABASE_URL when omitted).

    Pool sizing applies to server databases only. SQLite engines use
    ``NullPool`` with a busy timeout merged into ``connect_args``.
    """
    url = get_database_url() if url is None else to_async_url(url)

    if is_sqlite_url(url):
        connect_args = {"timeout": SQLITE_BUSY_TIMEOUT, **kwargs.pop("connect_args", {})}
        return create_async_engine(
            url,
            poolclass=NullPool,
            connect_args=connect_args,
            echo=echo,
            **kwargs,
        )

    return create_async_engine(
        url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_timeout=pool_timeout,
        pool_recycle=pool_recycle,
        pool_pre_ping=True,
        echo=echo,
        **kwargs,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


class DatabaseConnection:
    """Lazily built engine plus a commit-or-rollback session scope.

    Components hold one instance and open a short session per store
    transaction; nothing keeps a session across awaits of other components.
    """

    def __init__(
        self,
        url: str | None = None,
        pool_size: int = DEFAULT_POOL_SIZE,
        max_overflow: int = DEFAULT_MAX_OVERFLOW,
        echo: bool = False,
    ):
        self._url = url
        self._pool_size = pool_size
        self._max_overflow = max_overflow
        self._echo = echo
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    @classmethod
    def from_settings(cls, settings: "DatabaseSettings") -> "DatabaseConnection":
        return cls(
            url=settings.url,
            pool_size=settings.pool_size,
            max_overflow=settings.max_overflow,
            echo=settings.echo,
        )

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = create_engine(
                url=self._url,
                pool_size=self._pool_size,
                max_overflow=self._max_overflow,
                echo=self._echo,
            )
        return self._engine

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            self._session_factory = create_session_factory(self.engine)
        return self._session_factory

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Open a session that commits on normal exit and rolls back on error.

        Usage:
            async with db.session() as session:
                await session.execute(stmt)
        """
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def connect(self) -> None:
        """Check the store is reachable, retrying on startup races."""
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None

    async def create_tables(self) -> None:
        """Create the admission tables directly (tests and local dev; prod uses Alembic)."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def drop_tables(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)


_db: DatabaseConnection | None = None


def get_db() -> DatabaseConnection:
    """Process-wide connection, built from ``DatabaseSettings`` on first use."""
    global _db
    if _db is None:
        from genguard.config import get_settings

        _db = DatabaseConnection.from_settings(get_settings().database)
    return _db


def set_db(db: DatabaseConnection | None) -> None:
    """Install (or clear) the process-wide connection."""
    global _db
    _db = db
