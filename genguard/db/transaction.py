"""Bounded, retried store transactions.

Every component that mutates shared state (quota counters, spend buckets,
jobs) goes through ``run_transaction`` so that each attempt carries a hard
timeout and transient failures are retried a small, bounded number of times
before surfacing as ``TransientStoreError``.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from genguard.config import StoreSettings
from genguard.errors import TransientStoreError
from genguard.logging.config import get_logger

from .connection import DatabaseConnection

logger = get_logger(__name__)

T = TypeVar("T")


def _is_transient(exc: DBAPIError) -> bool:
    if isinstance(exc, (OperationalError, InterfaceError)):
        return True
    return bool(exc.connection_invalidated)


async def _attempt(
    db: DatabaseConnection,
    work: Callable[[AsyncSession], Awaitable[T]],
    timeout: float,
    name: str,
) -> T:
    async def _run() -> T:
        async with db.session() as session:
            return await work(session)

    try:
        return await asyncio.wait_for(_run(), timeout=timeout)
    except TimeoutError as e:
        logger.warning("Store transaction timed out", operation=name, timeout=timeout)
        raise TransientStoreError(f"Store operation '{name}' timed out") from e
    except DBAPIError as e:
        if not _is_transient(e):
            raise
        logger.warning("Transient store failure", operation=name, error=str(e.orig))
        raise TransientStoreError(f"Store operation '{name}' failed transiently") from e


async def run_transaction(
    db: DatabaseConnection,
    work: Callable[[AsyncSession], Awaitable[T]],
    settings: StoreSettings,
    name: str = "transaction",
) -> T:
    """Run ``work`` in its own session/transaction with timeout and retries.

    Domain errors raised by ``work`` roll the transaction back and propagate
    unchanged. Timeouts and connection-level failures are retried with
    exponential backoff, then raised as ``TransientStoreError``.

    Args:
        db: Connection manager providing sessions.
        work: Coroutine function receiving the session.
        settings: Timeout and retry policy.
        name: Operation name for logs.

    Returns:
        Whatever ``work`` returns.
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(settings.retry_attempts),
        wait=wait_exponential(
            multiplier=settings.retry_min_wait_seconds or 0.05,
            min=settings.retry_min_wait_seconds,
            max=settings.retry_max_wait_seconds,
        ),
        retry=retry_if_exception_type(TransientStoreError),
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            result = await _attempt(db, work, settings.timeout_seconds, name)
    return result


def dialect_insert(session: AsyncSession, model: Any) -> Any:
    """Dialect-specific INSERT supporting ``on_conflict_do_nothing/update``."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"Unsupported database dialect: {dialect}")
