"""Atomic per-scope admission quotas.

All scopes of one admission are checked and incremented inside a single
store transaction. Each scope is bumped with a conditional update
(``count = count + 1 WHERE count < limit``); if any update matches no row
the transaction rolls back and no scope keeps an increment. Counters live in
a window keyed by the current UTC date, so they reset at midnight without a
cleanup job.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from genguard.config import QuotaSettings, StoreSettings
from genguard.db.connection import DatabaseConnection
from genguard.db.models import QuotaCounter, utcnow
from genguard.db.transaction import dialect_insert, run_transaction
from genguard.errors import QuotaExceeded, QuotaScopeUnavailable
from genguard.logging.config import get_logger
from genguard.windows import quota_window_id

logger = get_logger(__name__)

# Keys that clients send when the real value could not be determined
UNAVAILABLE_KEYS = frozenset({"", "unknown"})


@dataclass(frozen=True)
class QuotaScope:
    """One dimension a request is metered against, e.g. network or identity."""

    name: str
    key: str | None
    limit: int

    @property
    def available(self) -> bool:
        return self.key is not None and self.key.strip().lower() not in UNAVAILABLE_KEYS

    @property
    def counter_key(self) -> str:
        return f"{self.name}:{self.key}"


@dataclass(frozen=True)
class QuotaTicket:
    """Proof of a successful increment; everything ``release`` needs."""

    window_id: str
    scope_keys: tuple[str, ...]
    skipped_scopes: tuple[str, ...] = ()


class QuotaGate:
    """Checks and increments quota counters across several scopes at once."""

    def __init__(
        self,
        db: DatabaseConnection,
        settings: QuotaSettings,
        store_settings: StoreSettings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.settings = settings
        self.store_settings = store_settings
        self.clock = clock

    def _admissible_scopes(
        self, scopes: Sequence[QuotaScope]
    ) -> tuple[list[QuotaScope], list[str]]:
        """Apply the missing-scope policy.

        ``skip`` checks only the scopes that have a key, ``reject`` refuses the
        request. Either way a request with no usable scope at all is refused,
        so missing data never admits a request unchecked.
        """
        usable: list[QuotaScope] = []
        skipped: list[str] = []
        for scope in scopes:
            if scope.available:
                usable.append(scope)
                continue
            if self.settings.missing_scope_policy == "reject":
                raise QuotaScopeUnavailable(scope.name)
            logger.warning(
                "Quota scope unavailable, checking remaining scopes",
                scope=scope.name,
            )
            skipped.append(scope.name)

        if not usable:
            raise QuotaScopeUnavailable(skipped[0] if skipped else "all")
        return usable, skipped

    async def check_and_increment(self, scopes: Sequence[QuotaScope]) -> QuotaTicket:
        """Admit one request against every scope, or against none.

        Args:
            scopes: Scopes to meter, each with its own limit.

        Returns:
            A ticket naming the window and counters that were incremented.

        Raises:
            QuotaExceeded: A scope was already at its limit; nothing incremented.
            QuotaScopeUnavailable: Required scope data was missing.
            TransientStoreError: The store kept failing after bounded retries.
        """
        usable, skipped = self._admissible_scopes(scopes)
        now = self.clock()
        window_id = quota_window_id(now)
        # Fixed lock order across concurrent transactions
        ordered = sorted(usable, key=lambda s: s.counter_key)

        async def work(session: AsyncSession) -> QuotaTicket:
            for scope in ordered:
                await session.execute(
                    dialect_insert(session, QuotaCounter)
                    .values(
                        scope_key=scope.counter_key,
                        window_id=window_id,
                        count=0,
                        created_at=now,
                        updated_at=now,
                    )
                    .on_conflict_do_nothing(index_elements=["scope_key", "window_id"])
                )

            for scope in ordered:
                result = await session.execute(
                    update(QuotaCounter)
                    .where(
                        QuotaCounter.scope_key == scope.counter_key,
                        QuotaCounter.window_id == window_id,
                        QuotaCounter.count < scope.limit,
                    )
                    .values(count=QuotaCounter.count + 1, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    raise QuotaExceeded(scope.name, scope.limit, window_id)

            return QuotaTicket(
                window_id=window_id,
                scope_keys=tuple(s.counter_key for s in ordered),
                skipped_scopes=tuple(skipped),
            )

        try:
            ticket = await run_transaction(
                self.db, work, self.store_settings, name="quota.check_and_increment"
            )
        except QuotaExceeded as e:
            logger.info(
                "Quota exceeded",
                scope=e.scope,
                window_id=window_id,
            )
            raise

        logger.debug("Quota admitted", window_id=window_id, scopes=list(ticket.scope_keys))
        return ticket

    async def release(self, scope_key: str, window_id: str) -> None:
        """Undo one increment, never going below zero.

        Releasing a counter that does not exist is a no-op, so duplicate
        compensation calls are harmless.
        """
        now = self.clock()

        async def work(session: AsyncSession) -> int:
            result = await session.execute(
                update(QuotaCounter)
                .where(
                    QuotaCounter.scope_key == scope_key,
                    QuotaCounter.window_id == window_id,
                )
                .values(
                    count=case(
                        (QuotaCounter.count > 0, QuotaCounter.count - 1),
                        else_=0,
                    ),
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount

        matched = await run_transaction(self.db, work, self.store_settings, name="quota.release")
        logger.info(
            "Released quota",
            scope_key=scope_key,
            window_id=window_id,
            matched=bool(matched),
        )

    async def release_ticket(self, ticket: QuotaTicket) -> list[str]:
        """Release every counter a ticket incremented.

        Each counter is released on its own; a failure is logged and the
        remaining counters are still released. Returns the keys that failed.
        """
        failed: list[str] = []
        for scope_key in ticket.scope_keys:
            try:
                await self.release(scope_key, ticket.window_id)
            except Exception:
                logger.warning(
                    "Quota release failed",
                    scope_key=scope_key,
                    window_id=ticket.window_id,
                    exc_info=True,
                )
                failed.append(scope_key)
        return failed

    async def usage(self, scope_key: str, window_id: str | None = None) -> int:
        """Current count for a counter key; zero if never written."""
        window_id = window_id or quota_window_id(self.clock())

        async def work(session: AsyncSession) -> int:
            result = await session.execute(
                select(QuotaCounter.count).where(
                    QuotaCounter.scope_key == scope_key,
                    QuotaCounter.window_id == window_id,
                )
            )
            return result.scalar_one_or_none() or 0

        return await run_transaction(self.db, work, self.store_settings, name="quota.usage")

    async def remaining(self, scope: QuotaScope) -> int:
        """How many more admissions the scope allows in the current window."""
        used = await self.usage(scope.counter_key)
        return max(0, scope.limit - used)
