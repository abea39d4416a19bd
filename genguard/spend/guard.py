"""Spend ceilings for the external AI provider.

Costs are reserved before the provider is called and reconciled afterwards.
A reservation charges the current hour bucket and the current day bucket in
one transaction. A bucket accepts the charge only while its running total is
still below its ceiling, so the ceiling can be overshot by at most the one
reservation that crossed it, and every later reservation in that window is
refused.

Reservations that are never reconciled (the process died mid-operation) keep
their estimate until the window rolls over. Over-counting is the accepted
failure mode; under-counting is not.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, ROUND_UP, Decimal

from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from genguard.config import SpendSettings, StoreSettings
from genguard.db.connection import DatabaseConnection
from genguard.db.models import SpendBucket, SpendReservation, generate_uuid, utcnow
from genguard.db.transaction import dialect_insert, run_transaction
from genguard.errors import CostLimitExceeded, ReservationNotFound
from genguard.logging.config import get_logger
from genguard.windows import day_window_id, hour_window_id

logger = get_logger(__name__)

MICROS_PER_USD = Decimal("1000000")
MICRO = Decimal("0.000001")


def to_micros(amount_usd: Decimal | int | str, rounding: str = ROUND_HALF_UP) -> int:
    """Convert a dollar amount to integer micro-dollars.

    Floats are refused outright so binary rounding never enters the ledger.
    """
    if isinstance(amount_usd, float):
        raise TypeError("Costs must be Decimal, int or str, not float")
    amount = Decimal(amount_usd)
    if amount < 0:
        raise ValueError(f"Cost cannot be negative: {amount}")
    return int((amount * MICROS_PER_USD).quantize(Decimal("1"), rounding=rounding))


def from_micros(micros: int) -> Decimal:
    return (Decimal(micros) / MICROS_PER_USD).quantize(MICRO)


@dataclass(frozen=True)
class Reservation:
    """A provisional charge against the hour and day buckets."""

    reservation_id: str
    hour_window_id: str
    day_window_id: str
    estimated_usd: Decimal
    actual_usd: Decimal | None = None
    status: str = "reserved"

    @classmethod
    def from_model(cls, row: SpendReservation) -> Reservation:
        return cls(
            reservation_id=row.reservation_id,
            hour_window_id=row.hour_window_id,
            day_window_id=row.day_window_id,
            estimated_usd=from_micros(row.estimated_micros),
            actual_usd=None if row.actual_micros is None else from_micros(row.actual_micros),
            status=row.status,
        )


@dataclass(frozen=True)
class WindowSpend:
    window_id: str
    spend_usd: Decimal
    limit_usd: Decimal
    requests: int

    @property
    def remaining_usd(self) -> Decimal:
        return max(Decimal("0"), self.limit_usd - self.spend_usd)


@dataclass(frozen=True)
class SpendStats:
    hourly: WindowSpend
    daily: WindowSpend


class SpendGuard:
    """Reserves and reconciles metered cost against hourly and daily ceilings."""

    def __init__(
        self,
        db: DatabaseConnection,
        settings: SpendSettings,
        store_settings: StoreSettings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.settings = settings
        self.store_settings = store_settings
        self.clock = clock

    def _ceilings(self, now: datetime) -> list[tuple[str, str, int]]:
        # Day first so that a caller already over the daily ceiling is told so
        return [
            ("day", day_window_id(now), to_micros(self.settings.daily_limit_usd)),
            ("hour", hour_window_id(now), to_micros(self.settings.hourly_limit_usd)),
        ]

    async def reserve(
        self,
        estimated_cost_usd: Decimal | int | str,
        operation: str = "generation",
    ) -> Reservation:
        """Charge an estimate to the current hour and day buckets.

        Args:
            estimated_cost_usd: Conservative estimate, rounded up to the micro-dollar.
            operation: Label stored on the reservation.

        Returns:
            The reservation to pass to ``reconcile``.

        Raises:
            CostLimitExceeded: A bucket is at its ceiling; neither was charged.
            TransientStoreError: The store kept failing after bounded retries.
        """
        estimate = to_micros(estimated_cost_usd, rounding=ROUND_UP)
        now = self.clock()
        buckets = self._ceilings(now)
        reservation_id = generate_uuid()

        async def work(session: AsyncSession) -> Reservation:
            for window, window_id, _ in sorted(buckets, key=lambda b: b[1]):
                await session.execute(
                    dialect_insert(session, SpendBucket)
                    .values(
                        window_id=window_id,
                        window=window,
                        total_micros=0,
                        request_count=0,
                        created_at=now,
                        updated_at=now,
                    )
                    .on_conflict_do_nothing(index_elements=["window_id"])
                )

            for window, window_id, ceiling in buckets:
                result = await session.execute(
                    update(SpendBucket)
                    .where(
                        SpendBucket.window_id == window_id,
                        SpendBucket.total_micros < ceiling,
                    )
                    .values(
                        total_micros=SpendBucket.total_micros + estimate,
                        request_count=SpendBucket.request_count + 1,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    raise CostLimitExceeded(window, window_id, str(from_micros(ceiling)))

            row = SpendReservation(
                reservation_id=reservation_id,
                hour_window_id=hour_window_id(now),
                day_window_id=day_window_id(now),
                estimated_micros=estimate,
                status="reserved",
                operation=operation,
                created_at=now,
            )
            session.add(row)
            await session.flush()
            return Reservation.from_model(row)

        try:
            reservation = await run_transaction(
                self.db, work, self.store_settings, name="spend.reserve"
            )
        except CostLimitExceeded as e:
            logger.error(
                "Spend limit reached",
                window=e.window,
                window_id=e.detail["window_id"],
                limit_usd=e.detail["limit_usd"],
            )
            raise

        logger.info(
            "Reserved spend",
            reservation_id=reservation.reservation_id,
            estimated_usd=str(reservation.estimated_usd),
            operation=operation,
        )
        return reservation

    async def reconcile(
        self,
        reservation_id: str,
        actual_cost_usd: Decimal | int | str,
    ) -> Reservation:
        """Replace a reservation's estimate with the actual cost.

        The signed difference is applied to the buckets the reservation was
        charged to, clamped at zero. A reservation is reconciled at most once;
        repeated calls return it unchanged.

        Raises:
            ReservationNotFound: No reservation with this id.
            TransientStoreError: The store kept failing after bounded retries.
        """
        actual = to_micros(actual_cost_usd)
        now = self.clock()

        async def work(session: AsyncSession) -> tuple[Reservation, int | None]:
            claimed = await session.execute(
                update(SpendReservation)
                .where(
                    SpendReservation.reservation_id == reservation_id,
                    SpendReservation.status == "reserved",
                )
                .values(status="reconciled", actual_micros=actual, reconciled_at=now)
                .execution_options(synchronize_session=False)
            )
            row = (
                await session.execute(
                    select(SpendReservation).where(
                        SpendReservation.reservation_id == reservation_id
                    )
                )
            ).scalar_one_or_none()
            if row is None:
                raise ReservationNotFound(reservation_id)
            if claimed.rowcount == 0:
                return Reservation.from_model(row), None

            delta = actual - row.estimated_micros
            if delta:
                new_total = SpendBucket.total_micros + delta
                await session.execute(
                    update(SpendBucket)
                    .where(SpendBucket.window_id.in_([row.hour_window_id, row.day_window_id]))
                    .values(
                        total_micros=case((new_total > 0, new_total), else_=0),
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
            return Reservation.from_model(row), delta

        reservation, delta = await run_transaction(
            self.db, work, self.store_settings, name="spend.reconcile"
        )
        if delta is None:
            logger.info("Reservation already reconciled", reservation_id=reservation_id)
        else:
            logger.info(
                "Reconciled spend",
                reservation_id=reservation_id,
                estimated_usd=str(reservation.estimated_usd),
                actual_usd=str(reservation.actual_usd),
                delta_usd=str(from_micros(delta)),
            )
        return reservation

    async def get_reservation(self, reservation_id: str) -> Reservation:
        async def work(session: AsyncSession) -> Reservation:
            row = await session.get(SpendReservation, reservation_id)
            if row is None:
                raise ReservationNotFound(reservation_id)
            return Reservation.from_model(row)

        return await run_transaction(self.db, work, self.store_settings, name="spend.get")

    async def stats(self) -> SpendStats:
        """Spend, ceiling, headroom and request count for the current hour and day."""
        now = self.clock()
        hour_id, day_id = hour_window_id(now), day_window_id(now)

        async def work(session: AsyncSession) -> dict[str, SpendBucket]:
            result = await session.execute(
                select(SpendBucket).where(SpendBucket.window_id.in_([hour_id, day_id]))
            )
            return {bucket.window_id: bucket for bucket in result.scalars().all()}

        rows = await run_transaction(self.db, work, self.store_settings, name="spend.stats")

        def window(window_id: str, limit: Decimal) -> WindowSpend:
            bucket = rows.get(window_id)
            return WindowSpend(
                window_id=window_id,
                spend_usd=from_micros(bucket.total_micros if bucket else 0),
                limit_usd=limit,
                requests=bucket.request_count if bucket else 0,
            )

        return SpendStats(
            hourly=window(hour_id, self.settings.hourly_limit_usd),
            daily=window(day_id, self.settings.daily_limit_usd),
        )
