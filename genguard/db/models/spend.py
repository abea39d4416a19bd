"""Spend bucket and reservation models.

Amounts are stored as integer micro-dollars so that the store never performs
floating point arithmetic on money.
"""

from datetime import datetime

from sqlalchemy import BigInteger, CheckConstraint, DateTime, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin, generate_uuid, utcnow


class SpendBucket(Base, TimestampMixin):
    """Aggregated metered cost for one hour or one day."""

    __tablename__ = "SpendBuckets"

    window_id: Mapped[str] = mapped_column(
        String(40),
        primary_key=True,
        comment="'hour_2026-01-10T14' or 'day_2026-01-10'",
    )
    window: Mapped[str] = mapped_column(
        String(8),
        nullable=False,
        comment="'hour' or 'day'",
    )
    total_micros: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    request_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    __table_args__ = (
        CheckConstraint("total_micros >= 0", name="ck_spend_buckets_total_non_negative"),
    )


class SpendReservation(Base):
    """Provisional charge made before the actual cost is known."""

    __tablename__ = "SpendReservations"

    reservation_id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=generate_uuid,
    )
    hour_window_id: Mapped[str] = mapped_column(String(40), nullable=False)
    day_window_id: Mapped[str] = mapped_column(String(40), nullable=False)
    estimated_micros: Mapped[int] = mapped_column(BigInteger, nullable=False)
    actual_micros: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20),
        default="reserved",
        nullable=False,
        comment="'reserved' or 'reconciled'",
    )
    operation: Mapped[str] = mapped_column(String(100), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    reconciled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_spend_reservations_status", "status"),
        Index("ix_spend_reservations_day", "day_window_id"),
    )
