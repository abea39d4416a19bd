"""Quota counter model for per-scope daily admission counts."""

from sqlalchemy import CheckConstraint, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin


class QuotaCounter(Base, TimestampMixin):
    """Number of admissions for one scope within one UTC day."""

    __tablename__ = "QuotaCounters"

    scope_key: Mapped[str] = mapped_column(
        String(255),
        primary_key=True,
        comment="Scope name and key, e.g. 'network:203.0.113.7'",
    )
    window_id: Mapped[str] = mapped_column(
        String(32),
        primary_key=True,
        comment="UTC date, e.g. '2026-01-10'",
    )
    count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    __table_args__ = (
        CheckConstraint("count >= 0", name="ck_quota_counters_count_non_negative"),
    )
