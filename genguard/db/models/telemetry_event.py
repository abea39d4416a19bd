"""Telemetry event model written by the telemetry notification sink."""

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, generate_uuid, utcnow


class TelemetryEvent(Base):
    """Append-only record of one admission outcome."""

    __tablename__ = "TelemetryEvents"

    event_id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=generate_uuid,
    )
    event: Mapped[str] = mapped_column(String(100), nullable=False)
    job_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    outcome: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="'admitted' or 'rejected'",
    )
    error_kind: Mapped[str | None] = mapped_column(String(50), nullable=True)
    cost_estimate_micros: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    latency_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    attributes: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
        comment="JSON-encoded extra attributes",
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_telemetry_event_created", "event", "created_at"),
        Index("ix_telemetry_job", "job_id"),
    )
