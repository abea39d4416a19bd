"""Persisted fallback document for operational flags."""

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin


class FeatureFlag(Base, TimestampMixin):
    """Stored flag value, consulted when the remote config service is silent."""

    __tablename__ = "FeatureFlags"

    flag_key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Raw value, parsed with the same rules as env overrides",
    )
