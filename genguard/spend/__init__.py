"""Spend ceilings against the external AI provider."""

from .guard import (
    Reservation,
    SpendGuard,
    SpendStats,
    WindowSpend,
    from_micros,
    to_micros,
)

__all__ = [
    "Reservation",
    "SpendGuard",
    "SpendStats",
    "WindowSpend",
    "from_micros",
    "to_micros",
]
