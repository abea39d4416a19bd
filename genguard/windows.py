"""Rolling window keys derived from UTC timestamps."""

from datetime import datetime


def quota_window_id(now: datetime) -> str:
    """Daily quota window, e.g. '2026-01-10'."""
    return now.strftime("%Y-%m-%d")


def day_window_id(now: datetime) -> str:
    """Daily spend bucket key, e.g. 'day_2026-01-10'."""
    return f"day_{now.strftime('%Y-%m-%d')}"


def hour_window_id(now: datetime) -> str:
    """Hourly spend bucket key, e.g. 'hour_2026-01-10T14'."""
    return f"hour_{now.strftime('%Y-%m-%dT%H')}"
