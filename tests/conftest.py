"""Pytest configuration and fixtures for genguard tests."""

from collections.abc import AsyncGenerator
from datetime import datetime, timedelta

import pytest

from genguard.config import (
    FlagSettings,
    JobSettings,
    NotifySettings,
    QuotaSettings,
    Settings,
    SpendSettings,
    StoreSettings,
)
from genguard.db.connection import DatabaseConnection
from genguard.flags import get_flag_cache


# ============================================================================
# Clock Fixtures
# ============================================================================


class FakeClock:
    """Settable clock returning naive UTC datetimes."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeMonotonic:
    """Settable replacement for time.monotonic."""

    def __init__(self, start: float = 1000.0):
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 1, 10, 14, 30, 0))


@pytest.fixture
def monotonic() -> FakeMonotonic:
    return FakeMonotonic()


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
async def db(tmp_path) -> AsyncGenerator[DatabaseConnection, None]:
    """Fresh SQLite database file with all tables created."""
    database = DatabaseConnection(url=f"sqlite+aiosqlite:///{tmp_path / 'genguard.db'}")
    await database.create_tables()
    yield database
    await database.close()


# ============================================================================
# Settings Fixtures
# ============================================================================


@pytest.fixture
def store_settings() -> StoreSettings:
    return StoreSettings(
        timeout_seconds=10.0,
        retry_attempts=3,
        retry_min_wait_seconds=0.01,
        retry_max_wait_seconds=0.05,
    )


@pytest.fixture
def quota_settings() -> QuotaSettings:
    return QuotaSettings(
        network_daily_limit=3,
        identity_daily_limit=3,
        missing_scope_policy="skip",
    )


@pytest.fixture
def spend_settings() -> SpendSettings:
    return SpendSettings(hourly_limit_usd="10", daily_limit_usd="50")


@pytest.fixture
def flag_settings() -> FlagSettings:
    return FlagSettings(
        remote_url="",
        remote_token="",
        remote_timeout_seconds=0.2,
        store_timeout_seconds=1.0,
        cache_ttl_seconds=60,
    )


@pytest.fixture
def job_settings() -> JobSettings:
    return JobSettings(
        max_attempts=3,
        stale_after_seconds=600,
        backoff_base_seconds=1.0,
        backoff_max_seconds=30.0,
    )


@pytest.fixture
def settings(
    store_settings,
    quota_settings,
    spend_settings,
    flag_settings,
    job_settings,
) -> Settings:
    return Settings(
        store=store_settings,
        quota=quota_settings,
        spend=spend_settings,
        flags=flag_settings,
        jobs=job_settings,
        notify=NotifySettings(telemetry_enabled=False),
    )


@pytest.fixture(autouse=True)
def clear_flag_cache():
    """Keep the process-wide flag cache from leaking between tests."""
    get_flag_cache().invalidate()
    yield
    get_flag_cache().invalidate()
