"""Tests for connection management and retried store transactions."""

import asyncio

import pytest
from sqlalchemy import inspect, select
from sqlalchemy.exc import IntegrityError, OperationalError

from genguard.config import DatabaseSettings, StoreSettings
from genguard.db import (
    DatabaseConnection,
    FeatureFlag,
    get_database_url,
    get_db,
    run_transaction,
    set_db,
)
from genguard.db.connection import to_async_url
from genguard.errors import InvalidRequest, TransientStoreError


# =============================================================================
# Connection Tests
# =============================================================================


class TestDatabaseUrl:
    @pytest.mark.parametrize(
        "url, expected",
        [
            ("postgres://u:p@db/gen", "postgresql+asyncpg://u:p@db/gen"),
            ("postgresql://u:p@db/gen", "postgresql+asyncpg://u:p@db/gen"),
            ("sqlite:///./gen.db", "sqlite+aiosqlite:///./gen.db"),
            ("sqlite+aiosqlite:///./gen.db", "sqlite+aiosqlite:///./gen.db"),
        ],
    )
    def test_upgrades_to_async_driver(self, url, expected):
        assert to_async_url(url) == expected

    def test_missing_url_raises(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)

        with pytest.raises(ValueError):
            get_database_url()

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "sqlite:///./gen.db")

        assert get_database_url() == "sqlite+aiosqlite:///./gen.db"


class TestDatabaseConnection:
    def test_global_connection_can_be_replaced(self, db):
        set_db(db)
        try:
            assert get_db() is db
        finally:
            set_db(None)

    async def test_built_from_settings(self, tmp_path):
        settings = DatabaseSettings(url=f"sqlite:///{tmp_path / 'settings.db'}")
        database = DatabaseConnection.from_settings(settings)

        await database.connect()

        assert database.engine.url.drivername == "sqlite+aiosqlite"
        await database.close()

    async def test_session_rolls_back_on_error(self, db):
        with pytest.raises(RuntimeError):
            async with db.session() as session:
                session.add(FeatureFlag(flag_key="ENABLE_AI_GENERATION", value="false"))
                await session.flush()
                raise RuntimeError("abort")

        async with db.session() as session:
            rows = (await session.execute(select(FeatureFlag))).scalars().all()
        assert rows == []

    async def test_connect_and_drop_tables(self, tmp_path):
        database = DatabaseConnection(url=f"sqlite+aiosqlite:///{tmp_path / 'drop.db'}")
        await database.create_tables()
        await database.connect()

        await database.drop_tables()

        async with database.engine.connect() as conn:
            tables = await conn.run_sync(lambda sync: inspect(sync).get_table_names())
        await database.close()
        assert tables == []


# =============================================================================
# Transaction Tests
# =============================================================================


class TestRunTransaction:
    async def test_returns_work_result(self, db, store_settings):
        async def work(session):
            session.add(FeatureFlag(flag_key="ENABLE_AI_GENERATION", value="on"))
            return "stored"

        assert await run_transaction(db, work, store_settings, name="store") == "stored"

    async def test_domain_error_propagates_without_retry(self, db, store_settings):
        calls = 0

        async def work(session):
            nonlocal calls
            calls += 1
            session.add(FeatureFlag(flag_key="ENABLE_AI_GENERATION", value="on"))
            await session.flush()
            raise InvalidRequest("Plan belongs to another user")

        with pytest.raises(InvalidRequest):
            await run_transaction(db, work, store_settings)

        assert calls == 1
        async with db.session() as session:
            assert (await session.execute(select(FeatureFlag))).first() is None

    async def test_transient_failure_is_retried(self, db, store_settings):
        calls = 0

        async def work(session):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise OperationalError("UPDATE", {}, Exception("database is locked"))
            return calls

        assert await run_transaction(db, work, store_settings) == 2

    async def test_non_transient_database_error_propagates(self, db, store_settings):
        async def work(session):
            raise IntegrityError("INSERT", {}, Exception("constraint failed"))

        with pytest.raises(IntegrityError):
            await run_transaction(db, work, store_settings)

    async def test_timeouts_surface_as_transient_error(self, db):
        settings = StoreSettings(
            timeout_seconds=0.05,
            retry_attempts=2,
            retry_min_wait_seconds=0.01,
            retry_max_wait_seconds=0.01,
        )
        calls = 0

        async def work(session):
            nonlocal calls
            calls += 1
            await asyncio.sleep(1)

        with pytest.raises(TransientStoreError):
            await run_transaction(db, work, settings, name="slow")

        assert calls == 2
