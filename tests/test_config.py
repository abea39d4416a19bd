"""Tests for settings loading and logging context."""

from decimal import Decimal

import pytest
import structlog
from pydantic import ValidationError

from genguard.config import (
    LoggingSettings,
    QuotaSettings,
    SpendSettings,
    StoreSettings,
    get_settings,
    refresh_settings,
)
from genguard.logging import (
    LogContext,
    bind_context,
    clear_context,
    configure_logging,
    get_correlation_id,
    get_logger,
    set_correlation_id,
    unbind_context,
)
from genguard.logging.config import add_correlation_id, add_service_info


class TestSettings:
    def test_defaults(self):
        settings = refresh_settings()

        assert settings.quota.network_daily_limit == 3
        assert settings.flags.cache_ttl_seconds == 60
        assert settings.jobs.stale_after_seconds == 600
        assert settings.orchestrator.generation_flag_key == "ENABLE_AI_GENERATION"

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("QUOTA_NETWORK_DAILY_LIMIT", "5")
        monkeypatch.setenv("QUOTA_MISSING_SCOPE_POLICY", "reject")
        monkeypatch.setenv("SPEND_DAILY_LIMIT_USD", "12.5")

        assert QuotaSettings().network_daily_limit == 5
        assert QuotaSettings().missing_scope_policy == "reject"
        assert SpendSettings().daily_limit_usd == Decimal("12.5")

    def test_invalid_policy_rejected(self):
        with pytest.raises(ValidationError):
            QuotaSettings(missing_scope_policy="ignore")

    def test_retry_attempts_bounded(self):
        with pytest.raises(ValidationError):
            StoreSettings(retry_attempts=0)

    def test_settings_cached_until_refreshed(self, monkeypatch):
        first = refresh_settings()
        assert get_settings() is first

        monkeypatch.setenv("JOBS_STALE_AFTER_SECONDS", "90")
        second = refresh_settings()

        assert second is not first
        assert second.jobs.stale_after_seconds == 90
        monkeypatch.delenv("JOBS_STALE_AFTER_SECONDS")
        assert refresh_settings().jobs.stale_after_seconds == 600


class TestLogContext:
    def test_binds_and_restores(self):
        clear_context()
        bind_context(request="outer")

        with LogContext(job_id="plan-123", request="inner"):
            bound = structlog.contextvars.get_contextvars()
            assert bound == {"request": "inner", "job_id": "plan-123"}

        assert structlog.contextvars.get_contextvars() == {"request": "outer"}
        clear_context()

    def test_unbind_removes_keys(self):
        clear_context()
        bind_context(job_id="plan-123", worker_id="w1")

        unbind_context("worker_id")

        assert structlog.contextvars.get_contextvars() == {"job_id": "plan-123"}
        clear_context()


class TestLoggingSetup:
    def test_correlation_id_added_to_events(self):
        set_correlation_id("corr-1")
        try:
            assert get_correlation_id() == "corr-1"
            event = add_correlation_id(None, "info", {"event": "hello"})
        finally:
            set_correlation_id(None)

        assert event["correlation_id"] == "corr-1"

    def test_explicit_correlation_id_wins(self):
        set_correlation_id("corr-1")
        try:
            event = add_correlation_id(None, "info", {"correlation_id": "corr-2"})
        finally:
            set_correlation_id(None)

        assert event["correlation_id"] == "corr-2"

    def test_configure_console_logging(self):
        settings = LoggingSettings(level="DEBUG", json_format=False)
        configure_logging(settings, service_name="genguard-test")

        get_logger("genguard.tests").info("configured")

        assert structlog.is_configured()
        assert add_service_info(None, "info", {})["service"] == "genguard-test"
