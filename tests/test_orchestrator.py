"""Tests for the end-to-end admission flow and its compensation."""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from genguard.errors import (
    CostedOperationError,
    ErrorKind,
    InvalidRequest,
    JobAlreadyRunning,
    JobNotFound,
    TransientStoreError,
)
from genguard.flags import FeatureSwitch, FlagCache
from genguard.jobs import JobLedger, JobStatus
from genguard.notify import NotificationDispatcher
from genguard.orchestrator import (
    AdmissionOrchestrator,
    AdmissionRequest,
    OperationOutcome,
    build_orchestrator,
    network_scope_from_headers,
)
from genguard.quota import QuotaGate
from genguard.spend import SpendGuard

NETWORK_KEY = "network:198.51.100.7"


# =============================================================================
# Test Fixtures
# =============================================================================


class FakeOperation:
    """Costed operation double with a fixed estimate and outcome."""

    def __init__(
        self,
        estimate="0.50",
        actual="0.20",
        error=None,
        output="generated plan",
        delay=0.0,
    ):
        self.estimate = Decimal(estimate)
        self.actual = Decimal(actual)
        self.error = error
        self.output = output
        self.delay = delay
        self.calls = 0
        self.cancelled = False

    def estimate_cost(self, request):
        return self.estimate

    async def run(self, request, job):
        self.calls += 1
        if self.delay:
            try:
                await asyncio.sleep(self.delay)
            except asyncio.CancelledError:
                self.cancelled = True
                raise
        if self.error is not None:
            raise self.error
        return OperationOutcome(actual_cost_usd=self.actual, output=self.output)


class ResubmittingOperation(FakeOperation):
    """Runs a callback (e.g. a duplicate submission) before finishing."""

    def __init__(self, during_run, **kwargs):
        super().__init__(**kwargs)
        self.during_run = during_run

    async def run(self, request, job):
        await self.during_run()
        return await super().run(request, job)


class SteppedOperation(FakeOperation):
    """Pays for each step once, checkpointing finished steps on the job."""

    steps = ("m4", "m8", "m12")

    def __init__(self, jobs, worker_id, fail_at=None):
        super().__init__()
        self.jobs = jobs
        self.worker_id = worker_id
        self.fail_at = fail_at
        self.paid = []

    async def run(self, request, job):
        self.calls += 1
        for step in job.pending_steps(self.steps):
            if step == self.fail_at:
                raise RuntimeError(f"step {step} failed")
            self.paid.append(step)
            await self.jobs.record_progress(job.job_id, step, worker_id=self.worker_id)
        return OperationOutcome(actual_cost_usd=self.actual, output=self.output)


class RecordingSink:
    name = "recording"

    def __init__(self):
        self.events = []

    async def send(self, event):
        self.events.append(event)


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
async def dispatcher(sink):
    dispatcher = NotificationDispatcher([sink], maxsize=100)
    await dispatcher.start()
    yield dispatcher
    await dispatcher.stop(timeout=1.0)


@pytest.fixture
def environ():
    return {}


@pytest.fixture
def orchestrator(db, settings, clock, dispatcher, environ):
    store = settings.store
    return AdmissionOrchestrator(
        settings=settings,
        flags=FeatureSwitch(db, settings.flags, store, cache=FlagCache(), environ=environ),
        quota=QuotaGate(db, settings.quota, store, clock=clock),
        spend=SpendGuard(db, settings.spend, store, clock=clock),
        jobs=JobLedger(db, settings.jobs, store, clock=clock),
        dispatcher=dispatcher,
        worker_id="worker-test",
    )


@pytest.fixture
def fast_heartbeat(orchestrator):
    jobs = orchestrator.jobs
    jobs.settings = jobs.settings.model_copy(update={"heartbeat_interval_seconds": 0.01})
    return orchestrator


def make_request(job_id="plan-123", **overrides) -> AdmissionRequest:
    fields = {
        "job_id": job_id,
        "job_kind": "plan",
        "network_scope_key": "198.51.100.7",
        "identity_scope_key": f"{job_id}@example.com",
        "payload": {"goal": "strength"},
    }
    fields.update(overrides)
    return AdmissionRequest(**fields)


# =============================================================================
# Successful Admission Tests
# =============================================================================


class TestAdmission:
    """Tests for the happy path."""

    async def test_admits_and_runs_operation(self, orchestrator, dispatcher, sink):
        operation = FakeOperation()

        result = await orchestrator.admit(make_request(), operation)

        assert result.admitted
        assert result.output == "generated plan"
        assert result.actual_cost_usd == Decimal("0.20")
        assert result.error_kind is None
        assert operation.calls == 1

        job = await orchestrator.jobs.get("plan-123")
        assert job.status == JobStatus.COMPLETED
        assert job.claimed_by == "worker-test"
        assert await orchestrator.quota.usage(NETWORK_KEY) == 1
        assert (await orchestrator.spend.stats()).daily.spend_usd == Decimal("0.20")

        await dispatcher.drain()
        assert [e.outcome for e in sink.events] == ["admitted"]
        assert sink.events[0].cost_estimate_usd == Decimal("0.50")

    async def test_completed_job_is_replayed_without_rerun(self, orchestrator):
        operation = FakeOperation()
        await orchestrator.admit(make_request(), operation)

        result = await orchestrator.admit(make_request(), operation)

        assert result.admitted
        assert result.replayed
        assert operation.calls == 1
        assert await orchestrator.quota.usage(NETWORK_KEY) == 1
        assert (await orchestrator.spend.stats()).daily.requests == 1

    async def test_failed_job_is_retried(self, orchestrator):
        failing = FakeOperation(error=RuntimeError("provider timeout"))
        await orchestrator.admit(make_request(), failing)

        result = await orchestrator.admit(make_request(), FakeOperation())

        assert result.admitted
        job = await orchestrator.jobs.get("plan-123")
        assert job.status == JobStatus.COMPLETED
        assert job.attempts == 1

    async def test_retry_skips_finished_steps(self, orchestrator):
        first = SteppedOperation(orchestrator.jobs, orchestrator.worker_id, fail_at="m8")
        failed = await orchestrator.admit(make_request(), first)

        second = SteppedOperation(orchestrator.jobs, orchestrator.worker_id)
        result = await orchestrator.admit(make_request(), second)

        assert failed.error_kind == ErrorKind.OPERATION_FAILED
        assert result.admitted
        assert first.paid == ["m4"]
        assert second.paid == ["m8", "m12"]
        job = await orchestrator.jobs.get("plan-123")
        assert job.progress == {"m4": True, "m8": True, "m12": True}

    async def test_missing_network_scope_is_skipped(self, orchestrator):
        result = await orchestrator.admit(
            make_request(network_scope_key=None),
            FakeOperation(),
        )

        assert result.admitted


# =============================================================================
# Rejection Tests
# =============================================================================


class TestRejections:
    """Each rejection carries one specific error kind."""

    @pytest.mark.parametrize("environ", [{"ENABLE_AI_GENERATION": "false"}])
    async def test_disabled_feature_consumes_nothing(self, orchestrator, dispatcher, sink):
        operation = FakeOperation()

        result = await orchestrator.admit(make_request(), operation)

        assert not result.admitted
        assert result.error_kind == ErrorKind.FEATURE_DISABLED
        assert result.detail["source"] == "env"
        assert operation.calls == 0
        assert await orchestrator.quota.usage(NETWORK_KEY) == 0
        with pytest.raises(JobNotFound):
            await orchestrator.jobs.get("plan-123")

        await dispatcher.drain()
        assert sink.events[0].outcome == "rejected"
        assert sink.events[0].error_kind == "feature_disabled"

    async def test_network_quota_exceeded(self, orchestrator):
        for i in range(3):
            result = await orchestrator.admit(make_request(job_id=f"plan-{i}"), FakeOperation())
            assert result.admitted

        result = await orchestrator.admit(make_request(job_id="plan-9"), FakeOperation())

        assert result.error_kind == ErrorKind.QUOTA_EXCEEDED
        assert result.detail["scope"] == "network"
        assert await orchestrator.quota.usage(NETWORK_KEY) == 3

    async def test_invalid_request_releases_quota(self, orchestrator):
        error = InvalidRequest("Plan belongs to another user")
        orchestrator.validator = AsyncMock(side_effect=error)
        operation = FakeOperation()

        result = await orchestrator.admit(make_request(), operation)

        assert result.error_kind == ErrorKind.INVALID_REQUEST
        assert operation.calls == 0
        assert await orchestrator.quota.usage(NETWORK_KEY) == 0
        with pytest.raises(JobNotFound):
            await orchestrator.jobs.get("plan-123")

    async def test_job_already_running(self, orchestrator):
        await orchestrator.jobs.get_or_create("plan-123", "plan")
        await orchestrator.jobs.claim("plan-123", worker_id="worker-other")

        result = await orchestrator.admit(make_request(), FakeOperation())

        assert result.error_kind == ErrorKind.JOB_ALREADY_RUNNING
        assert await orchestrator.quota.usage(NETWORK_KEY) == 0
        job = await orchestrator.jobs.get("plan-123")
        assert job.status == JobStatus.RUNNING
        assert job.claimed_by == "worker-other"

    async def test_retries_exhausted(self, orchestrator):
        for _ in range(3):
            await orchestrator.admit(make_request(), FakeOperation(error=RuntimeError("boom")))

        result = await orchestrator.admit(make_request(), FakeOperation())

        assert result.error_kind == ErrorKind.JOB_RETRIES_EXHAUSTED
        assert await orchestrator.quota.usage(NETWORK_KEY) == 0

    async def test_store_failure_asks_caller_to_retry(self, orchestrator):
        orchestrator.spend.reserve = AsyncMock(side_effect=TransientStoreError())
        operation = FakeOperation()

        result = await orchestrator.admit(make_request(), operation)

        assert result.error_kind == ErrorKind.TRY_AGAIN
        assert operation.calls == 0
        assert await orchestrator.quota.usage(NETWORK_KEY) == 0
        job = await orchestrator.jobs.get("plan-123")
        assert job.status == JobStatus.FAILED
        assert job.attempts == 1

    async def test_all_quota_scopes_missing(self, orchestrator):
        operation = FakeOperation()

        result = await orchestrator.admit(
            make_request(network_scope_key=None, identity_scope_key=None),
            operation,
        )

        assert result.error_kind == ErrorKind.QUOTA_SCOPE_UNAVAILABLE
        assert operation.calls == 0
        with pytest.raises(JobNotFound):
            await orchestrator.jobs.get("plan-123")

    async def test_cost_limit_exceeded(self, orchestrator):
        await orchestrator.spend.reserve("50.00")
        operation = FakeOperation()

        result = await orchestrator.admit(make_request(), operation)

        assert result.error_kind == ErrorKind.COST_LIMIT_EXCEEDED
        assert result.detail["window"] == "day"
        assert operation.calls == 0
        assert await orchestrator.quota.usage(NETWORK_KEY) == 0
        assert (await orchestrator.jobs.get("plan-123")).status == JobStatus.FAILED


# =============================================================================
# Compensation Tests
# =============================================================================


class TestCompensation:
    """Tests for best-effort undo after a failure."""

    async def test_operation_failure_releases_quota_and_fails_job(self, orchestrator):
        result = await orchestrator.admit(
            make_request(),
            FakeOperation(error=RuntimeError("provider timeout")),
        )

        assert not result.admitted
        assert result.error_kind == ErrorKind.OPERATION_FAILED
        assert result.detail["message"] == "provider timeout"
        assert await orchestrator.quota.usage(NETWORK_KEY) == 0
        job = await orchestrator.jobs.get("plan-123")
        assert job.status == JobStatus.FAILED
        assert job.last_error == "provider timeout"
        # No partial cost reported, the estimate stays charged
        assert (await orchestrator.spend.stats()).daily.spend_usd == Decimal("0.50")

    async def test_partial_cost_is_reconciled(self, orchestrator):
        error = CostedOperationError("stream aborted", actual_cost_usd=Decimal("0.10"))

        result = await orchestrator.admit(make_request(), FakeOperation(error=error))

        assert result.error_kind == ErrorKind.OPERATION_FAILED
        assert (await orchestrator.spend.stats()).daily.spend_usd == Decimal("0.10")

    async def test_compensation_failure_does_not_mask_error(self, orchestrator):
        orchestrator.quota.release_ticket = AsyncMock(side_effect=RuntimeError("store down"))
        orchestrator.jobs.fail = AsyncMock(side_effect=RuntimeError("store down"))

        result = await orchestrator.admit(
            make_request(),
            FakeOperation(error=RuntimeError("provider timeout")),
        )

        assert result.error_kind == ErrorKind.OPERATION_FAILED
        assert result.detail["message"] == "provider timeout"

    async def test_reconcile_failure_keeps_estimate(self, orchestrator):
        orchestrator.spend.reconcile = AsyncMock(side_effect=RuntimeError("store down"))

        result = await orchestrator.admit(make_request(), FakeOperation())

        assert result.admitted
        assert result.actual_cost_usd == Decimal("0.500000")
        assert (await orchestrator.jobs.get("plan-123")).status == JobStatus.COMPLETED

    async def test_cancelled_admission_is_compensated(self, orchestrator, dispatcher, sink):
        operation = FakeOperation(delay=30)

        with pytest.raises(TimeoutError):
            await asyncio.wait_for(orchestrator.admit(make_request(), operation), timeout=1.0)

        assert operation.cancelled
        assert await orchestrator.quota.usage(NETWORK_KEY) == 0
        job = await orchestrator.jobs.get("plan-123")
        assert job.status == JobStatus.FAILED
        assert job.last_error == "Admission cancelled"
        await dispatcher.drain()
        assert sink.events[-1].outcome == "rejected"

    async def test_failing_sink_does_not_affect_result(self, orchestrator, dispatcher, sink):
        broken = AsyncMock()
        broken.name = "broken"
        broken.send = AsyncMock(side_effect=RuntimeError("webhook down"))
        dispatcher.sinks.insert(0, broken)

        result = await orchestrator.admit(make_request(), FakeOperation())

        assert result.admitted
        await dispatcher.drain()
        assert len(sink.events) == 1


# =============================================================================
# Claim Renewal Tests
# =============================================================================


class TestClaimRenewal:
    """Tests for keeping the job claim alive while the operation runs."""

    async def test_long_operation_is_not_run_twice(self, fast_heartbeat, clock):
        orchestrator = fast_heartbeat
        duplicate = FakeOperation()
        duplicate_results = []

        async def resubmit_after_stale_threshold():
            clock.advance(seconds=700)
            await asyncio.sleep(0.2)
            duplicate_results.append(await orchestrator.admit(make_request(), duplicate))

        operation = ResubmittingOperation(resubmit_after_stale_threshold)

        result = await orchestrator.admit(make_request(), operation)

        assert result.admitted
        assert operation.calls == 1
        assert duplicate.calls == 0
        assert duplicate_results[0].error_kind == ErrorKind.JOB_ALREADY_RUNNING
        job = await orchestrator.jobs.get("plan-123")
        assert job.status == JobStatus.COMPLETED
        assert job.claimed_by == "worker-test"

    async def test_lost_claim_cancels_operation(self, fast_heartbeat):
        orchestrator = fast_heartbeat
        orchestrator.jobs.heartbeat = AsyncMock(side_effect=JobAlreadyRunning("plan-123"))
        operation = FakeOperation(delay=30)

        result = await orchestrator.admit(make_request(), operation)

        assert result.error_kind == ErrorKind.JOB_ALREADY_RUNNING
        assert operation.cancelled
        assert await orchestrator.quota.usage(NETWORK_KEY) == 0
        # The job is left to whoever holds the claim now
        assert (await orchestrator.jobs.get("plan-123")).status == JobStatus.RUNNING


# =============================================================================
# Wiring And Helper Tests
# =============================================================================


class TestBuildOrchestrator:
    def test_wires_components_from_settings(self, db, settings):
        orchestrator = build_orchestrator(settings=settings, db=db, worker_id="w1")

        assert orchestrator.quota.settings is settings.quota
        assert orchestrator.spend.settings is settings.spend
        assert orchestrator.worker_id == "w1"
        assert orchestrator.dispatcher.sinks == []


class TestNetworkScopeFromHeaders:
    @pytest.mark.parametrize(
        "headers, expected",
        [
            ({"X-Forwarded-For": "203.0.113.7, 10.0.0.1"}, "203.0.113.7"),
            ({"x-real-ip": "203.0.113.8"}, "203.0.113.8"),
            ({"x-vercel-forwarded-for": "203.0.113.9"}, "203.0.113.9"),
            ({"x-forwarded-for": " ", "x-real-ip": "203.0.113.8"}, "203.0.113.8"),
            ({}, None),
        ],
    )
    def test_extracts_client_address(self, headers, expected):
        assert network_scope_from_headers(headers) == expected
