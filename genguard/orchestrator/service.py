"""Per-request admission flow.

The flow is a saga, not one transaction: flag check, quota increment,
validation, job claim, spend reservation, the costed operation, then
reconciliation. Each store step is atomic on its own. When a step after the
quota increment fails, the earlier steps are compensated best-effort
(quota released, job failed, spend reconciled to any partial cost). A
cancelled admission is compensated the same way before the cancellation
propagates.

While the operation runs, the job claim is renewed in the background so a
long operation never looks stale to a resubmission of the same job.

If the process dies between the quota increment and its compensating
release, the counter stays over-counted until its window rolls over.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass
from decimal import Decimal

from genguard.config import Settings, get_settings
from genguard.db.connection import DatabaseConnection, get_db
from genguard.errors import (
    CostedOperationError,
    ErrorKind,
    FeatureDisabled,
    GenguardError,
    InvalidJobTransition,
    JobAlreadyRunning,
    JobNotFound,
)
from genguard.flags import FeatureSwitch
from genguard.jobs import JobLedger, JobRecord, JobStatus
from genguard.logging.config import LogContext, get_logger
from genguard.notify import (
    ADMITTED,
    REJECTED,
    AdmissionEvent,
    NotificationDispatcher,
    build_sinks,
)
from genguard.quota import QuotaGate, QuotaScope, QuotaTicket
from genguard.spend import Reservation, SpendGuard

from .models import (
    AdmissionRequest,
    AdmissionResult,
    CostedOperation,
    OperationOutcome,
    RequestValidator,
)

logger = get_logger(__name__)

NETWORK_SCOPE = "network"
IDENTITY_SCOPE = "identity"


@dataclass
class _AdmissionState:
    """What has been acquired so far and must be undone on failure."""

    ticket: QuotaTicket | None = None
    job_claimed: bool = False
    reservation: Reservation | None = None
    reconciled: bool = False
    estimate_usd: Decimal | None = None
    actual_usd: Decimal | None = None


def _failure_message(error: BaseException) -> str:
    if isinstance(error, asyncio.CancelledError):
        return "Admission cancelled"
    return str(error) or type(error).__name__


class AdmissionOrchestrator:
    """Decides whether a costly request may run, and runs it."""

    def __init__(
        self,
        settings: Settings,
        flags: FeatureSwitch,
        quota: QuotaGate,
        spend: SpendGuard,
        jobs: JobLedger,
        dispatcher: NotificationDispatcher,
        validator: RequestValidator | None = None,
        worker_id: str | None = None,
    ) -> None:
        self.settings = settings
        self.flags = flags
        self.quota = quota
        self.spend = spend
        self.jobs = jobs
        self.dispatcher = dispatcher
        self.validator = validator
        self.worker_id = worker_id or f"admission-{uuid.uuid4().hex[:12]}"

    def scopes_for(self, request: AdmissionRequest) -> list[QuotaScope]:
        return [
            QuotaScope(
                name=NETWORK_SCOPE,
                key=request.network_scope_key,
                limit=self.settings.quota.network_daily_limit,
            ),
            QuotaScope(
                name=IDENTITY_SCOPE,
                key=request.identity_scope_key,
                limit=self.settings.quota.identity_daily_limit,
            ),
        ]

    async def admit(
        self,
        request: AdmissionRequest,
        operation: CostedOperation,
    ) -> AdmissionResult:
        """Run ``operation`` for ``request`` if every admission check passes.

        Rejections are returned as results carrying one ``ErrorKind``; they
        are not raised. Unexpected errors and cancellation (caller timeout,
        client disconnect) are compensated, then propagate.
        """
        started = time.monotonic()
        state = _AdmissionState()

        with LogContext(
            job_id=request.job_id,
            correlation_id=request.correlation_id or request.job_id,
        ):
            try:
                result = await self._run(request, operation, state)
            except GenguardError as e:
                log = logger.warning if e.kind == ErrorKind.OPERATION_FAILED else logger.info
                log("Admission rejected", error_kind=e.kind.value, error=e.message)
                await self._compensate(request, state, e)
                result = AdmissionResult.rejected(request.job_id, e)
            except asyncio.CancelledError as e:
                logger.warning("Admission cancelled, compensating")
                await asyncio.shield(self._compensate(request, state, e))
                self._publish(request, state, started, REJECTED, ErrorKind.OPERATION_FAILED)
                raise
            except Exception as e:
                logger.exception("Admission failed unexpectedly")
                await self._compensate(request, state, e)
                self._publish(request, state, started, REJECTED, ErrorKind.OPERATION_FAILED)
                raise

            self._publish(
                request,
                state,
                started,
                ADMITTED if result.admitted else REJECTED,
                result.error_kind,
                replayed=result.replayed,
            )
            return result

    async def _run(
        self,
        request: AdmissionRequest,
        operation: CostedOperation,
        state: _AdmissionState,
    ) -> AdmissionResult:
        flag_key = self.settings.orchestrator.generation_flag_key
        flag = await self.flags.resolve(flag_key)
        if not flag.enabled:
            raise FeatureDisabled(flag_key, flag.source)

        state.ticket = await self.quota.check_and_increment(self.scopes_for(request))

        if self.validator is not None:
            await self.validator(request)

        job = await self.jobs.get_or_create(request.job_id, request.job_kind)
        if job.status == JobStatus.COMPLETED:
            logger.info("Job already completed, replaying result")
            ticket, state.ticket = state.ticket, None
            await self._release(ticket)
            return AdmissionResult(admitted=True, job_id=job.job_id, replayed=True)
        if job.status == JobStatus.FAILED:
            job = await self.jobs.retry(job.job_id)

        job = await self.jobs.claim(job.job_id, worker_id=self.worker_id)
        state.job_claimed = True

        state.estimate_usd = operation.estimate_cost(request)
        state.reservation = await self.spend.reserve(
            state.estimate_usd,
            operation=self.settings.orchestrator.operation_name,
        )

        outcome = await self._invoke_claimed(operation, request, job, state)

        state.actual_usd = await self._reconcile(state.reservation, outcome.actual_cost_usd)
        state.reconciled = True
        await self.jobs.complete(job.job_id, worker_id=self.worker_id)

        return AdmissionResult(
            admitted=True,
            job_id=job.job_id,
            output=outcome.output,
            actual_cost_usd=state.actual_usd,
        )

    async def _invoke_claimed(
        self,
        operation: CostedOperation,
        request: AdmissionRequest,
        job: JobRecord,
        state: _AdmissionState,
    ) -> OperationOutcome:
        """Run the operation while renewing the job claim in the background.

        If another worker takes the claim over, the operation is cancelled and
        the claim error is raised. The job then belongs to that worker, so
        compensation leaves it alone.
        """
        run = asyncio.ensure_future(self._invoke(operation, request, job))
        keep_alive = asyncio.ensure_future(self._keep_alive(job.job_id))
        try:
            done, _ = await asyncio.wait(
                {run, keep_alive},
                return_when=asyncio.FIRST_COMPLETED,
            )
            if run in done:
                return run.result()
            state.job_claimed = False
            keep_alive.result()
            raise JobAlreadyRunning(job.job_id)
        finally:
            run.cancel()
            keep_alive.cancel()
            await asyncio.gather(run, keep_alive, return_exceptions=True)

    async def _keep_alive(self, job_id: str) -> None:
        """Heartbeat until cancelled; raises once the claim is gone."""
        interval = self.jobs.heartbeat_interval
        while True:
            await asyncio.sleep(interval)
            try:
                await self.jobs.heartbeat(job_id, worker_id=self.worker_id)
            except (JobAlreadyRunning, InvalidJobTransition, JobNotFound):
                logger.warning("Lost job claim, cancelling operation")
                raise
            except Exception:
                logger.warning("Job heartbeat failed", exc_info=True)

    async def _invoke(
        self,
        operation: CostedOperation,
        request: AdmissionRequest,
        job: JobRecord,
    ) -> OperationOutcome:
        try:
            return await operation.run(request, job)
        except GenguardError:
            raise
        except Exception as e:
            raise CostedOperationError(str(e) or type(e).__name__) from e

    async def _reconcile(self, reservation: Reservation, actual_usd: Decimal) -> Decimal:
        """Record the actual cost; on failure the estimate stays charged."""
        try:
            reconciled = await self.spend.reconcile(reservation.reservation_id, actual_usd)
        except Exception:
            logger.warning(
                "Could not reconcile spend, keeping estimate",
                reservation_id=reservation.reservation_id,
                exc_info=True,
            )
            return reservation.estimated_usd
        return reconciled.actual_usd if reconciled.actual_usd is not None else actual_usd

    async def _release(self, ticket: QuotaTicket | None) -> None:
        if ticket is None:
            return
        try:
            await self.quota.release_ticket(ticket)
        except Exception:
            logger.warning("Quota release failed", window_id=ticket.window_id, exc_info=True)

    async def _compensate(
        self,
        request: AdmissionRequest,
        state: _AdmissionState,
        error: BaseException,
    ) -> None:
        """Undo what was acquired. Never raises."""
        partial_cost = getattr(error, "actual_cost_usd", None)
        if state.reservation is not None and not state.reconciled and partial_cost is not None:
            state.actual_usd = await self._reconcile(state.reservation, partial_cost)
            state.reconciled = True

        if state.job_claimed:
            try:
                await self.jobs.fail(
                    request.job_id,
                    _failure_message(error),
                    worker_id=self.worker_id,
                )
            except Exception:
                logger.warning("Could not mark job failed", exc_info=True)

        ticket, state.ticket = state.ticket, None
        await self._release(ticket)

    def _publish(
        self,
        request: AdmissionRequest,
        state: _AdmissionState,
        started: float,
        outcome: str,
        error_kind: ErrorKind | None,
        replayed: bool = False,
    ) -> None:
        event = AdmissionEvent(
            event=f"{self.settings.orchestrator.operation_name}.{outcome}",
            outcome=outcome,
            job_id=request.job_id,
            error_kind=None if error_kind is None else error_kind.value,
            cost_estimate_usd=state.estimate_usd,
            actual_cost_usd=state.actual_usd,
            latency_ms=int((time.monotonic() - started) * 1000),
            notify_email=None if replayed else request.notify_email,
            attributes={"job_kind": request.job_kind, "replayed": replayed},
        )
        self.dispatcher.publish(event)


def build_orchestrator(
    settings: Settings | None = None,
    db: DatabaseConnection | None = None,
    validator: RequestValidator | None = None,
    worker_id: str | None = None,
) -> AdmissionOrchestrator:
    """Wire an orchestrator from settings. The dispatcher still needs ``start()``."""
    settings = settings or get_settings()
    db = db or get_db()
    store = settings.store

    dispatcher = NotificationDispatcher(
        build_sinks(settings.notify, db, store),
        maxsize=settings.notify.queue_maxsize,
        workers=settings.notify.workers,
    )
    return AdmissionOrchestrator(
        settings=settings,
        flags=FeatureSwitch(db, settings.flags, store),
        quota=QuotaGate(db, settings.quota, store),
        spend=SpendGuard(db, settings.spend, store),
        jobs=JobLedger(db, settings.jobs, store),
        dispatcher=dispatcher,
        validator=validator,
        worker_id=worker_id,
    )
