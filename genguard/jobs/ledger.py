"""Durable job ledger keyed by caller-supplied correlation ids.

Every status change is a single conditional UPDATE guarded by the expected
current status, so two workers racing on the same job cannot both win. When
the guard matches nothing the row is read back to report why.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import StrEnum
from typing import TypeVar

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from genguard.config import JobSettings, StoreSettings
from genguard.db.connection import DatabaseConnection
from genguard.db.models import Job, utcnow
from genguard.db.transaction import dialect_insert, run_transaction
from genguard.errors import (
    InvalidJobTransition,
    JobAlreadyRunning,
    JobNotFound,
    JobRetriesExhausted,
)
from genguard.logging.config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

MAX_ERROR_LENGTH = 2000
STALE_CLEANUP_ERROR = "Stale job cleanup"


class JobStatus(StrEnum):
    """Job status values."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


def backoff_delay(attempts: int, base_seconds: float, cap_seconds: float) -> timedelta:
    """Exponential delay before the next retry: ``base * 2**(attempts-1)``, capped."""
    if attempts <= 0:
        return timedelta(0)
    return timedelta(seconds=min(base_seconds * 2 ** (attempts - 1), cap_seconds))


@dataclass(frozen=True)
class JobRecord:
    job_id: str
    kind: str
    status: JobStatus
    attempts: int
    max_attempts: int
    last_error: str | None
    claimed_by: str | None
    heartbeat_at: datetime | None
    started_at: datetime | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime
    progress: dict[str, bool] = field(default_factory=dict)

    @classmethod
    def from_model(cls, row: Job) -> JobRecord:
        return cls(
            job_id=row.job_id,
            kind=row.kind,
            status=JobStatus(row.status),
            attempts=row.attempts,
            max_attempts=row.max_attempts,
            last_error=row.last_error,
            claimed_by=row.claimed_by,
            heartbeat_at=row.heartbeat_at,
            started_at=row.started_at,
            completed_at=row.completed_at,
            created_at=row.created_at,
            updated_at=row.updated_at,
            progress=dict(row.progress or {}),
        )

    @property
    def retries_remaining(self) -> int:
        return max(0, self.max_attempts - self.attempts)

    @property
    def is_terminal(self) -> bool:
        if self.status == JobStatus.COMPLETED:
            return True
        return self.status == JobStatus.FAILED and self.retries_remaining == 0

    def next_retry_at(self, base_seconds: float, cap_seconds: float) -> datetime | None:
        """Earliest time a failed job should be retried; None if not retryable."""
        if self.status != JobStatus.FAILED or self.retries_remaining == 0:
            return None
        failed_at = self.completed_at or self.updated_at
        return failed_at + backoff_delay(self.attempts, base_seconds, cap_seconds)

    def pending_steps(self, steps: Sequence[str]) -> list[str]:
        """Steps from ``steps`` not yet recorded as done, in the given order."""
        return [step for step in steps if not self.progress.get(step)]


class JobLedger:
    """Creates, claims and transitions jobs with store-enforced exclusion."""

    def __init__(
        self,
        db: DatabaseConnection,
        settings: JobSettings,
        store_settings: StoreSettings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.settings = settings
        self.store_settings = store_settings
        self.clock = clock

    @property
    def stale_after(self) -> timedelta:
        return timedelta(seconds=self.settings.stale_after_seconds)

    @property
    def heartbeat_interval(self) -> float:
        """Seconds between claim renewals; a third of the staleness threshold by default."""
        if self.settings.heartbeat_interval_seconds is not None:
            return self.settings.heartbeat_interval_seconds
        return self.settings.stale_after_seconds / 3

    async def _run(self, work: Callable[[AsyncSession], Awaitable[T]], name: str) -> T:
        return await run_transaction(self.db, work, self.store_settings, name=f"jobs.{name}")

    @staticmethod
    async def _load(session: AsyncSession, job_id: str) -> Job | None:
        result = await session.execute(select(Job).where(Job.job_id == job_id))
        return result.scalar_one_or_none()

    async def get_or_create(self, job_id: str, kind: str) -> JobRecord:
        """Return the job for ``job_id``, creating it as pending if absent.

        Concurrent callers with the same id all get the same single row. An
        existing job is returned unchanged even if ``kind`` differs.
        """
        now = self.clock()

        async def work(session: AsyncSession) -> tuple[JobRecord, bool]:
            result = await session.execute(
                dialect_insert(session, Job)
                .values(
                    job_id=job_id,
                    kind=kind,
                    status=JobStatus.PENDING.value,
                    attempts=0,
                    max_attempts=self.settings.max_attempts,
                    created_at=now,
                    updated_at=now,
                )
                .on_conflict_do_nothing(index_elements=["job_id"])
            )
            row = await self._load(session, job_id)
            return JobRecord.from_model(row), bool(result.rowcount)

        record, created = await self._run(work, "get_or_create")
        if created:
            logger.info("Created job", job_id=job_id, kind=kind)
        elif record.kind != kind:
            logger.warning(
                "Existing job has a different kind",
                job_id=job_id,
                kind=record.kind,
                requested_kind=kind,
            )
        return record

    async def get(self, job_id: str) -> JobRecord:
        async def work(session: AsyncSession) -> JobRecord:
            row = await self._load(session, job_id)
            if row is None:
                raise JobNotFound(job_id)
            return JobRecord.from_model(row)

        return await self._run(work, "get")

    async def claim(self, job_id: str, worker_id: str | None = None) -> JobRecord:
        """Move a job to running.

        A pending job is claimed outright. A running job is reclaimed only if
        its heartbeat is older than the staleness threshold.

        Raises:
            JobNotFound: No such job.
            JobAlreadyRunning: Another worker holds a fresh claim.
            InvalidJobTransition: The job is completed or failed.
        """
        now = self.clock()
        cutoff = now - self.stale_after

        async def work(session: AsyncSession) -> JobRecord:
            result = await session.execute(
                update(Job)
                .where(
                    Job.job_id == job_id,
                    or_(
                        Job.status == JobStatus.PENDING.value,
                        and_(
                            Job.status == JobStatus.RUNNING.value,
                            or_(Job.heartbeat_at.is_(None), Job.heartbeat_at < cutoff),
                        ),
                    ),
                )
                .values(
                    status=JobStatus.RUNNING.value,
                    claimed_by=worker_id,
                    heartbeat_at=now,
                    started_at=func.coalesce(Job.started_at, now),
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            row = await self._load(session, job_id)
            if row is None:
                raise JobNotFound(job_id)
            if result.rowcount == 0:
                if row.status == JobStatus.RUNNING.value:
                    raise JobAlreadyRunning(job_id)
                raise InvalidJobTransition(job_id, row.status, JobStatus.RUNNING.value)
            return JobRecord.from_model(row)

        record = await self._run(work, "claim")
        logger.info("Claimed job", job_id=job_id, worker_id=worker_id)
        return record

    async def heartbeat(self, job_id: str, worker_id: str | None = None) -> JobRecord:
        """Renew the claim on a running job.

        With ``worker_id`` the renewal only succeeds while that worker still
        holds the claim; a job reclaimed by someone else raises
        ``JobAlreadyRunning``.
        """
        now = self.clock()

        async def work(session: AsyncSession) -> JobRecord:
            result = await session.execute(
                update(Job)
                .where(*self._running_conditions(job_id, worker_id))
                .values(heartbeat_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            row = await self._load(session, job_id)
            if row is None:
                raise JobNotFound(job_id)
            if result.rowcount == 0:
                if row.status == JobStatus.RUNNING.value:
                    raise JobAlreadyRunning(job_id)
                raise InvalidJobTransition(job_id, row.status, JobStatus.RUNNING.value)
            return JobRecord.from_model(row)

        return await self._run(work, "heartbeat")

    @staticmethod
    def _running_conditions(job_id: str, worker_id: str | None) -> list:
        conditions = [Job.job_id == job_id, Job.status == JobStatus.RUNNING.value]
        if worker_id is not None:
            conditions.append(Job.claimed_by == worker_id)
        return conditions

    async def _finish(
        self,
        job_id: str,
        target: JobStatus,
        values: dict,
        worker_id: str | None,
    ) -> JobRecord:
        async def work(session: AsyncSession) -> JobRecord:
            result = await session.execute(
                update(Job)
                .where(*self._running_conditions(job_id, worker_id))
                .values(status=target.value, **values)
                .execution_options(synchronize_session=False)
            )
            row = await self._load(session, job_id)
            if row is None:
                raise JobNotFound(job_id)
            if result.rowcount == 0:
                if row.status == JobStatus.RUNNING.value:
                    raise JobAlreadyRunning(job_id)
                raise InvalidJobTransition(job_id, row.status, target.value)
            return JobRecord.from_model(row)

        return await self._run(work, target.value)

    async def complete(self, job_id: str, worker_id: str | None = None) -> JobRecord:
        """Mark a running job completed.

        With ``worker_id`` only the current claimant may complete it.
        """
        now = self.clock()
        record = await self._finish(
            job_id,
            JobStatus.COMPLETED,
            {"completed_at": now, "last_error": None, "updated_at": now},
            worker_id,
        )
        logger.info("Completed job", job_id=job_id, attempts=record.attempts)
        return record

    async def fail(self, job_id: str, error: str, worker_id: str | None = None) -> JobRecord:
        """Mark a running job failed, counting the attempt."""
        now = self.clock()
        record = await self._finish(
            job_id,
            JobStatus.FAILED,
            {
                "attempts": Job.attempts + 1,
                "last_error": error[:MAX_ERROR_LENGTH],
                "completed_at": now,
                "updated_at": now,
            },
            worker_id,
        )
        logger.warning(
            "Job failed",
            job_id=job_id,
            attempts=record.attempts,
            max_attempts=record.max_attempts,
            error=record.last_error,
        )
        return record

    async def record_progress(
        self,
        job_id: str,
        step: str,
        done: bool = True,
        worker_id: str | None = None,
    ) -> JobRecord:
        """Checkpoint one step of a running job.

        Recorded steps survive ``fail`` and ``retry``, so a retried job can
        skip the steps it already paid for. Recording also renews the
        heartbeat.
        """
        now = self.clock()

        async def work(session: AsyncSession) -> JobRecord:
            result = await session.execute(
                update(Job)
                .where(*self._running_conditions(job_id, worker_id))
                .values(heartbeat_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            row = await self._load(session, job_id)
            if row is None:
                raise JobNotFound(job_id)
            if result.rowcount == 0:
                if row.status == JobStatus.RUNNING.value:
                    raise JobAlreadyRunning(job_id)
                raise InvalidJobTransition(job_id, row.status, JobStatus.RUNNING.value)

            progress = {**(row.progress or {}), step: done}
            await session.execute(
                update(Job)
                .where(Job.job_id == job_id)
                .values(progress=progress)
                .execution_options(synchronize_session=False)
            )
            return replace(JobRecord.from_model(row), progress=progress)

        record = await self._run(work, "record_progress")
        logger.info("Recorded job progress", job_id=job_id, step=step, done=done)
        return record

    async def pending_steps(self, job_id: str, steps: Sequence[str]) -> list[str]:
        """Steps not yet done for ``job_id``; all of them if the job does not exist."""
        try:
            record = await self.get(job_id)
        except JobNotFound:
            return list(steps)
        return record.pending_steps(steps)

    async def retry(self, job_id: str) -> JobRecord:
        """Return a failed job to pending while attempts remain.

        Raises:
            JobNotFound: No such job.
            JobRetriesExhausted: The job already used all its attempts.
            InvalidJobTransition: The job is not failed.
        """
        now = self.clock()

        async def work(session: AsyncSession) -> JobRecord:
            result = await session.execute(
                update(Job)
                .where(
                    Job.job_id == job_id,
                    Job.status == JobStatus.FAILED.value,
                    Job.attempts < Job.max_attempts,
                )
                .values(
                    status=JobStatus.PENDING.value,
                    claimed_by=None,
                    heartbeat_at=None,
                    completed_at=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            row = await self._load(session, job_id)
            if row is None:
                raise JobNotFound(job_id)
            if result.rowcount == 0:
                if row.status == JobStatus.FAILED.value:
                    raise JobRetriesExhausted(job_id, row.attempts)
                raise InvalidJobTransition(job_id, row.status, JobStatus.PENDING.value)
            return JobRecord.from_model(row)

        record = await self._run(work, "retry")
        logger.info(
            "Job queued for retry",
            job_id=job_id,
            attempts=record.attempts,
            max_attempts=record.max_attempts,
        )
        return record

    async def sweep_stale(self, older_than: timedelta | None = None) -> int:
        """Fail running jobs whose heartbeat is older than ``older_than``.

        Defaults to the configured staleness threshold. Returns the number of
        jobs marked failed.
        """
        now = self.clock()
        cutoff = now - (older_than if older_than is not None else self.stale_after)

        async def work(session: AsyncSession) -> int:
            result = await session.execute(
                update(Job)
                .where(
                    Job.status == JobStatus.RUNNING.value,
                    or_(Job.heartbeat_at.is_(None), Job.heartbeat_at < cutoff),
                )
                .values(
                    status=JobStatus.FAILED.value,
                    last_error=STALE_CLEANUP_ERROR,
                    completed_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount

        cleaned = await self._run(work, "sweep_stale")
        logger.info("Stale job sweep finished", cleaned=cleaned, cutoff=cutoff.isoformat())
        return cleaned
