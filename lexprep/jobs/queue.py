"""Durable job queue over the background_jobs table."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Mapping
from uuid import UUID

from loguru import logger
from pydantic import BaseModel
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lexprep.core.errors import ConcurrencyConflictError, JobGuardError, NotFoundError, ValidationError
from lexprep.core.states import JobStatus, JobType, transition_job
from lexprep.db.models import BackgroundJob, utcnow

from .payloads import JobPayload, PrecomputeTodayPayload, idempotency_key, parse_payload

STALE_JOB_ERROR = "Worker stopped before finishing"


@dataclass
class QueuedJob:
    """Snapshot of a background job row."""

    id: UUID
    job_type: JobType
    status: JobStatus
    priority: int
    attempts: int
    max_attempts: int
    payload: dict[str, Any]
    result: dict[str, Any] | None
    last_error: str | None
    idempotency_key: str
    user_id: str | None
    scheduled_for: datetime
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None


@dataclass
class EnqueueResult:
    job: QueuedJob
    created: bool


@dataclass
class StaleRecovery:
    requeued: int = 0
    failed: list[QueuedJob] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.requeued + len(self.failed)


@dataclass
class JobStats:
    total: int = 0
    by_status: dict[str, int] = field(default_factory=dict)
    by_type: dict[str, int] = field(default_factory=dict)
    recent_failures: int = 0


class JobQueue:
    """
    Manage the background job lifecycle.

    Every status change is a conditional UPDATE guarded on the expected current
    status, so two workers (or a worker and an admin) can never both win.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        max_attempts: int = 3,
        backoff_base_seconds: float = 10.0,
        backoff_cap_seconds: float = 600.0,
        claim_batch: int = 5,
    ):
        self._session_factory = session_factory
        self.max_attempts = max_attempts
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_cap_seconds = backoff_cap_seconds
        self.claim_batch = claim_batch

    def backoff_for(self, attempts: int) -> timedelta:
        """Delay before the next attempt: base * 2^(attempts-1), capped."""
        seconds = self.backoff_base_seconds * (2 ** max(0, attempts - 1))
        return timedelta(seconds=min(seconds, self.backoff_cap_seconds))

    # ========================================
    # Producer side
    # ========================================

    async def enqueue(
        self,
        job_type: JobType | str,
        payload: Mapping[str, Any] | JobPayload,
        priority: int = 5,
        user_id: str | None = None,
        max_attempts: int | None = None,
        scheduled_for: datetime | None = None,
    ) -> EnqueueResult:
        """
        Add a job unless an active job already holds its idempotency key.

        Args:
            job_type: One of JobType
            payload: Raw dict or payload model for job_type
            priority: Lower runs first
            user_id: Owner, for admin filtering
            max_attempts: Overrides the queue default
            scheduled_for: Earliest claim time (defaults to now)

        Returns:
            EnqueueResult with created=False when an existing job was returned
        """
        job_type = JobType(job_type)
        if isinstance(payload, BaseModel):
            parsed = parse_payload(job_type, payload.model_dump(mode="json", exclude={"job_type"}))
            if payload.job_type != job_type.value:
                raise ValidationError(f"Payload for {payload.job_type} enqueued as {job_type.value}")
        else:
            parsed = parse_payload(job_type, dict(payload))
        if isinstance(parsed, PrecomputeTodayPayload) and parsed.study_date is None:
            parsed = parsed.model_copy(update={"study_date": utcnow().date()})

        key = idempotency_key(parsed)
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    existing = await self._active_for_key(session, key)
                    if existing is not None:
                        logger.debug("Job {} already active for key {}", existing.id, key)
                        return EnqueueResult(self._to_queued_job(existing), created=False)

                    now = utcnow()
                    job = BackgroundJob(
                        job_type=job_type,
                        status=JobStatus.PENDING,
                        priority=priority,
                        attempts=0,
                        max_attempts=max_attempts or self.max_attempts,
                        payload=parsed.to_json(),
                        idempotency_key=key,
                        user_id=user_id,
                        scheduled_for=scheduled_for or now,
                        created_at=now,
                    )
                    session.add(job)
        except IntegrityError:
            # Lost the race to a concurrent producer holding the same key.
            async with self._session_factory() as session:
                existing = await self._active_for_key(session, key)
            if existing is None:
                raise ConcurrencyConflictError(f"Could not enqueue job for key {key}")
            return EnqueueResult(self._to_queued_job(existing), created=False)

        logger.info("Enqueued {} job {} (priority {})", job_type.value, job.id, priority)
        return EnqueueResult(self._to_queued_job(job), created=True)

    async def _active_for_key(self, session: AsyncSession, key: str) -> BackgroundJob | None:
        stmt = select(BackgroundJob).where(
            BackgroundJob.idempotency_key == key,
            BackgroundJob.status.in_(JobStatus.active()),
        )
        return (await session.execute(stmt)).scalars().first()

    # ========================================
    # Worker side
    # ========================================

    async def claim_next(self, worker_id: str | None = None) -> QueuedJob | None:
        """
        Claim one due PENDING job and mark it PROCESSING.

        Candidates are ordered by priority, scheduled_for, created_at. Each is
        taken with a compare-and-swap UPDATE; a candidate claimed by someone
        else in between is skipped. Row locks use SKIP LOCKED where supported.
        """
        async with self._session_factory() as session:
            async with session.begin():
                now = utcnow()
                stmt = (
                    select(BackgroundJob.id)
                    .where(
                        BackgroundJob.status == JobStatus.PENDING,
                        BackgroundJob.scheduled_for <= now,
                    )
                    .order_by(
                        BackgroundJob.priority,
                        BackgroundJob.scheduled_for,
                        BackgroundJob.created_at,
                    )
                    .limit(self.claim_batch)
                    .with_for_update(skip_locked=True)
                )
                candidates = list((await session.execute(stmt)).scalars())

                for job_id in candidates:
                    result = await session.execute(
                        update(BackgroundJob)
                        .where(BackgroundJob.id == job_id, BackgroundJob.status == JobStatus.PENDING)
                        .values(
                            status=transition_job(JobStatus.PENDING, JobStatus.PROCESSING),
                            started_at=now,
                            completed_at=None,
                            locked_by=worker_id,
                            attempts=BackgroundJob.attempts + 1,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount == 1:
                        job = await session.get(BackgroundJob, job_id)
                        logger.info(
                            "Claimed {} job {} (attempt {}/{})",
                            job.job_type.value,
                            job.id,
                            job.attempts,
                            job.max_attempts,
                        )
                        return self._to_queued_job(job)
        return None

    async def complete(self, job_id: UUID, result: Mapping[str, Any] | None = None) -> QueuedJob:
        """Mark a PROCESSING job COMPLETED."""
        async with self._session_factory() as session:
            async with session.begin():
                job = await self._get_for_update(session, job_id)
                if job.status != JobStatus.PROCESSING:
                    raise ConcurrencyConflictError(
                        f"Job {job_id} is {job.status.value}, expected PROCESSING"
                    )
                job.status = transition_job(job.status, JobStatus.COMPLETED)
                job.result = dict(result or {})
                job.completed_at = utcnow()
                job.locked_by = None
        logger.info("Completed {} job {}", job.job_type.value, job_id)
        return self._to_queued_job(job)

    async def fail(self, job_id: UUID, error: str, transient: bool = True) -> QueuedJob:
        """
        Record a failed attempt.

        Returns the job: PENDING with a backoff delay while attempts remain and
        the error is transient, otherwise FAILED.
        """
        async with self._session_factory() as session:
            async with session.begin():
                job = await self._get_for_update(session, job_id)
                if job.status != JobStatus.PROCESSING:
                    raise ConcurrencyConflictError(
                        f"Job {job_id} is {job.status.value}, expected PROCESSING"
                    )
                now = utcnow()
                job.last_error = error
                job.locked_by = None
                if transient and job.can_retry:
                    delay = self.backoff_for(job.attempts)
                    job.status = transition_job(job.status, JobStatus.PENDING)
                    job.scheduled_for = now + delay
                    job.started_at = None
                    logger.warning(
                        "Job {} failed (attempt {}/{}), retry in {}s: {}",
                        job_id,
                        job.attempts,
                        job.max_attempts,
                        int(delay.total_seconds()),
                        error,
                    )
                else:
                    job.status = transition_job(job.status, JobStatus.FAILED)
                    job.completed_at = now
                    job.result = {"success": False, "error": error}
                    logger.error(
                        "Job {} failed permanently after {} attempt(s): {}",
                        job_id,
                        job.attempts,
                        error,
                    )
        return self._to_queued_job(job)

    async def recover_stale(self, stale_after: timedelta) -> StaleRecovery:
        """
        Settle PROCESSING jobs abandoned by a dead worker.

        Jobs with attempts left go back to PENDING. Jobs that already used
        their last attempt become FAILED, since claiming them again would
        exceed max_attempts.
        """
        now = utcnow()
        cutoff = now - stale_after
        stale = (
            BackgroundJob.status == JobStatus.PROCESSING,
            BackgroundJob.started_at < cutoff,
        )
        recovery = StaleRecovery()
        async with self._session_factory() as session:
            async with session.begin():
                exhausted = list(
                    (
                        await session.execute(
                            select(BackgroundJob.id)
                            .where(*stale, BackgroundJob.attempts >= BackgroundJob.max_attempts)
                            .with_for_update(skip_locked=True)
                        )
                    ).scalars()
                )
                if exhausted:
                    await session.execute(
                        update(BackgroundJob)
                        .where(BackgroundJob.id.in_(exhausted), *stale)
                        .values(
                            status=transition_job(JobStatus.PROCESSING, JobStatus.FAILED),
                            locked_by=None,
                            last_error=STALE_JOB_ERROR,
                            result={"success": False, "error": STALE_JOB_ERROR},
                            completed_at=now,
                        )
                        .execution_options(synchronize_session=False)
                    )
                requeued = await session.execute(
                    update(BackgroundJob)
                    .where(*stale, BackgroundJob.attempts < BackgroundJob.max_attempts)
                    .values(
                        status=transition_job(JobStatus.PROCESSING, JobStatus.PENDING),
                        started_at=None,
                        locked_by=None,
                        last_error=STALE_JOB_ERROR,
                        scheduled_for=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                recovery.requeued = requeued.rowcount
                if exhausted:
                    rows = await session.execute(
                        select(BackgroundJob).where(
                            BackgroundJob.id.in_(exhausted), BackgroundJob.status == JobStatus.FAILED
                        )
                    )
                    recovery.failed = [self._to_queued_job(job) for job in rows.scalars()]
        if recovery.requeued:
            logger.warning("Recovered {} stale job(s)", recovery.requeued)
        for job in recovery.failed:
            logger.error("Stale job {} failed permanently after {} attempt(s)", job.id, job.attempts)
        return recovery

    # ========================================
    # Admin actions
    # ========================================

    async def retry(self, job_id: UUID) -> QueuedJob:
        """FAILED -> PENDING with attempts and error reset."""
        return await self._guarded_update(
            job_id,
            expected=JobStatus.FAILED,
            target=JobStatus.PENDING,
            values={
                "attempts": 0,
                "last_error": None,
                "result": None,
                "started_at": None,
                "completed_at": None,
                "scheduled_for": utcnow(),
            },
            guard_message="Can only retry failed jobs",
        )

    async def cancel(self, job_id: UUID) -> QueuedJob:
        """PENDING -> CANCELLED. In-flight jobs are never interrupted."""
        return await self._guarded_update(
            job_id,
            expected=JobStatus.PENDING,
            target=JobStatus.CANCELLED,
            values={"completed_at": utcnow()},
            guard_message="Can only cancel pending jobs",
        )

    async def _guarded_update(
        self,
        job_id: UUID,
        expected: JobStatus,
        target: JobStatus,
        values: dict[str, Any],
        guard_message: str,
    ) -> QueuedJob:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        update(BackgroundJob)
                        .where(BackgroundJob.id == job_id, BackgroundJob.status == expected)
                        .values(status=transition_job(expected, target), **values)
                        .execution_options(synchronize_session=False)
                    )
                    job = await session.get(BackgroundJob, job_id)
                    if job is None:
                        raise NotFoundError(f"Job {job_id} not found")
                    if result.rowcount != 1:
                        raise JobGuardError(f"{guard_message} (job is {job.status.value})")
        except IntegrityError as exc:
            raise ConcurrencyConflictError(
                f"Another active job holds the key of job {job_id}"
            ) from exc
        logger.info("Job {} moved {} -> {}", job_id, expected.value, target.value)
        return self._to_queued_job(job)

    # ========================================
    # Reads
    # ========================================

    async def get(self, job_id: UUID) -> QueuedJob:
        async with self._session_factory() as session:
            job = await session.get(BackgroundJob, job_id)
            if job is None:
                raise NotFoundError(f"Job {job_id} not found")
            return self._to_queued_job(job)

    async def list_jobs(
        self,
        status: JobStatus | None = None,
        job_type: JobType | None = None,
        since: datetime | None = None,
        limit: int = 50,
    ) -> list[QueuedJob]:
        """Newest first."""
        stmt = select(BackgroundJob).order_by(BackgroundJob.created_at.desc()).limit(limit)
        if status is not None:
            stmt = stmt.where(BackgroundJob.status == status)
        if job_type is not None:
            stmt = stmt.where(BackgroundJob.job_type == job_type)
        if since is not None:
            stmt = stmt.where(BackgroundJob.created_at >= since)
        async with self._session_factory() as session:
            rows = await session.execute(stmt)
            return [self._to_queued_job(job) for job in rows.scalars()]

    async def stats(
        self,
        window: timedelta = timedelta(hours=24),
        failure_window: timedelta = timedelta(hours=1),
        now: datetime | None = None,
    ) -> JobStats:
        """Totals by status and type over window; failures completed within failure_window."""
        now = now or utcnow()
        stats = JobStats()
        async with self._session_factory() as session:
            rows = await session.execute(
                select(BackgroundJob.status, BackgroundJob.job_type, func.count())
                .where(BackgroundJob.created_at >= now - window)
                .group_by(BackgroundJob.status, BackgroundJob.job_type)
            )
            for status, job_type, count in rows:
                stats.total += count
                stats.by_status[status.value] = stats.by_status.get(status.value, 0) + count
                stats.by_type[job_type.value] = stats.by_type.get(job_type.value, 0) + count

            stats.recent_failures = (
                await session.execute(
                    select(func.count())
                    .select_from(BackgroundJob)
                    .where(
                        BackgroundJob.status == JobStatus.FAILED,
                        BackgroundJob.completed_at >= now - failure_window,
                    )
                )
            ).scalar_one()
        return stats

    async def _get_for_update(self, session: AsyncSession, job_id: UUID) -> BackgroundJob:
        job = await session.get(BackgroundJob, job_id, with_for_update=True)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        return job

    def _to_queued_job(self, job: BackgroundJob) -> QueuedJob:
        """Convert an ORM row to QueuedJob."""
        return QueuedJob(
            id=job.id,
            job_type=JobType(job.job_type),
            status=JobStatus(job.status),
            priority=job.priority,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            payload=dict(job.payload or {}),
            result=dict(job.result) if job.result is not None else None,
            last_error=job.last_error,
            idempotency_key=job.idempotency_key,
            user_id=job.user_id,
            scheduled_for=job.scheduled_for,
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
        )
