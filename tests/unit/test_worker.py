"""
Tests for JobWorker error handling.

The queue is a fake that records how each job was settled, so these tests
check only the worker's mapping from handler outcome to complete/fail.
"""

import asyncio
from dataclasses import replace
from uuid import uuid4

import pytest

from lexprep.core.errors import (
    AuthorityUnavailableError,
    JobExecutionError,
    NotFoundError,
    ValidationError,
)
from lexprep.core.states import JobStatus, JobType
from lexprep.db.models import utcnow
from lexprep.jobs.queue import QueuedJob, StaleRecovery
from lexprep.jobs.worker import JobWorker


def make_job(job_type=JobType.RESOLVE_MISSING_AUTHORITIES, payload=None, attempts=1, max_attempts=3):
    now = utcnow()
    return QueuedJob(
        id=uuid4(),
        job_type=job_type,
        status=JobStatus.PROCESSING,
        priority=5,
        attempts=attempts,
        max_attempts=max_attempts,
        payload=payload if payload is not None else {"skill_id": str(uuid4())},
        result=None,
        last_error=None,
        idempotency_key="key",
        user_id=None,
        scheduled_for=now,
        created_at=now,
        started_at=now,
        completed_at=None,
    )


class FakeQueue:
    def __init__(self, jobs=None):
        self.jobs = list(jobs or [])
        self.completed = []
        self.failed = []

    async def claim_next(self, worker_id=None):
        return self.jobs.pop(0) if self.jobs else None

    async def complete(self, job_id, result=None):
        self.completed.append((job_id, result))
        return replace(self._current, status=JobStatus.COMPLETED, result=result)

    async def fail(self, job_id, error, transient=True):
        self.failed.append((job_id, error, transient))
        job = self._current
        retry = transient and job.attempts < job.max_attempts
        return replace(job, status=JobStatus.PENDING if retry else JobStatus.FAILED, last_error=error)

    def track(self, job):
        self._current = job
        return job


def worker_for(queue, handler, job_type=JobType.RESOLVE_MISSING_AUTHORITIES, **kwargs):
    return JobWorker(queue, {job_type: handler}, concurrency=1, poll_interval=0.01, **kwargs)


@pytest.mark.asyncio
async def test_successful_handler_completes_job():
    async def handler(payload, job):
        return {"resolved_entries": 2}

    queue = FakeQueue()
    job = queue.track(make_job())
    settled = await worker_for(queue, handler).execute(job)

    assert settled.status == JobStatus.COMPLETED
    assert queue.completed == [(job.id, {"resolved_entries": 2})]
    assert queue.failed == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error,transient",
    [
        (JobExecutionError("upstream hiccup"), True),
        (JobExecutionError("bad content", transient=False), False),
        (ValidationError("bad input"), False),
        (NotFoundError("asset gone"), False),
        (AuthorityUnavailableError("search down"), True),
        (RuntimeError("bug"), True),
    ],
)
async def test_handler_errors_map_to_transient_flag(error, transient):
    async def handler(payload, job):
        raise error

    queue = FakeQueue()
    job = queue.track(make_job())
    await worker_for(queue, handler).execute(job)

    assert len(queue.failed) == 1
    assert queue.failed[0][2] is transient


@pytest.mark.asyncio
async def test_timeout_is_transient():
    async def handler(payload, job):
        await asyncio.sleep(1)

    queue = FakeQueue()
    job = queue.track(make_job())
    await worker_for(queue, handler, job_timeout=0.01).execute(job)

    _, error, transient = queue.failed[0]
    assert "timed out" in error
    assert transient is True


@pytest.mark.asyncio
async def test_invalid_payload_fails_permanently():
    async def handler(payload, job):
        return {}

    queue = FakeQueue()
    job = queue.track(make_job(payload={"wrong": "shape"}))
    await worker_for(queue, handler).execute(job)

    assert queue.failed[0][2] is False


@pytest.mark.asyncio
async def test_missing_handler_fails_permanently():
    queue = FakeQueue()
    job = queue.track(make_job(job_type=JobType.PRECOMPUTE_TODAY, payload={"user_id": "u1"}))
    await worker_for(queue, lambda p, j: None).execute(job)

    _, error, transient = queue.failed[0]
    assert "No handler" in error
    assert transient is False


@pytest.mark.asyncio
async def test_terminal_failure_hook_runs_once_job_is_failed():
    seen = []

    async def hook(job):
        seen.append(job.id)

    async def handler(payload, job):
        raise JobExecutionError("still broken")

    queue = FakeQueue()
    retrying = queue.track(make_job(attempts=1))
    await worker_for(queue, handler, on_terminal_failure=hook).execute(retrying)
    assert seen == []

    exhausted = queue.track(make_job(attempts=3))
    await worker_for(queue, handler, on_terminal_failure=hook).execute(exhausted)
    assert seen == [exhausted.id]


@pytest.mark.asyncio
async def test_drain_processes_until_queue_is_empty():
    jobs = [make_job() for _ in range(3)]
    queue = FakeQueue(jobs)
    handled = []

    async def handler(payload, job):
        queue.track(job)
        handled.append(job.id)
        return {}

    processed = await worker_for(queue, handler).drain()

    assert processed == 3
    assert handled == [j.id for j in jobs]


@pytest.mark.asyncio
async def test_run_stops_when_event_is_set():
    queue = FakeQueue()

    async def recover_stale(stale_after):
        return StaleRecovery()

    queue.recover_stale = recover_stale
    stop = asyncio.Event()
    worker = worker_for(queue, lambda p, j: None)

    task = asyncio.create_task(worker.run(stop))
    await asyncio.sleep(0.05)
    stop.set()
    await asyncio.wait_for(task, timeout=1)
    assert task.done()


@pytest.mark.asyncio
async def test_stale_jobs_out_of_attempts_reach_failure_hook():
    exhausted = replace(make_job(attempts=3, max_attempts=3), status=JobStatus.FAILED)
    queue = FakeQueue()

    async def recover_stale(stale_after):
        return StaleRecovery(requeued=2, failed=[exhausted])

    queue.recover_stale = recover_stale
    notified = []

    async def on_terminal_failure(job):
        notified.append(job.id)

    worker = worker_for(queue, lambda p, j: None, on_terminal_failure=on_terminal_failure)

    assert await worker.recover_stale() == 3
    assert notified == [exhausted.id]
