"""
Background job worker.

A pool of asyncio executors pulls from the shared queue. Only the claim is
atomic; handlers run without holding any lock, under a per-job timeout.
"""

from __future__ import annotations

import asyncio
import contextlib
import socket
from collections.abc import Awaitable, Callable, Mapping
from datetime import timedelta
from uuid import uuid4

from loguru import logger

from lexprep.core.errors import (
    IllegalTransitionError,
    JobExecutionError,
    LexprepError,
    NotFoundError,
    ValidationError,
)
from lexprep.core.states import JobStatus, JobType

from .handlers import JobHandler
from .payloads import parse_payload
from .queue import JobQueue, QueuedJob

PERMANENT_ERRORS = (ValidationError, NotFoundError, IllegalTransitionError)


class JobWorker:
    """Claim, execute and settle background jobs."""

    def __init__(
        self,
        queue: JobQueue,
        handlers: Mapping[JobType, JobHandler],
        concurrency: int = 3,
        poll_interval: float = 5.0,
        job_timeout: float = 60.0,
        worker_id: str | None = None,
        on_terminal_failure: Callable[[QueuedJob], Awaitable[None]] | None = None,
    ):
        self.queue = queue
        self.handlers = dict(handlers)
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.job_timeout = job_timeout
        self.worker_id = worker_id or f"{socket.gethostname()}-{uuid4().hex[:8]}"
        self.on_terminal_failure = on_terminal_failure

    async def execute(self, job: QueuedJob) -> QueuedJob:
        """Run the handler for a claimed job and record the outcome."""
        handler = self.handlers.get(job.job_type)
        if handler is None:
            return await self._settle_failure(job, f"No handler registered for {job.job_type.value}", transient=False)

        try:
            payload = parse_payload(job.job_type, job.payload)
            result = await asyncio.wait_for(handler(payload, job), timeout=self.job_timeout)
        except asyncio.TimeoutError:
            return await self._settle_failure(job, f"Job timed out after {self.job_timeout:.0f}s", transient=True)
        except JobExecutionError as exc:
            return await self._settle_failure(job, exc.message, transient=exc.transient)
        except PERMANENT_ERRORS as exc:
            return await self._settle_failure(job, exc.message, transient=False)
        except LexprepError as exc:
            return await self._settle_failure(job, exc.message, transient=True)
        except Exception as exc:  # Intentionally broad - handler bugs must not kill the worker
            logger.exception("Unhandled error in {} job {}", job.job_type.value, job.id)
            return await self._settle_failure(job, f"{exc.__class__.__name__}: {exc}", transient=True)

        return await self.queue.complete(job.id, result)

    async def _settle_failure(self, job: QueuedJob, error: str, transient: bool) -> QueuedJob:
        settled = await self.queue.fail(job.id, error, transient=transient)
        if settled.status == JobStatus.FAILED:
            await self._notify_terminal_failure(settled)
        return settled

    async def _notify_terminal_failure(self, job: QueuedJob) -> None:
        if self.on_terminal_failure is None:
            return
        try:
            await self.on_terminal_failure(job)
        except Exception:  # Intentionally broad - the job is already settled
            logger.exception("Terminal failure hook failed for job {}", job.id)

    async def recover_stale(self) -> int:
        """Settle jobs left PROCESSING by a dead worker. Returns how many were touched."""
        recovery = await self.queue.recover_stale(timedelta(seconds=self.job_timeout * 2))
        for job in recovery.failed:
            await self._notify_terminal_failure(job)
        return recovery.total

    async def run_once(self) -> QueuedJob | None:
        """Claim and execute a single job. Returns None when nothing is due."""
        job = await self.queue.claim_next(self.worker_id)
        if job is None:
            return None
        return await self.execute(job)

    async def drain(self, max_jobs: int | None = None) -> int:
        """Process due jobs with the full executor pool until none are left."""
        processed = 0

        async def executor() -> None:
            nonlocal processed
            while max_jobs is None or processed < max_jobs:
                processed += 1
                if await self.run_once() is None:
                    processed -= 1
                    return

        await asyncio.gather(*(executor() for _ in range(self.concurrency)))
        return processed

    async def run(self, stop_event: asyncio.Event | None = None) -> None:
        """
        Poll the queue until stop_event is set.

        Stopping lets every executor finish its current job first.
        """
        stop_event = stop_event or asyncio.Event()
        await self.recover_stale()
        logger.info("Worker {} started with {} executor(s)", self.worker_id, self.concurrency)
        await asyncio.gather(*(self._executor_loop(i, stop_event) for i in range(self.concurrency)))
        logger.info("Worker {} stopped", self.worker_id)

    async def _executor_loop(self, index: int, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                job = await self.run_once()
            except Exception:  # Intentionally broad - keep polling through transient DB errors
                logger.exception("Executor {} failed to process a job", index)
                job = None
            if job is None:
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(stop_event.wait(), timeout=self.poll_interval)
