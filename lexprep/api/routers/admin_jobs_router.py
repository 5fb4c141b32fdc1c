"""
Admin job monitoring API.

Lists background jobs with rolling-window statistics and exposes the two
admin actions: retry a FAILED job, cancel a PENDING one.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from lexprep.api.dependencies import get_container
from lexprep.container import ServiceContainer
from lexprep.core.errors import ConcurrencyConflictError, JobGuardError, NotFoundError
from lexprep.core.states import JobStatus, JobType
from lexprep.db.models import utcnow
from lexprep.jobs.queue import JobStats, QueuedJob

router = APIRouter()


# ========================================
# Request/Response Models
# ========================================


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class JobRecord(CamelModel):
    id: UUID
    job_type: JobType
    status: JobStatus
    priority: int
    attempts: int
    max_attempts: int
    payload: dict[str, Any]
    result: dict[str, Any] | None = None
    last_error: str | None = None
    created_at: datetime
    scheduled_for: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    user_id: str | None = None

    @classmethod
    def from_job(cls, job: QueuedJob) -> JobRecord:
        return cls(
            id=job.id,
            job_type=job.job_type,
            status=job.status,
            priority=job.priority,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            payload=job.payload,
            result=job.result,
            last_error=job.last_error,
            created_at=job.created_at,
            scheduled_for=job.scheduled_for,
            started_at=job.started_at,
            completed_at=job.completed_at,
            user_id=job.user_id,
        )


class JobStatsResponse(CamelModel):
    total: int
    by_status: dict[str, int]
    by_type: dict[str, int]
    recent_failures: int

    @classmethod
    def from_stats(cls, stats: JobStats) -> JobStatsResponse:
        return cls(
            total=stats.total,
            by_status=stats.by_status,
            by_type=stats.by_type,
            recent_failures=stats.recent_failures,
        )


class JobListResponse(CamelModel):
    jobs: list[JobRecord]
    stats: JobStatsResponse


class JobActionRequest(CamelModel):
    action: str = Field(..., description="retry or cancel")
    job_id: UUID


class JobActionResponse(CamelModel):
    success: bool
    action: Literal["retry", "cancel"]
    job: JobRecord


# ========================================
# Endpoints
# ========================================


@router.get(
    "",
    response_model=JobListResponse,
    response_model_by_alias=True,
    summary="List background jobs with statistics",
)
async def list_jobs(
    status: JobStatus | None = Query(None, description="Filter by status"),
    job_type: JobType | None = Query(None, alias="type", description="Filter by job type"),
    include_old: bool = Query(False, alias="includeOld", description="Include jobs outside the stats window"),
    limit: int = Query(50, ge=1, description="Maximum jobs to return"),
    container: ServiceContainer = Depends(get_container),
) -> JobListResponse:
    """
    Newest jobs first. Without includeOld only jobs created inside the stats
    window (24h by default) are listed. Limit is capped server-side.
    """
    limit = min(limit, container.settings.job_list_max_limit)
    since = None if include_old else utcnow() - container.stats_window

    jobs = await container.queue.list_jobs(status=status, job_type=job_type, since=since, limit=limit)
    stats = await container.queue.stats(
        window=container.stats_window,
        failure_window=container.failure_window,
    )
    return JobListResponse(
        jobs=[JobRecord.from_job(job) for job in jobs],
        stats=JobStatsResponse.from_stats(stats),
    )


@router.post(
    "",
    response_model=JobActionResponse,
    response_model_by_alias=True,
    summary="Retry or cancel a job",
)
async def job_action(
    request: JobActionRequest,
    container: ServiceContainer = Depends(get_container),
) -> JobActionResponse:
    """
    Retry is only legal from FAILED and cancel only from PENDING. The current
    status is re-checked inside the update, so a job claimed by a worker in
    the meantime is refused with 400 rather than changed.
    """
    if request.action not in ("retry", "cancel"):
        raise HTTPException(status_code=400, detail=f"Unknown action: {request.action}")

    try:
        if request.action == "retry":
            job = await container.queue.retry(request.job_id)
        else:
            job = await container.queue.cancel(request.job_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except (JobGuardError, ConcurrencyConflictError) as e:
        raise HTTPException(status_code=400, detail=e.message)

    logger.info("Admin {} on job {}", request.action, request.job_id)
    return JobActionResponse(success=True, action=request.action, job=JobRecord.from_job(job))
