"""
Study planning API.

Triggers the daily planner and reports session and asset generation status.
"""

from __future__ import annotations

from datetime import date
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from lexprep.api.dependencies import get_container
from lexprep.container import ServiceContainer
from lexprep.core.states import AssetStatus, AssetType, ExamPhase, SessionStatus
from lexprep.learning.session_planner import SessionView

router = APIRouter()


# ========================================
# Request/Response Models
# ========================================


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PlanRequest(CamelModel):
    user_id: str = Field(..., min_length=1)
    study_date: date | None = None


class PlannedSessionResponse(CamelModel):
    session_id: UUID
    skill_id: UUID
    estimated_minutes: int
    asset_ids: list[UUID]
    job_ids: list[UUID]


class PlanResponse(CamelModel):
    user_id: str
    study_date: date
    exam_phase: ExamPhase
    created: bool
    sessions: list[PlannedSessionResponse]
    failed_assets: dict[str, str]


class AssetResponse(CamelModel):
    asset_id: UUID
    asset_type: AssetType
    step_order: int
    status: AssetStatus
    used_fallback: bool
    generation_error: str | None = None
    content: dict[str, Any] | None = None
    grounding_refs: dict[str, Any] | None = None


class SessionResponse(CamelModel):
    session_id: UUID
    user_id: str
    skill_id: UUID
    study_date: date
    status: SessionStatus
    exam_phase: ExamPhase
    estimated_minutes: int
    assets: list[AssetResponse]

    @classmethod
    def from_view(cls, view: SessionView) -> SessionResponse:
        return cls(
            session_id=view.session_id,
            user_id=view.user_id,
            skill_id=view.skill_id,
            study_date=view.study_date,
            status=view.status,
            exam_phase=view.exam_phase,
            estimated_minutes=view.estimated_minutes,
            assets=[
                AssetResponse(
                    asset_id=a.asset_id,
                    asset_type=a.asset_type,
                    step_order=a.step_order,
                    status=a.status,
                    used_fallback=a.used_fallback,
                    generation_error=a.generation_error,
                    content=a.content,
                    grounding_refs=a.grounding_refs,
                )
                for a in view.assets
            ],
        )


class AdvanceRequest(CamelModel):
    status: SessionStatus


# ========================================
# Endpoints
# ========================================


@router.post(
    "/plan",
    response_model=PlanResponse,
    response_model_by_alias=True,
    summary="Plan a learner's sessions for a day",
)
async def plan_day(
    request: PlanRequest,
    container: ServiceContainer = Depends(get_container),
) -> PlanResponse:
    """Idempotent per day: a second call returns the existing plan with created=false."""
    plan = await container.planner.plan_daily_sessions(request.user_id, request.study_date)
    return PlanResponse(
        user_id=plan.user_id,
        study_date=plan.study_date,
        exam_phase=plan.exam_phase,
        created=plan.created,
        sessions=[
            PlannedSessionResponse(
                session_id=s.session_id,
                skill_id=s.skill_id,
                estimated_minutes=s.estimated_minutes,
                asset_ids=s.asset_ids,
                job_ids=s.job_ids,
            )
            for s in plan.sessions
        ],
        failed_assets={str(k): v for k, v in plan.failed_assets.items()},
    )


@router.get(
    "/sessions/{session_id}",
    response_model=SessionResponse,
    response_model_by_alias=True,
    summary="Get a session with its assets",
)
async def get_session(
    session_id: UUID,
    container: ServiceContainer = Depends(get_container),
) -> SessionResponse:
    return SessionResponse.from_view(await container.planner.describe_session(session_id))


@router.post(
    "/sessions/{session_id}/status",
    response_model=SessionResponse,
    response_model_by_alias=True,
    summary="Start or complete a session",
)
async def advance_session(
    session_id: UUID,
    request: AdvanceRequest,
    container: ServiceContainer = Depends(get_container),
) -> SessionResponse:
    """Illegal moves (e.g. QUEUED -> COMPLETED) are refused with 409."""
    await container.planner.advance_session(session_id, request.status)
    return SessionResponse.from_view(await container.planner.describe_session(session_id))
