"""
Mastery API.

Endpoints for seeding mastery from onboarding answers, recording practice
attempts, and reading a learner's current state.
"""

from __future__ import annotations

from dataclasses import asdict
from datetime import date, datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from lexprep.api.dependencies import get_container
from lexprep.container import ServiceContainer
from lexprep.db.models import MasteryState
from lexprep.learning.mastery_model import AttemptEvidence, GateCheck, SelfAssessment

router = APIRouter()


# ========================================
# Request/Response Models
# ========================================


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class InitializeRequest(SelfAssessment):
    user_id: str = Field(..., min_length=1)


class OnboardingRequest(InitializeRequest):
    exam_date: date | None = None
    daily_minutes: int | None = Field(default=None, gt=0)


class MasteryStateResponse(CamelModel):
    skill_id: UUID
    p_mastery: float
    stability: float
    attempt_count: int
    correct_count: int
    accuracy: float
    is_verified: bool
    last_practiced_at: datetime | None = None

    @classmethod
    def from_state(cls, state: MasteryState) -> MasteryStateResponse:
        return cls(
            skill_id=state.skill_id,
            p_mastery=state.p_mastery,
            stability=state.stability,
            attempt_count=state.attempt_count or 0,
            correct_count=state.correct_count or 0,
            accuracy=state.accuracy,
            is_verified=bool(state.is_verified),
            last_practiced_at=state.last_practiced_at,
        )


class InitializeResponse(CamelModel):
    user_id: str
    initialized: list[MasteryStateResponse]
    warnings: list[str]


class OnboardingResponse(CamelModel):
    user_id: str
    exam_date: date | None = None
    daily_minutes: int | None = None
    skills_initialized: int
    plan_job_id: str | None = None
    warnings: list[str]


class AttemptRequest(CamelModel):
    user_id: str = Field(..., min_length=1)
    skill_id: UUID
    item_id: str = Field(..., min_length=1)
    correct: bool | None = None
    evidence: AttemptEvidence | None = None

    @model_validator(mode="after")
    def _outcome_given(self) -> AttemptRequest:
        if self.correct is None:
            if self.evidence is None:
                raise ValueError("Either correct or evidence is required")
            self.correct = self.evidence.passed
        return self


class GateResponse(CamelModel):
    skill_id: UUID
    is_verified: bool
    p_mastery: float
    timed_pass_count: int
    hours_between_passes: float
    error_tags_cleared: bool
    failure_reasons: list[str]

    @classmethod
    def from_check(cls, gate: GateCheck) -> GateResponse:
        return cls(**asdict(gate))


class AttemptResponse(CamelModel):
    skill_id: UUID
    correct: bool
    old_p_mastery: float
    new_p_mastery: float
    delta: float
    stability: float
    attempt_count: int
    gate: GateResponse | None = None


# ========================================
# Endpoints
# ========================================


@router.post(
    "/initialize",
    response_model=InitializeResponse,
    response_model_by_alias=True,
    summary="Seed mastery from a self-assessment",
)
async def initialize_mastery(
    request: InitializeRequest,
    container: ServiceContainer = Depends(get_container),
) -> InitializeResponse:
    """Existing states are kept and reported back as warnings."""
    assessment = SelfAssessment(
        strong_skill_units=request.strong_skill_units,
        weak_skill_units=request.weak_skill_units,
        confidence_level=request.confidence_level,
    )
    result = await container.mastery.initialize_for_user(request.user_id, assessment)
    return InitializeResponse(
        user_id=request.user_id,
        initialized=[MasteryStateResponse.from_state(s) for s in result.value],
        warnings=result.warnings,
    )


@router.post(
    "/onboarding",
    response_model=OnboardingResponse,
    response_model_by_alias=True,
    summary="Complete onboarding",
)
async def complete_onboarding(
    request: OnboardingRequest,
    container: ServiceContainer = Depends(get_container),
) -> OnboardingResponse:
    """Saves the exam profile, then seeds mastery and queues today's plan on a best-effort basis."""
    assessment = SelfAssessment(
        strong_skill_units=request.strong_skill_units,
        weak_skill_units=request.weak_skill_units,
        confidence_level=request.confidence_level,
    )
    result = await container.onboarding.complete_onboarding(
        request.user_id,
        assessment,
        exam_date=request.exam_date,
        daily_minutes=request.daily_minutes,
    )
    outcome = result.value
    return OnboardingResponse(
        user_id=outcome.user_id,
        exam_date=outcome.exam_date,
        daily_minutes=outcome.daily_minutes,
        skills_initialized=outcome.skills_initialized,
        plan_job_id=outcome.plan_job_id,
        warnings=result.warnings,
    )


@router.post(
    "/attempt",
    response_model=AttemptResponse,
    response_model_by_alias=True,
    summary="Record a practice attempt",
)
async def record_attempt(
    request: AttemptRequest,
    container: ServiceContainer = Depends(get_container),
) -> AttemptResponse:
    update = await container.mastery.record_attempt(
        request.user_id, request.skill_id, request.item_id, request.correct, evidence=request.evidence
    )
    return AttemptResponse(
        skill_id=update.skill_id,
        correct=update.correct,
        old_p_mastery=update.old_p_mastery,
        new_p_mastery=update.new_p_mastery,
        delta=update.delta,
        stability=update.new_stability,
        attempt_count=update.attempt_count,
        gate=GateResponse.from_check(update.gate) if update.gate else None,
    )


@router.get(
    "/{user_id}",
    response_model=list[MasteryStateResponse],
    response_model_by_alias=True,
    summary="Get a learner's mastery, weakest first",
)
async def get_mastery(
    user_id: str,
    weak_only: bool = Query(False, alias="weakOnly"),
    container: ServiceContainer = Depends(get_container),
) -> list[MasteryStateResponse]:
    if weak_only:
        states = await container.mastery.get_weak_skills(user_id)
    else:
        states = await container.mastery.get_user_mastery(user_id)
    return [MasteryStateResponse.from_state(s) for s in states]


@router.get(
    "/{user_id}/skills/{skill_id}/gate",
    response_model=GateResponse,
    response_model_by_alias=True,
    summary="Check the verification gate for one skill",
)
async def get_gate(
    user_id: str,
    skill_id: UUID,
    container: ServiceContainer = Depends(get_container),
) -> GateResponse:
    return GateResponse.from_check(await container.mastery.check_gate(user_id, skill_id))
