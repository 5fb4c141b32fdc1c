"""
Daily session planner.

Picks the skills a learner should study today, creates one StudySession per
skill with its four StudyAssets, and queues a generation job per asset.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lexprep.config import Settings
from lexprep.core.errors import LexprepError, NotFoundError
from lexprep.core.states import (
    AssetStatus,
    AssetType,
    ExamPhase,
    JobType,
    SessionStatus,
    transition_asset,
    transition_session,
)
from lexprep.db.models import ExamProfile, MasteryState, Skill, StudyAsset, StudySession, utcnow
from lexprep.jobs.payloads import GenerateSessionAssetPayload, RetrieveAuthoritiesPayload
from lexprep.jobs.queue import JobQueue

from .mastery_model import MasteryModel, classify_phase

AUTHORITY_REFRESH_PRIORITY = 0
RESUMABLE_ASSET_STATUSES = (AssetStatus.PENDING, AssetStatus.FAILED)


@dataclass
class PlannedSession:
    session_id: UUID
    skill_id: UUID
    estimated_minutes: int
    asset_ids: list[UUID] = field(default_factory=list)
    job_ids: list[UUID] = field(default_factory=list)


@dataclass
class PlanResult:
    user_id: str
    study_date: date
    exam_phase: ExamPhase
    created: bool
    sessions: list[PlannedSession] = field(default_factory=list)
    failed_assets: dict[UUID, str] = field(default_factory=dict)

    @property
    def session_ids(self) -> list[UUID]:
        return [s.session_id for s in self.sessions]


@dataclass
class AssetView:
    asset_id: UUID
    asset_type: AssetType
    step_order: int
    status: AssetStatus
    used_fallback: bool
    generation_error: str | None
    content: dict[str, Any] | None = None
    grounding_refs: dict[str, Any] | None = None


@dataclass
class SessionView:
    session_id: UUID
    user_id: str
    skill_id: UUID
    study_date: date
    status: SessionStatus
    exam_phase: ExamPhase
    estimated_minutes: int
    assets: list[AssetView]

    @property
    def failed_assets(self) -> list[AssetView]:
        return [a for a in self.assets if a.status == AssetStatus.FAILED]


def rank_skills(skills: list[Skill], states: dict[UUID, MasteryState]) -> list[Skill]:
    """Weakest first, then heavier exam weight, then skill id for a stable order."""
    return sorted(
        skills,
        key=lambda s: (states[s.id].p_mastery, -(s.exam_weight or 0.0), str(s.id)),
    )


class SessionPlanner:
    """Build and track each learner's daily study sessions."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        mastery: MasteryModel,
        queue: JobQueue,
        settings: Settings,
    ):
        self._session_factory = session_factory
        self.mastery = mastery
        self.queue = queue
        self.settings = settings

    def session_minutes(self, phase: ExamPhase) -> int:
        return self.settings.get_phase_session_minutes()[phase.value]

    async def _load_profile(self, user_id: str) -> ExamProfile | None:
        async with self._session_factory() as session:
            stmt = select(ExamProfile).where(ExamProfile.user_id == user_id)
            return (await session.execute(stmt)).scalar_one_or_none()

    async def _existing_sessions(self, user_id: str, study_date: date) -> list[StudySession]:
        async with self._session_factory() as session:
            stmt = (
                select(StudySession)
                .where(StudySession.user_id == user_id, StudySession.study_date == study_date)
                .order_by(StudySession.created_at)
            )
            return list((await session.execute(stmt)).scalars())

    async def plan_daily_sessions(
        self,
        user_id: str,
        study_date: date | None = None,
    ) -> PlanResult:
        """
        Plan a learner's sessions for one day.

        Calling again for a day that already has sessions returns the existing
        plan with created=False; nothing is duplicated. Assets of that plan still
        PENDING or FAILED get their generation job queued again, so a run that
        stopped between creating sessions and queueing jobs is finished here.
        """
        study_date = study_date or utcnow().date()
        profile = await self._load_profile(user_id)
        days = profile.days_to_exam(study_date) if profile else None
        phase = classify_phase(days) if days is not None else ExamPhase.DISTANT

        existing = await self._existing_sessions(user_id, study_date)
        if existing:
            logger.info("User {} already has {} session(s) for {}", user_id, len(existing), study_date)
            result = PlanResult(
                user_id=user_id,
                study_date=study_date,
                exam_phase=existing[0].exam_phase,
                created=False,
            )
            return await self._enqueue_generation(user_id, study_date, result, resume=True)

        async with self._session_factory() as session:
            skills = list(
                (await session.execute(select(Skill).where(Skill.is_active.is_(True)))).scalars()
            )
        if not skills:
            logger.warning("No active skills to plan for user {}", user_id)
            return PlanResult(user_id=user_id, study_date=study_date, exam_phase=phase, created=False)

        states = await self.mastery.get_or_create_states(user_id, [s.id for s in skills])
        minutes = self.session_minutes(phase)
        budget = (profile.daily_minutes if profile and profile.daily_minutes else None) or self.settings.daily_study_minutes
        count = min(max(1, budget // minutes), self.settings.max_sessions_per_day, len(skills))
        selected = rank_skills(skills, states)[:count]

        result = PlanResult(user_id=user_id, study_date=study_date, exam_phase=phase, created=True)
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    for skill in selected:
                        study_session = StudySession(
                            user_id=user_id,
                            skill_id=skill.id,
                            study_date=study_date,
                            target_skill_ids=[str(skill.id)],
                            estimated_minutes=minutes,
                            exam_phase=phase,
                            status=SessionStatus.QUEUED,
                        )
                        study_session.assets = [
                            StudyAsset(
                                asset_type=asset_type,
                                step_order=asset_type.step_order,
                                status=AssetStatus.PENDING,
                            )
                            for asset_type in AssetType.in_session_order()
                        ]
                        session.add(study_session)
        except IntegrityError:
            # A concurrent planner run created the day's sessions first.
            logger.info("Concurrent plan detected for user {} on {}", user_id, study_date)
            return await self.plan_daily_sessions(user_id, study_date)

        return await self._enqueue_generation(user_id, study_date, result)

    async def _enqueue_generation(
        self,
        user_id: str,
        study_date: date,
        result: PlanResult,
        resume: bool = False,
    ) -> PlanResult:
        queued = 0
        for study_session in await self._existing_sessions(user_id, study_date):
            planned = PlannedSession(
                session_id=study_session.id,
                skill_id=study_session.skill_id,
                estimated_minutes=study_session.estimated_minutes,
                asset_ids=[a.id for a in study_session.assets],
            )
            result.sessions.append(planned)

            pending = [
                a for a in study_session.assets
                if not resume or a.status in RESUMABLE_ASSET_STATUSES
            ]
            if not pending:
                continue

            try:
                await self.queue.enqueue(
                    JobType.RETRIEVE_AUTHORITIES,
                    RetrieveAuthoritiesPayload(skill_id=study_session.skill_id),
                    priority=AUTHORITY_REFRESH_PRIORITY,
                    user_id=user_id,
                )
            except LexprepError as exc:
                logger.warning("Authority refresh not queued for skill {}: {}", study_session.skill_id, exc)

            for asset in pending:
                try:
                    enqueued = await self.queue.enqueue(
                        JobType.GENERATE_SESSION_ASSET,
                        GenerateSessionAssetPayload(
                            session_id=study_session.id,
                            asset_id=asset.id,
                            asset_type=asset.asset_type,
                            skill_id=study_session.skill_id,
                        ),
                        priority=asset.step_order + 1,
                        user_id=user_id,
                    )
                    planned.job_ids.append(enqueued.job.id)
                    if enqueued.created:
                        queued += 1
                except LexprepError as exc:
                    result.failed_assets[asset.id] = str(exc)
                    await self.mark_asset_failed(asset.id, f"Could not queue generation: {exc}")

        if resume:
            if queued:
                logger.warning("Re-queued {} generation job(s) for user {} on {}", queued, user_id, study_date)
            return result
        logger.info(
            "Planned {} session(s) for user {} on {} ({} phase)",
            len(result.sessions),
            user_id,
            study_date,
            result.exam_phase.value,
        )
        return result

    async def mark_asset_failed(self, asset_id: UUID, error: str) -> None:
        """Record a generation failure on an asset. READY assets are left alone."""
        async with self._session_factory() as session:
            async with session.begin():
                asset = await session.get(StudyAsset, asset_id)
                if asset is None:
                    raise NotFoundError(f"Asset {asset_id} not found")
                if asset.status == AssetStatus.READY:
                    return
                if asset.status != AssetStatus.FAILED:
                    asset.status = transition_asset(asset.status, AssetStatus.FAILED)
                asset.generation_error = error
                asset.generation_completed_at = utcnow()
        logger.warning("Asset {} failed: {}", asset_id, error)

    async def refresh_session_status(self, session_id: UUID) -> SessionStatus:
        """Move a QUEUED session to READY once any of its assets is READY."""
        async with self._session_factory() as session:
            async with session.begin():
                study_session = await session.get(StudySession, session_id, with_for_update=True)
                if study_session is None:
                    raise NotFoundError(f"Session {session_id} not found")
                ready = any(a.status == AssetStatus.READY for a in study_session.assets)
                if study_session.status == SessionStatus.QUEUED and ready:
                    study_session.status = transition_session(study_session.status, SessionStatus.READY)
                    logger.info("Session {} is READY", session_id)
                return study_session.status

    async def advance_session(self, session_id: UUID, target: SessionStatus) -> SessionStatus:
        """Learner-driven moves READY -> ACTIVE -> COMPLETED."""
        async with self._session_factory() as session:
            async with session.begin():
                study_session = await session.get(StudySession, session_id, with_for_update=True)
                if study_session is None:
                    raise NotFoundError(f"Session {session_id} not found")
                study_session.status = transition_session(study_session.status, target)
                return study_session.status

    async def describe_session(self, session_id: UUID) -> SessionView:
        async with self._session_factory() as session:
            study_session = await session.get(StudySession, session_id)
            if study_session is None:
                raise NotFoundError(f"Session {session_id} not found")
            return SessionView(
                session_id=study_session.id,
                user_id=study_session.user_id,
                skill_id=study_session.skill_id,
                study_date=study_session.study_date,
                status=study_session.status,
                exam_phase=study_session.exam_phase,
                estimated_minutes=study_session.estimated_minutes,
                assets=[
                    AssetView(
                        asset_id=a.id,
                        asset_type=a.asset_type,
                        step_order=a.step_order,
                        status=a.status,
                        used_fallback=bool(a.used_fallback),
                        generation_error=a.generation_error,
                        content=a.content,
                        grounding_refs=a.grounding_refs,
                    )
                    for a in study_session.assets
                ],
            )
