"""
Onboarding completion.

Saving the exam profile is the primary step and must succeed. Seeding mastery
and queueing today's plan are best effort: their failures come back as
warnings on the Result instead of failing onboarding.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lexprep.core.errors import LexprepError
from lexprep.core.result import Result
from lexprep.core.states import JobType
from lexprep.db.database import session_scope
from lexprep.db.models import ExamProfile
from lexprep.jobs.payloads import PrecomputeTodayPayload
from lexprep.jobs.queue import JobQueue

from .mastery_model import MasteryModel, SelfAssessment


@dataclass
class OnboardingOutcome:
    user_id: str
    exam_date: date | None
    daily_minutes: int | None
    skills_initialized: int
    plan_job_id: str | None


class OnboardingService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        mastery: MasteryModel,
        queue: JobQueue,
    ):
        self._session_factory = session_factory
        self.mastery = mastery
        self.queue = queue

    async def save_profile(
        self,
        user_id: str,
        exam_date: date | None,
        daily_minutes: int | None,
    ) -> ExamProfile:
        async with session_scope(self._session_factory) as session:
            stmt = select(ExamProfile).where(ExamProfile.user_id == user_id)
            profile = (await session.execute(stmt)).scalar_one_or_none()
            if profile is None:
                profile = ExamProfile(user_id=user_id)
                session.add(profile)
            profile.exam_date = exam_date
            profile.daily_minutes = daily_minutes
        return profile

    async def complete_onboarding(
        self,
        user_id: str,
        assessment: SelfAssessment,
        exam_date: date | None = None,
        daily_minutes: int | None = None,
    ) -> Result[OnboardingOutcome]:
        profile = await self.save_profile(user_id, exam_date, daily_minutes)
        result = Result(
            value=OnboardingOutcome(
                user_id=user_id,
                exam_date=profile.exam_date,
                daily_minutes=profile.daily_minutes,
                skills_initialized=0,
                plan_job_id=None,
            )
        )

        try:
            seeded = await self.mastery.initialize_for_user(user_id, assessment)
            result.value.skills_initialized = len(seeded.value)
            result.warnings.extend(seeded.warnings)
        except (LexprepError, SQLAlchemyError) as exc:
            logger.warning("Mastery initialization failed for {}: {}", user_id, exc)
            result.warn(f"Mastery initialization failed: {exc}")

        try:
            enqueued = await self.queue.enqueue(
                JobType.PRECOMPUTE_TODAY,
                PrecomputeTodayPayload(user_id=user_id),
                priority=0,
                user_id=user_id,
            )
            result.value.plan_job_id = str(enqueued.job.id)
        except (LexprepError, SQLAlchemyError) as exc:
            logger.warning("Could not queue today's plan for {}: {}", user_id, exc)
            result.warn(f"Today's plan was not queued: {exc}")

        return result
