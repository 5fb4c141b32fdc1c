"""
Integration tests for the daily session planner.

Covers:
- Skill selection and session sizing per exam phase
- Idempotent re-planning for the same day
- Generation jobs queued per asset, and failures recorded on the asset
"""

from datetime import date, timedelta

import pytest
from sqlalchemy import func, select

from lexprep.core.errors import ConcurrencyConflictError, IllegalTransitionError
from lexprep.core.states import AssetStatus, AssetType, ExamPhase, JobType, SessionStatus
from lexprep.db.models import StudyAsset, StudySession
from lexprep.learning.mastery_model import SelfAssessment

STUDY_DATE = date(2026, 3, 2)


async def count(session_factory, model) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar_one()


class TestPlanDailySessions:
    @pytest.mark.asyncio
    async def test_default_plan_without_profile(self, container, curriculum):
        plan = await container.planner.plan_daily_sessions("u1", STUDY_DATE)

        # 90 minute budget / 45 minute distant-phase sessions
        assert plan.created
        assert plan.exam_phase == ExamPhase.DISTANT
        assert {s.skill_id for s in plan.sessions} == {curriculum.civil.id, curriculum.bail.id}
        assert all(s.estimated_minutes == 45 for s in plan.sessions)
        assert all(len(s.asset_ids) == 4 for s in plan.sessions)
        assert plan.failed_assets == {}

    @pytest.mark.asyncio
    async def test_weakest_skills_are_selected(self, container, curriculum):
        await container.mastery.initialize_for_user(
            "u1", SelfAssessment(strong_skill_units=["atp-100", "atp-101"], confidence_level=5)
        )

        plan = await container.planner.plan_daily_sessions("u1", STUDY_DATE)

        assert {s.skill_id for s in plan.sessions} == {curriculum.probate.id, curriculum.civil.id}

    @pytest.mark.asyncio
    async def test_critical_phase_uses_short_sessions(self, container, curriculum):
        await container.onboarding.save_profile("u1", STUDY_DATE + timedelta(days=5), None)

        plan = await container.planner.plan_daily_sessions("u1", STUDY_DATE)

        assert plan.exam_phase == ExamPhase.CRITICAL
        assert len(plan.sessions) == 3
        assert all(s.estimated_minutes == 25 for s in plan.sessions)

    @pytest.mark.asyncio
    async def test_profile_budget_limits_session_count(self, container, curriculum):
        await container.onboarding.save_profile("u1", STUDY_DATE + timedelta(days=120), 45)

        plan = await container.planner.plan_daily_sessions("u1", STUDY_DATE)

        assert len(plan.sessions) == 1

    @pytest.mark.asyncio
    async def test_second_call_returns_existing_plan(self, container, session_factory, curriculum):
        first = await container.planner.plan_daily_sessions("u1", STUDY_DATE)
        second = await container.planner.plan_daily_sessions("u1", STUDY_DATE)

        assert not second.created
        assert second.session_ids == first.session_ids
        assert await count(session_factory, StudySession) == 2
        assert await count(session_factory, StudyAsset) == 8

    @pytest.mark.asyncio
    async def test_queues_one_job_per_asset_plus_authority_refresh(self, container, curriculum):
        await container.planner.plan_daily_sessions("u1", STUDY_DATE)
        await container.planner.plan_daily_sessions("u1", STUDY_DATE)

        generate = await container.queue.list_jobs(job_type=JobType.GENERATE_SESSION_ASSET)
        refresh = await container.queue.list_jobs(job_type=JobType.RETRIEVE_AUTHORITIES)
        assert len(generate) == 8
        assert len(refresh) == 2
        assert {j.priority for j in refresh} == {0}
        assert sorted({j.priority for j in generate}) == [1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_enqueue_failure_marks_asset_failed(self, container, curriculum, monkeypatch):
        real_enqueue = container.queue.enqueue

        async def flaky_enqueue(job_type, payload, **kwargs):
            if job_type == JobType.GENERATE_SESSION_ASSET and payload.asset_type == AssetType.RUBRIC:
                raise ConcurrencyConflictError("queue busy")
            return await real_enqueue(job_type, payload, **kwargs)

        monkeypatch.setattr(container.queue, "enqueue", flaky_enqueue)

        plan = await container.planner.plan_daily_sessions("u1", STUDY_DATE)

        assert len(plan.failed_assets) == 2
        view = await container.planner.describe_session(plan.sessions[0].session_id)
        rubric = [a for a in view.assets if a.asset_type == AssetType.RUBRIC][0]
        assert rubric.status == AssetStatus.FAILED
        assert "queue busy" in rubric.generation_error
        assert view.failed_assets == [rubric]

    @pytest.mark.asyncio
    async def test_replanning_queues_jobs_lost_to_a_crash(self, container, session_factory, curriculum, monkeypatch):
        real_enqueue = container.queue.enqueue

        async def crashing_enqueue(job_type, payload, **kwargs):
            if job_type == JobType.GENERATE_SESSION_ASSET:
                raise RuntimeError("database connection lost")
            return await real_enqueue(job_type, payload, **kwargs)

        monkeypatch.setattr(container.queue, "enqueue", crashing_enqueue)
        with pytest.raises(RuntimeError):
            await container.planner.plan_daily_sessions("u1", STUDY_DATE)
        monkeypatch.setattr(container.queue, "enqueue", real_enqueue)
        assert await container.queue.list_jobs(job_type=JobType.GENERATE_SESSION_ASSET) == []

        plan = await container.planner.plan_daily_sessions("u1", STUDY_DATE)

        assert not plan.created
        assert await count(session_factory, StudySession) == 2
        generate = await container.queue.list_jobs(job_type=JobType.GENERATE_SESSION_ASSET)
        assert len(generate) == 8
        assert sorted(len(s.job_ids) for s in plan.sessions) == [4, 4]

    @pytest.mark.asyncio
    async def test_replanning_requeues_failed_assets_only(self, container, curriculum, monkeypatch):
        real_enqueue = container.queue.enqueue

        async def flaky_enqueue(job_type, payload, **kwargs):
            if job_type == JobType.GENERATE_SESSION_ASSET and payload.asset_type == AssetType.RUBRIC:
                raise ConcurrencyConflictError("queue busy")
            return await real_enqueue(job_type, payload, **kwargs)

        monkeypatch.setattr(container.queue, "enqueue", flaky_enqueue)
        first = await container.planner.plan_daily_sessions("u1", STUDY_DATE)
        monkeypatch.setattr(container.queue, "enqueue", real_enqueue)

        second = await container.planner.plan_daily_sessions("u1", STUDY_DATE)

        generate = await container.queue.list_jobs(job_type=JobType.GENERATE_SESSION_ASSET)
        assert len(generate) == 8
        assert second.failed_assets == {}
        assert {s.session_id for s in second.sessions} == set(first.session_ids)

    @pytest.mark.asyncio
    async def test_no_active_skills(self, container):
        plan = await container.planner.plan_daily_sessions("u1", STUDY_DATE)

        assert not plan.created
        assert plan.sessions == []


class TestSessionStatus:
    @pytest.mark.asyncio
    async def test_describe_lists_assets_in_step_order(self, container, curriculum):
        plan = await container.planner.plan_daily_sessions("u1", STUDY_DATE)

        view = await container.planner.describe_session(plan.sessions[0].session_id)

        assert view.status == SessionStatus.QUEUED
        assert [a.asset_type for a in view.assets] == AssetType.in_session_order()
        assert all(a.status == AssetStatus.PENDING for a in view.assets)

    @pytest.mark.asyncio
    async def test_queued_session_cannot_be_completed(self, container, curriculum):
        plan = await container.planner.plan_daily_sessions("u1", STUDY_DATE)

        with pytest.raises(IllegalTransitionError):
            await container.planner.advance_session(plan.sessions[0].session_id, SessionStatus.COMPLETED)
