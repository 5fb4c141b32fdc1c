import asyncio
from datetime import date, timedelta
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from lexprep.core.errors import NotFoundError, ValidationError
from lexprep.core.states import JobType
from lexprep.db.models import Attempt, ExamProfile, MasteryState, utcnow
from lexprep.learning.mastery_model import AttemptEvidence, SelfAssessment


@pytest.fixture
def assessment():
    return SelfAssessment(strong_skill_units=["atp-100"], weak_skill_units=["atp-101"], confidence_level=6)


class TestInitializeForUser:
    @pytest.mark.asyncio
    async def test_seeds_every_skill_from_its_unit(self, container, curriculum, assessment):
        result = await container.mastery.initialize_for_user("u1", assessment)

        by_skill = {s.skill_id: s for s in result.value}
        assert by_skill[curriculum.civil.id].p_mastery == pytest.approx(0.52)
        assert by_skill[curriculum.bail.id].p_mastery == pytest.approx(0.104)
        assert by_skill[curriculum.probate.id].p_mastery == pytest.approx(0.26)
        assert not result.degraded

    @pytest.mark.asyncio
    async def test_existing_states_are_kept(self, container, curriculum, assessment):
        await container.mastery.initialize_for_user("u1", assessment)
        await container.mastery.record_attempt("u1", curriculum.civil.id, "q1", True)

        again = await container.mastery.initialize_for_user(
            "u1", SelfAssessment(weak_skill_units=["atp-100"], confidence_level=0)
        )

        assert again.value == []
        assert len(again.warnings) == 3
        states = {s.skill_id: s for s in await container.mastery.get_user_mastery("u1")}
        assert states[curriculum.civil.id].attempt_count == 1


class TestAttempts:
    @pytest.mark.asyncio
    async def test_record_attempt_persists_and_updates(self, container, session_factory, curriculum):
        update = await container.mastery.record_attempt("u1", curriculum.civil.id, "mcq-7", True)

        assert update.old_p_mastery == pytest.approx(0.25)
        assert update.new_p_mastery == pytest.approx(0.3625)
        assert update.delta > 0
        assert update.attempt_count == 1

        async with session_factory() as session:
            attempt = (await session.execute(select(Attempt))).scalar_one()
            state = (await session.execute(select(MasteryState))).scalar_one()
        assert attempt.item_id == "mcq-7"
        assert attempt.applied_at is not None
        assert state.correct_count == 1
        assert state.last_practiced_at is not None

    @pytest.mark.asyncio
    async def test_apply_attempt_updates_state_only(self, container, session_factory, curriculum):
        correct = await container.mastery.apply_attempt("u1", curriculum.civil.id, True)
        wrong = await container.mastery.apply_attempt("u1", curriculum.civil.id, False)

        assert correct.new_p_mastery == pytest.approx(0.3625)
        assert wrong.old_p_mastery == pytest.approx(correct.new_p_mastery)
        assert wrong.new_p_mastery < wrong.old_p_mastery
        assert wrong.new_stability < wrong.old_stability
        [state] = await container.mastery.get_user_mastery("u1")
        assert state.attempt_count == 2
        assert state.accuracy == pytest.approx(0.5)
        async with session_factory() as session:
            assert (await session.execute(select(func.count()).select_from(Attempt))).scalar_one() == 0

    @pytest.mark.asyncio
    async def test_unknown_skill(self, container, curriculum):
        with pytest.raises(NotFoundError):
            await container.mastery.record_attempt("u1", uuid4(), "q1", True)

    @pytest.mark.asyncio
    async def test_concurrent_attempts_are_not_lost(self, container, curriculum):
        outcomes = [True, False, True, True, False, True]
        await asyncio.gather(
            *(
                container.mastery.record_attempt("u1", curriculum.civil.id, f"q{i}", correct)
                for i, correct in enumerate(outcomes)
            )
        )

        [state] = await container.mastery.get_user_mastery("u1")
        assert state.attempt_count == len(outcomes)
        assert state.correct_count == sum(outcomes)
        assert 0.0 <= state.p_mastery <= 1.0

    @pytest.mark.asyncio
    async def test_locks_are_released_after_use(self, container, curriculum):
        await container.mastery.apply_attempt("u1", curriculum.civil.id, True)
        await container.mastery.record_attempt("u2", curriculum.bail.id, "q1", False)

        assert len(container.mastery._locks) == 0

    @pytest.mark.asyncio
    async def test_scored_attempt_is_weighted_and_stored(self, container, session_factory, curriculum):
        evidence = AttemptEvidence(score_norm=0.8, error_tags=["hearsay"])

        update = await container.mastery.record_attempt("u1", curriculum.civil.id, "mcq-1", True, evidence)

        assert update.new_p_mastery == pytest.approx(0.334375)
        assert update.gate is None
        async with session_factory() as session:
            attempt = (await session.execute(select(Attempt))).scalar_one()
        assert attempt.score_norm == pytest.approx(0.8)
        assert attempt.attempt_format == "mcq"
        assert attempt.error_tags == ["hearsay"]

    @pytest.mark.asyncio
    async def test_correct_flag_must_match_score(self, container, curriculum):
        with pytest.raises(ValidationError):
            await container.mastery.apply_attempt(
                "u1", curriculum.civil.id, True, AttemptEvidence(score_norm=0.2)
            )

    @pytest.mark.asyncio
    async def test_missing_states_created_concurrently_are_reloaded(self, container, curriculum, monkeypatch):
        skill_ids = [curriculum.civil.id, curriculum.bail.id]
        created = await container.mastery.get_or_create_states("u1", skill_ids)
        real_load = container.mastery._load_states
        calls = []

        # First read misses rows another caller already committed
        async def stale_load(session, user_id, ids):
            calls.append(user_id)
            if len(calls) == 1:
                return {}
            return await real_load(session, user_id, ids)

        monkeypatch.setattr(container.mastery, "_load_states", stale_load)

        states = await container.mastery.get_or_create_states("u1", skill_ids)

        assert len(calls) == 2
        assert {s.id for s in states.values()} == {s.id for s in created.values()}

    @pytest.mark.asyncio
    async def test_weak_skills_sorted_weakest_first(self, container, curriculum, assessment):
        await container.mastery.initialize_for_user("u1", assessment)

        weak = await container.mastery.get_weak_skills("u1")

        assert [s.skill_id for s in weak] == [curriculum.bail.id, curriculum.probate.id]


class TestVerificationGate:
    async def _seed(self, session_factory, skill_id, hours_ago=25, p_mastery=0.9):
        async with session_factory() as session:
            async with session.begin():
                session.add(
                    MasteryState(
                        user_id="u1",
                        skill_id=skill_id,
                        p_mastery=p_mastery,
                        stability=1.0,
                        attempt_count=1,
                        correct_count=1,
                        is_verified=False,
                    )
                )
                session.add(
                    Attempt(
                        user_id="u1",
                        skill_id=skill_id,
                        item_id="timed-1",
                        is_correct=True,
                        score_norm=0.8,
                        mode="timed",
                        error_tags=[],
                        created_at=utcnow() - timedelta(hours=hours_ago),
                        applied_at=utcnow() - timedelta(hours=hours_ago),
                    )
                )

    @pytest.mark.asyncio
    async def test_confirming_timed_pass_verifies_skill(self, container, session_factory, curriculum):
        await self._seed(session_factory, curriculum.civil.id)

        update = await container.mastery.record_attempt(
            "u1", curriculum.civil.id, "timed-2", True, AttemptEvidence(score_norm=0.9, mode="timed")
        )

        assert update.gate.is_verified
        assert update.gate.timed_pass_count == 2
        [state] = await container.mastery.get_user_mastery("u1")
        assert state.is_verified
        assert state.verified_at is not None

    @pytest.mark.asyncio
    async def test_pass_too_soon_is_not_verified(self, container, session_factory, curriculum):
        await self._seed(session_factory, curriculum.civil.id, hours_ago=2)

        update = await container.mastery.record_attempt(
            "u1", curriculum.civil.id, "timed-2", True, AttemptEvidence(score_norm=0.9, mode="exam_sim")
        )

        assert not update.gate.is_verified
        assert "hours between passes" in update.gate.failure_reasons[0]
        [state] = await container.mastery.get_user_mastery("u1")
        assert not state.is_verified

    @pytest.mark.asyncio
    async def test_check_gate_reads_without_recording(self, container, session_factory, curriculum):
        await self._seed(session_factory, curriculum.civil.id)

        gate = await container.mastery.check_gate("u1", curriculum.civil.id)

        assert gate.timed_pass_count == 1
        assert not gate.is_verified
        async with session_factory() as session:
            assert (await session.execute(select(func.count()).select_from(Attempt))).scalar_one() == 1

    @pytest.mark.asyncio
    async def test_check_gate_without_state(self, container, curriculum):
        with pytest.raises(NotFoundError):
            await container.mastery.check_gate("u1", curriculum.civil.id)


class TestOnboarding:
    @pytest.mark.asyncio
    async def test_complete_onboarding_saves_profile_seeds_and_queues(
        self, container, session_factory, curriculum, assessment
    ):
        exam_date = date.today() + timedelta(days=30)
        result = await container.onboarding.complete_onboarding("u1", assessment, exam_date, 120)

        assert not result.degraded
        assert result.value.skills_initialized == 3
        assert result.value.plan_job_id is not None

        jobs = await container.queue.list_jobs(job_type=JobType.PRECOMPUTE_TODAY)
        assert [j.user_id for j in jobs] == ["u1"]
        async with session_factory() as session:
            profile = (await session.execute(select(ExamProfile))).scalar_one()
        assert profile.exam_date == exam_date
        assert profile.daily_minutes == 120

    @pytest.mark.asyncio
    async def test_mastery_failure_is_a_warning(self, container, session_factory, curriculum, assessment, monkeypatch):
        async def broken(*args, **kwargs):
            raise NotFoundError("skill catalogue unavailable")

        monkeypatch.setattr(container.mastery, "initialize_for_user", broken)

        result = await container.onboarding.complete_onboarding("u1", assessment)

        assert result.degraded
        assert "skill catalogue unavailable" in result.warnings[0]
        assert result.value.plan_job_id is not None
        async with session_factory() as session:
            count = (await session.execute(select(func.count()).select_from(ExamProfile))).scalar_one()
        assert count == 1
