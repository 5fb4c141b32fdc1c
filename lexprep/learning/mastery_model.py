"""
Mastery Model: per-skill knowledge state for each learner.

This module tracks learner mastery per micro-skill using:
- A baseline from onboarding self-assessment (strong / neutral / weak units)
- Stability-damped updates from practice attempts
- Optional scored evidence (format, mode, difficulty) that weights and clamps an update
- A timed-pass gate that marks a skill verified
- Exam phase classification from days remaining
"""

from __future__ import annotations

import asyncio
import weakref
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Literal
from uuid import UUID

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lexprep.config import Settings
from lexprep.core.errors import ConcurrencyConflictError, NotFoundError, ValidationError
from lexprep.core.result import Result
from lexprep.core.states import ExamPhase
from lexprep.db.models import Attempt, MasteryState, Skill, utcnow

STRONG_BASELINE = 0.50
NEUTRAL_BASELINE = 0.25
WEAK_BASELINE = 0.10
MIN_BASELINE = 0.05
MAX_BASELINE = 0.70

CRITICAL_MAX_DAYS = 7
DISTANT_MIN_DAYS = 60

PASS_THRESHOLD = 0.6
TOP_ERROR_TAGS = 3

FORMAT_WEIGHTS = {
    "oral": 1.35,
    "drafting": 1.25,
    "written": 1.15,
    "mcq": 0.75,
    "flashcard": 0.65,
}
MODE_WEIGHTS = {"exam_sim": 1.25, "timed": 1.25, "practice": 1.0}
DIFFICULTY_FACTORS = {1: 0.6, 2: 0.8, 3: 1.0, 4: 1.2, 5: 1.4}
TIMED_MODES = ("timed", "exam_sim")


@dataclass(frozen=True)
class MasteryParams:
    learning_rate: float = 0.3
    initial_stability: float = 1.0
    stability_growth: float = 0.1
    stability_decay: float = 0.15
    min_stability: float = 0.3
    max_stability: float = 2.0
    max_delta_positive: float = 0.10
    max_delta_negative: float = 0.12
    gate_min_p_mastery: float = 0.85
    gate_required_timed_passes: int = 2
    gate_min_hours_between_passes: float = 24.0

    @classmethod
    def from_settings(cls, settings: Settings) -> MasteryParams:
        return cls(**settings.get_mastery_config())


class SelfAssessment(BaseModel):
    """Onboarding answers used to seed mastery."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    strong_skill_units: list[str] = Field(default_factory=list)
    weak_skill_units: list[str] = Field(default_factory=list)
    confidence_level: int = Field(default=5, ge=0, le=10)


class AttemptEvidence(BaseModel):
    """
    How a scored attempt was taken.

    score_norm decides success (PASS_THRESHOLD and up). The other fields
    weight how far the attempt may move p_mastery.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    score_norm: float = Field(..., ge=0, le=1)
    format: Literal["written", "oral", "drafting", "mcq", "flashcard"] = "mcq"
    mode: Literal["practice", "timed", "exam_sim"] = "practice"
    difficulty: int = Field(default=3, ge=1, le=5)
    coverage_weight: float = Field(default=1.0, gt=0, le=1)
    error_tags: list[str] = Field(default_factory=list)

    @property
    def passed(self) -> bool:
        return self.score_norm >= PASS_THRESHOLD

    @property
    def is_timed(self) -> bool:
        return self.mode in TIMED_MODES

    @property
    def weight(self) -> float:
        return (
            FORMAT_WEIGHTS[self.format]
            * MODE_WEIGHTS[self.mode]
            * DIFFICULTY_FACTORS[self.difficulty]
            * self.coverage_weight
        )


@dataclass
class GateCheck:
    """Outcome of the verification gate for one skill."""

    skill_id: UUID
    is_verified: bool
    p_mastery: float
    timed_pass_count: int
    hours_between_passes: float
    error_tags_cleared: bool
    failure_reasons: list[str] = field(default_factory=list)


@dataclass
class MasteryUpdate:
    """Result of applying one attempt."""

    user_id: str
    skill_id: UUID
    correct: bool
    old_p_mastery: float
    new_p_mastery: float
    old_stability: float
    new_stability: float
    attempt_count: int
    gate: GateCheck | None = None

    @property
    def delta(self) -> float:
        return self.new_p_mastery - self.old_p_mastery


# ========================================
# Pure functions
# ========================================

def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def confidence_multiplier(confidence_level: int) -> float:
    """0.8 at confidence 0 up to 1.2 at confidence 10."""
    if not 0 <= confidence_level <= 10:
        raise ValidationError(f"confidence_level must be between 0 and 10, got {confidence_level}")
    return 0.8 + 0.04 * confidence_level


def baseline_p_mastery(bucket: str, confidence_level: int) -> float:
    """
    Initial p_mastery for a skill from its self-assessment bucket.

    Args:
        bucket: "strong", "neutral" or "weak"
        confidence_level: Learner's overall confidence (0-10)
    """
    base = {"strong": STRONG_BASELINE, "neutral": NEUTRAL_BASELINE, "weak": WEAK_BASELINE}[bucket]
    return _clamp(base * confidence_multiplier(confidence_level), MIN_BASELINE, MAX_BASELINE)


def bucket_for_unit(unit_id: str, assessment: SelfAssessment) -> str:
    # weak wins when a unit is listed as both
    if unit_id in assessment.weak_skill_units:
        return "weak"
    if unit_id in assessment.strong_skill_units:
        return "strong"
    return "neutral"


def compute_update(
    p_mastery: float,
    stability: float,
    correct: bool,
    params: MasteryParams,
) -> tuple[float, float]:
    """
    Move p_mastery toward 1 (correct) or 0 (incorrect).

    The step covers learning_rate / (1 + stability) of the remaining distance,
    so a stable estimate moves less. Stability grows on correct answers and
    decays on misses, bounded by [min_stability, max_stability].

    Returns:
        (new_p_mastery, new_stability)
    """
    step = params.learning_rate / (1.0 + max(0.0, stability))
    if correct:
        new_p = p_mastery + step * (1.0 - p_mastery)
        new_stability = min(params.max_stability, stability + params.stability_growth)
    else:
        new_p = p_mastery - step * p_mastery
        new_stability = max(params.min_stability, stability - params.stability_decay)
    return _clamp(new_p, 0.0, 1.0), new_stability


def compute_weighted_update(
    p_mastery: float,
    stability: float,
    evidence: AttemptEvidence,
    params: MasteryParams,
) -> tuple[float, float]:
    """
    Stability-scaled update for a scored attempt.

    The plain step is multiplied by the evidence weight, then held to
    [-max_delta_negative, +max_delta_positive]. Stability moves exactly as for
    a plain attempt.
    """
    base_p, new_stability = compute_update(p_mastery, stability, evidence.passed, params)
    delta = _clamp(
        (base_p - p_mastery) * evidence.weight,
        -params.max_delta_negative,
        params.max_delta_positive,
    )
    return _clamp(p_mastery + delta, 0.0, 1.0), new_stability


def top_error_tags(attempts: Sequence[Attempt], limit: int = TOP_ERROR_TAGS) -> list[str]:
    counts = Counter(tag for attempt in attempts for tag in (attempt.error_tags or []))
    return [tag for tag, _ in counts.most_common(limit)]


def check_gate(
    skill_id: UUID,
    p_mastery: float,
    attempts: Sequence[Attempt],
    params: MasteryParams,
) -> GateCheck:
    """
    Decide whether a skill is verified.

    Requires p_mastery >= gate_min_p_mastery and two passing timed attempts:
    the first pass, and a confirming pass at least gate_min_hours_between_passes
    later that repeats none of the top error tags seen before it.

    Args:
        attempts: Every attempt on the skill, in any order
    """
    reasons: list[str] = []
    history = sorted(attempts, key=lambda a: a.created_at)
    passes = [
        a for a in history
        if a.mode in TIMED_MODES and a.score_norm is not None and a.score_norm >= PASS_THRESHOLD
    ]

    if p_mastery < params.gate_min_p_mastery:
        reasons.append(f"p_mastery {p_mastery:.1%} below required {params.gate_min_p_mastery:.0%}")
    if len(passes) < params.gate_required_timed_passes:
        reasons.append(f"Only {len(passes)}/{params.gate_required_timed_passes} timed passes")

    hours = 0.0
    cleared = False
    if len(passes) >= 2:
        first = passes[0]
        gap = params.gate_min_hours_between_passes * 3600
        confirming = next(
            (a for a in passes[1:] if (a.created_at - first.created_at).total_seconds() >= gap),
            passes[-1],
        )
        hours = (confirming.created_at - first.created_at).total_seconds() / 3600
        if hours < params.gate_min_hours_between_passes:
            reasons.append(
                f"Only {hours:.1f} hours between passes (need {params.gate_min_hours_between_passes:g})"
            )
        earlier = [a for a in history if a.created_at < confirming.created_at]
        repeated = set(top_error_tags(earlier)) & set(confirming.error_tags or [])
        cleared = not repeated
        if repeated:
            reasons.append(f"Top error tags repeated in confirming pass: {', '.join(sorted(repeated))}")

    return GateCheck(
        skill_id=skill_id,
        is_verified=not reasons,
        p_mastery=p_mastery,
        timed_pass_count=len(passes),
        hours_between_passes=hours,
        error_tags_cleared=cleared,
        failure_reasons=reasons,
    )


def classify_phase(days_to_exam: int) -> ExamPhase:
    """0-7 days critical, 8-59 approaching, 60+ distant."""
    if days_to_exam < 0:
        raise ValidationError(f"days_to_exam cannot be negative, got {days_to_exam}")
    if days_to_exam <= CRITICAL_MAX_DAYS:
        return ExamPhase.CRITICAL
    if days_to_exam < DISTANT_MIN_DAYS:
        return ExamPhase.APPROACHING
    return ExamPhase.DISTANT


# ========================================
# Persistent model
# ========================================

class MasteryModel:
    """
    Owns every write to MasteryState.

    Writes for one (user, skill) are serialized by an in-process lock and by
    SELECT ... FOR UPDATE on the row, so concurrent attempts never lose an update.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        params: MasteryParams | None = None,
        weak_threshold: float = 0.4,
    ):
        self._session_factory = session_factory
        self.params = params or MasteryParams()
        self.weak_threshold = weak_threshold
        # Entries vanish once no caller holds or waits on the lock
        self._locks: weakref.WeakValueDictionary[tuple[str, UUID], asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock_for(self, user_id: str, skill_id: UUID) -> asyncio.Lock:
        key = (user_id, skill_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def _new_state(self, user_id: str, skill_id: UUID, p_mastery: float = NEUTRAL_BASELINE) -> MasteryState:
        return MasteryState(
            user_id=user_id,
            skill_id=skill_id,
            p_mastery=p_mastery,
            stability=self.params.initial_stability,
            attempt_count=0,
            correct_count=0,
            is_verified=False,
        )

    async def initialize_for_user(
        self,
        user_id: str,
        self_assessment: SelfAssessment,
        skills: Sequence[Skill] | None = None,
    ) -> Result[list[MasteryState]]:
        """
        Seed p_mastery for every skill from the learner's self-assessment.

        Existing states are left alone; their skill ids come back as warnings.
        """
        result: Result[list[MasteryState]] = Result(value=[])
        async with self._session_factory() as session:
            async with session.begin():
                if skills is None:
                    skills = list(
                        (await session.execute(select(Skill).where(Skill.is_active.is_(True)))).scalars()
                    )
                existing = set(
                    (
                        await session.execute(
                            select(MasteryState.skill_id).where(MasteryState.user_id == user_id)
                        )
                    ).scalars()
                )
                for skill in skills:
                    if skill.id in existing:
                        result.warn(f"Mastery for skill {skill.id} already exists; kept")
                        continue
                    bucket = bucket_for_unit(skill.unit_id, self_assessment)
                    state = self._new_state(
                        user_id,
                        skill.id,
                        baseline_p_mastery(bucket, self_assessment.confidence_level),
                    )
                    session.add(state)
                    result.value.append(state)

        logger.info(
            "Initialized mastery for user {}: {} skill(s), {} kept",
            user_id,
            len(result.value),
            len(result.warnings),
        )
        return result

    async def _apply_in_session(
        self,
        session: AsyncSession,
        user_id: str,
        skill_id: UUID,
        correct: bool,
        evidence: AttemptEvidence | None = None,
    ) -> tuple[MasteryState, MasteryUpdate]:
        if await session.get(Skill, skill_id) is None:
            raise NotFoundError(f"Skill {skill_id} not found")
        if evidence is not None and evidence.passed != correct:
            raise ValidationError(
                f"correct={correct} disagrees with scoreNorm {evidence.score_norm:.2f}"
            )

        stmt = (
            select(MasteryState)
            .where(MasteryState.user_id == user_id, MasteryState.skill_id == skill_id)
            .with_for_update()
        )
        state = (await session.execute(stmt)).scalar_one_or_none()
        if state is None:
            state = self._new_state(user_id, skill_id)
            session.add(state)

        old_p, old_stability = state.p_mastery, state.stability
        if evidence is None:
            new_p, new_stability = compute_update(old_p, old_stability, correct, self.params)
        else:
            new_p, new_stability = compute_weighted_update(old_p, old_stability, evidence, self.params)

        state.p_mastery = new_p
        state.stability = new_stability
        state.attempt_count = (state.attempt_count or 0) + 1
        state.correct_count = (state.correct_count or 0) + (1 if correct else 0)
        state.last_practiced_at = utcnow()
        state.updated_at = utcnow()

        return state, MasteryUpdate(
            user_id=user_id,
            skill_id=skill_id,
            correct=correct,
            old_p_mastery=old_p,
            new_p_mastery=new_p,
            old_stability=old_stability,
            new_stability=new_stability,
            attempt_count=state.attempt_count,
        )

    async def apply_attempt(
        self,
        user_id: str,
        skill_id: UUID,
        correct: bool,
        evidence: AttemptEvidence | None = None,
    ) -> MasteryUpdate:
        """Apply one attempt outcome to the learner's state for a skill."""
        async with self._lock_for(user_id, skill_id):
            try:
                async with self._session_factory() as session:
                    async with session.begin():
                        _, update = await self._apply_in_session(session, user_id, skill_id, correct, evidence)
            except IntegrityError as exc:
                raise ConcurrencyConflictError(
                    f"Mastery state for {user_id}/{skill_id} was created concurrently"
                ) from exc
        logger.debug(
            "Mastery {}/{}: {:.3f} -> {:.3f}",
            user_id,
            skill_id,
            update.old_p_mastery,
            update.new_p_mastery,
        )
        return update

    async def record_attempt(
        self,
        user_id: str,
        skill_id: UUID,
        item_id: str,
        correct: bool,
        evidence: AttemptEvidence | None = None,
    ) -> MasteryUpdate:
        """
        Persist an Attempt and apply it in the same transaction.

        A timed scored attempt also runs the verification gate; the result is
        on MasteryUpdate.gate.
        """
        async with self._lock_for(user_id, skill_id):
            try:
                async with self._session_factory() as session:
                    async with session.begin():
                        attempt = Attempt(
                            user_id=user_id,
                            skill_id=skill_id,
                            item_id=item_id,
                            is_correct=correct,
                            created_at=utcnow(),
                        )
                        if evidence is not None:
                            attempt.score_norm = evidence.score_norm
                            attempt.attempt_format = evidence.format
                            attempt.mode = evidence.mode
                            attempt.difficulty = evidence.difficulty
                            attempt.error_tags = list(evidence.error_tags)
                        session.add(attempt)
                        state, update = await self._apply_in_session(
                            session, user_id, skill_id, correct, evidence
                        )
                        attempt.applied_at = utcnow()
                        if evidence is not None and evidence.is_timed:
                            await session.flush()
                            update.gate = await self._run_gate(session, state)
            except IntegrityError as exc:
                raise ConcurrencyConflictError(
                    f"Mastery state for {user_id}/{skill_id} was created concurrently"
                ) from exc
        return update

    async def _attempts_for(self, session: AsyncSession, user_id: str, skill_id: UUID) -> list[Attempt]:
        rows = await session.execute(
            select(Attempt).where(Attempt.user_id == user_id, Attempt.skill_id == skill_id)
        )
        return list(rows.scalars())

    async def _run_gate(self, session: AsyncSession, state: MasteryState) -> GateCheck:
        attempts = await self._attempts_for(session, state.user_id, state.skill_id)
        gate = check_gate(state.skill_id, state.p_mastery, attempts, self.params)
        if gate.is_verified and not state.is_verified:
            state.is_verified = True
            state.verified_at = utcnow()
            logger.info("Skill {} verified for user {}", state.skill_id, state.user_id)
        return gate

    async def check_gate(self, user_id: str, skill_id: UUID) -> GateCheck:
        """Evaluate the verification gate without recording anything."""
        async with self._session_factory() as session:
            stmt = select(MasteryState).where(
                MasteryState.user_id == user_id, MasteryState.skill_id == skill_id
            )
            state = (await session.execute(stmt)).scalar_one_or_none()
            if state is None:
                raise NotFoundError(f"No mastery state for {user_id}/{skill_id}")
            attempts = await self._attempts_for(session, user_id, skill_id)
        return check_gate(skill_id, state.p_mastery, attempts, self.params)

    async def _load_or_create_states(
        self,
        user_id: str,
        skill_ids: Sequence[UUID],
    ) -> dict[UUID, MasteryState]:
        async with self._session_factory() as session:
            async with session.begin():
                states = await self._load_states(session, user_id, skill_ids)
                for skill_id in skill_ids:
                    if skill_id not in states:
                        state = self._new_state(user_id, skill_id)
                        session.add(state)
                        states[skill_id] = state
        return states

    async def _load_states(
        self,
        session: AsyncSession,
        user_id: str,
        skill_ids: Sequence[UUID],
    ) -> dict[UUID, MasteryState]:
        rows = await session.execute(
            select(MasteryState).where(
                MasteryState.user_id == user_id,
                MasteryState.skill_id.in_(list(skill_ids)),
            )
        )
        return {state.skill_id: state for state in rows.scalars()}

    async def get_or_create_states(
        self,
        user_id: str,
        skill_ids: Sequence[UUID],
    ) -> dict[UUID, MasteryState]:
        """
        Load states for the given skills, creating missing ones at the neutral baseline.

        When a concurrent caller inserts the same rows first, the read is
        retried once against the committed rows.
        """
        try:
            return await self._load_or_create_states(user_id, skill_ids)
        except IntegrityError:
            logger.info("Mastery states for user {} created concurrently; reloading", user_id)
        try:
            return await self._load_or_create_states(user_id, skill_ids)
        except IntegrityError as exc:
            raise ConcurrencyConflictError(
                f"Mastery states for {user_id} keep changing concurrently"
            ) from exc

    async def get_user_mastery(self, user_id: str) -> list[MasteryState]:
        async with self._session_factory() as session:
            rows = await session.execute(
                select(MasteryState)
                .where(MasteryState.user_id == user_id)
                .order_by(MasteryState.p_mastery)
            )
            return list(rows.scalars())

    async def get_weak_skills(self, user_id: str, threshold: float | None = None) -> list[MasteryState]:
        """States below the weak threshold, weakest first."""
        limit = self.weak_threshold if threshold is None else threshold
        return [s for s in await self.get_user_mastery(user_id) if s.p_mastery < limit]
