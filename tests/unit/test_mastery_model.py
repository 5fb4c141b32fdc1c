"""
Tests for the Mastery Model's pure functions.

Covers:
- Baseline seeding from self-assessment buckets
- Stability-damped updates, plain and weighted by scored evidence
- The timed-pass verification gate
- Exam phase boundaries
"""

import random
from datetime import datetime, timedelta
from uuid import uuid4

import pytest
from pydantic import ValidationError as PydanticValidationError

from lexprep.core.errors import ValidationError
from lexprep.core.states import ExamPhase
from lexprep.db.models import Attempt
from lexprep.learning.mastery_model import (
    AttemptEvidence,
    MasteryParams,
    SelfAssessment,
    baseline_p_mastery,
    bucket_for_unit,
    check_gate,
    classify_phase,
    compute_update,
    compute_weighted_update,
    confidence_multiplier,
    top_error_tags,
)


class TestBaseline:
    """Onboarding self-assessment -> initial p_mastery."""

    def test_strong_unit_at_confidence_six(self):
        assert baseline_p_mastery("strong", 6) == pytest.approx(0.52)

    def test_weak_unit_at_confidence_six(self):
        assert baseline_p_mastery("weak", 6) == pytest.approx(0.104)

    def test_neutral_at_midpoint_confidence(self):
        assert baseline_p_mastery("neutral", 5) == pytest.approx(0.25)

    @pytest.mark.parametrize("bucket", ["strong", "neutral", "weak"])
    @pytest.mark.parametrize("confidence", [0, 3, 7, 10])
    def test_baseline_stays_in_clamp_range(self, bucket, confidence):
        assert 0.05 <= baseline_p_mastery(bucket, confidence) <= 0.70

    def test_confidence_multiplier_range(self):
        assert confidence_multiplier(0) == pytest.approx(0.8)
        assert confidence_multiplier(10) == pytest.approx(1.2)
        with pytest.raises(ValidationError):
            confidence_multiplier(11)


class TestSelfAssessment:
    def test_weak_wins_when_unit_listed_twice(self):
        assessment = SelfAssessment(strong_skill_units=["atp-100"], weak_skill_units=["atp-100"])
        assert bucket_for_unit("atp-100", assessment) == "weak"
        assert bucket_for_unit("atp-105", assessment) == "neutral"

    def test_accepts_camel_case_input(self):
        assessment = SelfAssessment.model_validate(
            {"strongSkillUnits": ["atp-100"], "weakSkillUnits": [], "confidenceLevel": 6}
        )
        assert assessment.strong_skill_units == ["atp-100"]
        assert assessment.confidence_level == 6

    def test_rejects_out_of_range_confidence(self):
        with pytest.raises(PydanticValidationError):
            SelfAssessment(confidence_level=11)


class TestComputeUpdate:
    params = MasteryParams()

    def test_correct_answer_moves_up(self):
        p, stability = compute_update(0.25, 1.0, True, self.params)
        assert p == pytest.approx(0.3625)
        assert stability == pytest.approx(1.1)

    def test_incorrect_answer_moves_down(self):
        p, stability = compute_update(0.25, 1.0, False, self.params)
        assert p == pytest.approx(0.2125)
        assert stability == pytest.approx(0.85)

    def test_higher_stability_moves_less(self):
        loose, _ = compute_update(0.5, 0.3, True, self.params)
        stable, _ = compute_update(0.5, 2.0, True, self.params)
        assert loose - 0.5 > stable - 0.5 > 0

    def test_any_sequence_stays_bounded(self):
        rng = random.Random(42)
        p, stability = 0.25, self.params.initial_stability
        for _ in range(500):
            p, stability = compute_update(p, stability, rng.random() < 0.5, self.params)
            assert 0.0 <= p <= 1.0
            assert self.params.min_stability <= stability <= self.params.max_stability


class TestWeightedUpdate:
    params = MasteryParams()

    def test_mcq_practice_moves_less_than_plain(self):
        evidence = AttemptEvidence(score_norm=0.8)
        p, stability = compute_weighted_update(0.25, 1.0, evidence, self.params)
        assert evidence.weight == pytest.approx(0.75)
        assert p == pytest.approx(0.334375)
        assert stability == pytest.approx(1.1)

    def test_gain_is_clamped(self):
        evidence = AttemptEvidence(score_norm=0.9, format="oral", mode="timed", difficulty=5)
        p, _ = compute_weighted_update(0.25, 1.0, evidence, self.params)
        assert p == pytest.approx(0.35)

    def test_loss_is_clamped(self):
        evidence = AttemptEvidence(score_norm=0.3, format="drafting", mode="exam_sim", difficulty=4)
        p, stability = compute_weighted_update(0.5, 1.0, evidence, self.params)
        assert p == pytest.approx(0.38)
        assert stability == pytest.approx(0.85)

    def test_coverage_weight_scales_the_step(self):
        evidence = AttemptEvidence(score_norm=0.6, coverage_weight=0.5)
        p, _ = compute_weighted_update(0.25, 1.0, evidence, self.params)
        assert evidence.passed
        assert p == pytest.approx(0.2921875)

    def test_evidence_accepts_camel_case(self):
        evidence = AttemptEvidence.model_validate({"scoreNorm": 0.7, "mode": "timed", "errorTags": ["hearsay"]})
        assert evidence.is_timed
        assert evidence.error_tags == ["hearsay"]

    def test_rejects_unknown_format(self):
        with pytest.raises(PydanticValidationError):
            AttemptEvidence(score_norm=0.7, format="essay")


T0 = datetime(2026, 3, 1, 9, 0)


def attempt(hours, score=0.8, mode="timed", tags=()):
    return Attempt(
        user_id="u1",
        skill_id=uuid4(),
        item_id=f"item-{hours}",
        is_correct=score >= 0.6,
        score_norm=score,
        mode=mode,
        error_tags=list(tags),
        created_at=T0 + timedelta(hours=hours),
    )


class TestGate:
    params = MasteryParams()

    def test_two_passes_a_day_apart_verify(self):
        history = [attempt(-5, score=0.4, mode="practice", tags=["hearsay"]), attempt(0), attempt(25)]

        gate = check_gate(uuid4(), 0.9, history, self.params)

        assert gate.is_verified
        assert gate.timed_pass_count == 2
        assert gate.hours_between_passes == pytest.approx(25.0)
        assert gate.error_tags_cleared
        assert gate.failure_reasons == []

    def test_passes_too_close_together(self):
        gate = check_gate(uuid4(), 0.9, [attempt(0), attempt(3)], self.params)

        assert not gate.is_verified
        assert gate.failure_reasons == ["Only 3.0 hours between passes (need 24)"]

    def test_a_later_pass_can_confirm(self):
        gate = check_gate(uuid4(), 0.9, [attempt(30), attempt(0), attempt(3)], self.params)

        assert gate.is_verified
        assert gate.hours_between_passes == pytest.approx(30.0)

    def test_repeated_top_error_tag_blocks(self):
        history = [
            attempt(-10, score=0.3, mode="practice", tags=["hearsay", "limitation"]),
            attempt(0, tags=["hearsay"]),
            attempt(26, tags=["hearsay"]),
        ]

        gate = check_gate(uuid4(), 0.9, history, self.params)

        assert not gate.is_verified
        assert not gate.error_tags_cleared
        assert "hearsay" in gate.failure_reasons[0]

    def test_low_mastery_and_practice_passes(self):
        history = [attempt(0), attempt(30, mode="practice")]

        gate = check_gate(uuid4(), 0.8, history, self.params)

        assert not gate.is_verified
        assert gate.timed_pass_count == 1
        assert gate.failure_reasons == ["p_mastery 80.0% below required 85%", "Only 1/2 timed passes"]

    def test_top_error_tags_by_frequency(self):
        history = [attempt(0, tags=["a", "b"]), attempt(1, tags=["b", "c"]), attempt(2, tags=["b", "d", "c"])]
        assert top_error_tags(history) == ["b", "c", "a"]


class TestClassifyPhase:
    @pytest.mark.parametrize(
        "days,phase",
        [
            (365, ExamPhase.DISTANT),
            (60, ExamPhase.DISTANT),
            (59, ExamPhase.APPROACHING),
            (8, ExamPhase.APPROACHING),
            (7, ExamPhase.CRITICAL),
            (0, ExamPhase.CRITICAL),
        ],
    )
    def test_boundaries(self, days, phase):
        assert classify_phase(days) == phase

    def test_negative_days_rejected(self):
        with pytest.raises(ValidationError):
            classify_phase(-1)
