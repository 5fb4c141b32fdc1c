"""Tests for status enums and their transition functions."""

import pytest

from lexprep.core.errors import IllegalTransitionError
from lexprep.core.states import (
    AssetStatus,
    AssetType,
    JobStatus,
    SessionStatus,
    transition_asset,
    transition_job,
    transition_session,
)


class TestJobTransitions:
    """The job lifecycle, including admin moves."""

    @pytest.mark.parametrize(
        "current,target",
        [
            (JobStatus.PENDING, JobStatus.PROCESSING),
            (JobStatus.PENDING, JobStatus.CANCELLED),
            (JobStatus.PROCESSING, JobStatus.COMPLETED),
            (JobStatus.PROCESSING, JobStatus.FAILED),
            (JobStatus.PROCESSING, JobStatus.PENDING),
            (JobStatus.FAILED, JobStatus.PENDING),
        ],
    )
    def test_legal_moves(self, current, target):
        assert transition_job(current, target) == target

    @pytest.mark.parametrize(
        "current,target",
        [
            (JobStatus.PROCESSING, JobStatus.CANCELLED),
            (JobStatus.COMPLETED, JobStatus.PENDING),
            (JobStatus.CANCELLED, JobStatus.PENDING),
            (JobStatus.PENDING, JobStatus.COMPLETED),
        ],
    )
    def test_illegal_moves_raise(self, current, target):
        with pytest.raises(IllegalTransitionError):
            transition_job(current, target)

    def test_accepts_raw_strings(self):
        assert transition_job("PENDING", "PROCESSING") == JobStatus.PROCESSING

    def test_terminal_and_active_sets(self):
        assert JobStatus.COMPLETED.is_terminal
        assert JobStatus.CANCELLED.is_terminal
        assert not JobStatus.PENDING.is_terminal
        assert JobStatus.active() == (JobStatus.PENDING, JobStatus.PROCESSING)


class TestSessionAndAssetTransitions:
    def test_session_walks_forward_only(self):
        status = SessionStatus.QUEUED
        for target in (SessionStatus.READY, SessionStatus.ACTIVE, SessionStatus.COMPLETED):
            status = transition_session(status, target)
        assert status == SessionStatus.COMPLETED

        with pytest.raises(IllegalTransitionError):
            transition_session(SessionStatus.QUEUED, SessionStatus.ACTIVE)

    def test_failed_asset_can_regenerate(self):
        assert transition_asset(AssetStatus.FAILED, AssetStatus.GENERATING) == AssetStatus.GENERATING

    def test_ready_asset_is_final(self):
        with pytest.raises(IllegalTransitionError):
            transition_asset(AssetStatus.READY, AssetStatus.GENERATING)


class TestAssetOrder:
    def test_step_order_follows_session_order(self):
        assert [a.step_order for a in AssetType.in_session_order()] == [0, 1, 2, 3]
        assert AssetType.NOTES.step_order < AssetType.RUBRIC.step_order
