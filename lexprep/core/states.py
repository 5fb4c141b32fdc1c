"""
Closed status enumerations and their transition tables.

Each entity has exactly one transition function. Callers never assign a status
directly; they ask for the next one and get IllegalTransitionError back when
the move is not in the table.
"""

from __future__ import annotations

from enum import Enum

from .errors import IllegalTransitionError


class JobStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)

    @classmethod
    def active(cls) -> tuple[JobStatus, ...]:
        """Statuses that hold an idempotency key."""
        return (cls.PENDING, cls.PROCESSING)


class JobType(str, Enum):
    PRECOMPUTE_TODAY = "PRECOMPUTE_TODAY"
    GENERATE_SESSION_ASSET = "GENERATE_SESSION_ASSET"
    RETRIEVE_AUTHORITIES = "RETRIEVE_AUTHORITIES"
    RESOLVE_MISSING_AUTHORITIES = "RESOLVE_MISSING_AUTHORITIES"


class SessionStatus(str, Enum):
    QUEUED = "QUEUED"
    READY = "READY"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"


class AssetStatus(str, Enum):
    PENDING = "PENDING"
    GENERATING = "GENERATING"
    READY = "READY"
    FAILED = "FAILED"


class AssetType(str, Enum):
    NOTES = "NOTES"
    CHECKPOINT = "CHECKPOINT"
    PRACTICE_SET = "PRACTICE_SET"
    RUBRIC = "RUBRIC"

    @classmethod
    def in_session_order(cls) -> list[AssetType]:
        return [cls.NOTES, cls.CHECKPOINT, cls.PRACTICE_SET, cls.RUBRIC]

    @property
    def step_order(self) -> int:
        return AssetType.in_session_order().index(self)


class ExamPhase(str, Enum):
    DISTANT = "distant"
    APPROACHING = "approaching"
    CRITICAL = "critical"


class SourceType(str, Enum):
    OUTLINE_TOPIC = "OUTLINE_TOPIC"
    LECTURE_CHUNK = "LECTURE_CHUNK"
    AUTHORITY = "AUTHORITY"


class AuthorityTier(str, Enum):
    A = "A"
    B = "B"
    C = "C"


class AuthorityType(str, Enum):
    CASE = "CASE"
    STATUTE = "STATUTE"
    REGULATION = "REGULATION"
    ARTICLE = "ARTICLE"
    TEXTBOOK = "TEXTBOOK"
    OTHER = "OTHER"


class MissingAuthorityTag(str, Enum):
    MISSING_AUTHORITY = "MISSING_AUTHORITY"
    MISSING_TRANSCRIPT_SUPPORT = "MISSING_TRANSCRIPT_SUPPORT"
    LOW_CONFIDENCE_SOURCE = "LOW_CONFIDENCE_SOURCE"
    AUTHORITY_UNAVAILABLE = "AUTHORITY_UNAVAILABLE"
    VALIDATION_FAILED = "VALIDATION_FAILED"


# ========================================
# Transition tables
# ========================================

JOB_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING, JobStatus.CANCELLED}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.PENDING}),
    JobStatus.FAILED: frozenset({JobStatus.PENDING}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}

SESSION_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.QUEUED: frozenset({SessionStatus.READY}),
    SessionStatus.READY: frozenset({SessionStatus.ACTIVE}),
    SessionStatus.ACTIVE: frozenset({SessionStatus.COMPLETED}),
    SessionStatus.COMPLETED: frozenset(),
}

ASSET_TRANSITIONS: dict[AssetStatus, frozenset[AssetStatus]] = {
    AssetStatus.PENDING: frozenset({AssetStatus.GENERATING, AssetStatus.FAILED}),
    AssetStatus.GENERATING: frozenset({AssetStatus.READY, AssetStatus.FAILED}),
    # A failed asset is regenerated when its job is retried.
    AssetStatus.FAILED: frozenset({AssetStatus.GENERATING}),
    AssetStatus.READY: frozenset(),
}


def _transition(entity: str, table: dict, current: Enum, target: Enum) -> Enum:
    if target not in table[current]:
        raise IllegalTransitionError(
            f"{entity} cannot move from {current.value} to {target.value}"
        )
    return target


def transition_job(current: JobStatus, target: JobStatus) -> JobStatus:
    """Validate a job status change and return the new status."""
    return _transition("Job", JOB_TRANSITIONS, JobStatus(current), JobStatus(target))


def transition_session(current: SessionStatus, target: SessionStatus) -> SessionStatus:
    """Validate a study session status change and return the new status."""
    return _transition(
        "Session", SESSION_TRANSITIONS, SessionStatus(current), SessionStatus(target)
    )


def transition_asset(current: AssetStatus, target: AssetStatus) -> AssetStatus:
    """Validate a study asset status change and return the new status."""
    return _transition("Asset", ASSET_TRANSITIONS, AssetStatus(current), AssetStatus(target))
