"""
Learner state models.

- MasteryState: per (user, skill) knowledge estimate, written only by the mastery model
- Attempt: immutable record of one answered item, optionally with scored evidence
- ExamProfile: exam date and daily budget that drive planning
"""

from __future__ import annotations

from datetime import date, datetime
from uuid import UUID, uuid4

from sqlalchemy import JSON, Boolean, Date, Float, ForeignKey, Index, Integer, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, utcnow


class MasteryState(Base):
    """
    Knowledge state for one learner on one micro-skill.

    p_mastery is the estimated probability the learner has mastered the skill.
    stability scales how far a single attempt can move it.
    """

    __tablename__ = "mastery_states"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    skill_id: Mapped[UUID] = mapped_column(
        ForeignKey("micro_skills.id", ondelete="CASCADE"), nullable=False
    )
    p_mastery: Mapped[float] = mapped_column(Float, nullable=False, default=0.25)
    stability: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    attempt_count: Mapped[int] = mapped_column(Integer, default=0)
    correct_count: Mapped[int] = mapped_column(Integer, default=0)
    last_practiced_at: Mapped[datetime | None] = mapped_column()
    # Set once the timed-pass gate holds; never cleared by later attempts
    is_verified: Mapped[bool] = mapped_column(Boolean, default=False)
    verified_at: Mapped[datetime | None] = mapped_column()
    created_at: Mapped[datetime] = mapped_column(default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "skill_id", name="uq_mastery_user_skill"),
        Index("idx_mastery_user_p", "user_id", "p_mastery"),
    )

    def __repr__(self) -> str:
        return f"<MasteryState user={self.user_id} skill={self.skill_id} p={self.p_mastery:.3f}>"

    @property
    def accuracy(self) -> float:
        if not self.attempt_count:
            return 0.0
        return self.correct_count / self.attempt_count


class Attempt(Base):
    """One answered item. Never updated except to stamp applied_at."""

    __tablename__ = "attempts"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    skill_id: Mapped[UUID] = mapped_column(
        ForeignKey("micro_skills.id", ondelete="CASCADE"), nullable=False
    )
    item_id: Mapped[str] = mapped_column(String(128), nullable=False)
    is_correct: Mapped[bool] = mapped_column(Boolean, nullable=False)
    # Scored evidence; null for plain right/wrong answers
    score_norm: Mapped[float | None] = mapped_column(Float)
    attempt_format: Mapped[str | None] = mapped_column(String(16))
    mode: Mapped[str | None] = mapped_column(String(16))
    difficulty: Mapped[int | None] = mapped_column(Integer)
    error_tags: Mapped[list[str]] = mapped_column(JSON, default=list)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)
    applied_at: Mapped[datetime | None] = mapped_column()

    __table_args__ = (Index("idx_attempt_user_skill", "user_id", "skill_id"),)

    def __repr__(self) -> str:
        return f"<Attempt user={self.user_id} item={self.item_id} correct={self.is_correct}>"


class ExamProfile(Base):
    __tablename__ = "user_exam_profiles"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    exam_date: Mapped[date | None] = mapped_column(Date)
    daily_minutes: Mapped[int | None] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow)

    def days_to_exam(self, today: date) -> int | None:
        if self.exam_date is None:
            return None
        return max(0, (self.exam_date - today).days)
