"""
Study plan models.

A StudySession is one skill on one day; it owns four StudyAssets generated by
background jobs in a fixed order (NOTES, CHECKPOINT, PRACTICE_SET, RUBRIC).
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import JSON, Boolean, Date, ForeignKey, Index, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from lexprep.core.states import AssetStatus, AssetType, ExamPhase, SessionStatus

from .base import Base, enum_column, utcnow


class StudySession(Base):
    """One planned study block for a learner, skill and day."""

    __tablename__ = "study_sessions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    skill_id: Mapped[UUID] = mapped_column(
        ForeignKey("micro_skills.id", ondelete="CASCADE"), nullable=False
    )
    study_date: Mapped[date] = mapped_column(Date, nullable=False)
    target_skill_ids: Mapped[list[str]] = mapped_column(JSON, default=list)
    estimated_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    exam_phase: Mapped[ExamPhase] = mapped_column(enum_column(ExamPhase), nullable=False)
    status: Mapped[SessionStatus] = mapped_column(
        enum_column(SessionStatus), nullable=False, default=SessionStatus.QUEUED
    )
    created_at: Mapped[datetime] = mapped_column(default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow)

    assets: Mapped[list[StudyAsset]] = relationship(
        back_populates="session",
        order_by="StudyAsset.step_order",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        UniqueConstraint("user_id", "skill_id", "study_date", name="uq_session_user_skill_day"),
        Index("idx_session_user_day", "user_id", "study_date"),
    )

    def __repr__(self) -> str:
        return f"<StudySession user={self.user_id} skill={self.skill_id} {self.study_date} {self.status.value}>"


class StudyAsset(Base):
    """
    One generated piece of study material.

    content holds the typed asset body (see lexprep.grounding.content) and
    grounding_refs the source ids actually used. A READY asset either has
    grounding refs or was served as the fallback placeholder (used_fallback).
    """

    __tablename__ = "study_assets"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    session_id: Mapped[UUID] = mapped_column(
        ForeignKey("study_sessions.id", ondelete="CASCADE"), nullable=False
    )
    asset_type: Mapped[AssetType] = mapped_column(enum_column(AssetType), nullable=False)
    step_order: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[AssetStatus] = mapped_column(
        enum_column(AssetStatus), nullable=False, default=AssetStatus.PENDING
    )
    content: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    grounding_refs: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    used_fallback: Mapped[bool] = mapped_column(Boolean, default=False)
    generation_error: Mapped[str | None] = mapped_column(Text)
    generation_started_at: Mapped[datetime | None] = mapped_column()
    generation_completed_at: Mapped[datetime | None] = mapped_column()
    created_at: Mapped[datetime] = mapped_column(default=utcnow)

    session: Mapped[StudySession] = relationship(back_populates="assets")

    __table_args__ = (
        UniqueConstraint("session_id", "asset_type", name="uq_asset_session_type"),
        Index("idx_asset_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<StudyAsset {self.asset_type.value} session={self.session_id} {self.status.value}>"
