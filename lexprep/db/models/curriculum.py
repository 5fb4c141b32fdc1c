"""
Curriculum models.

Seeded from the ATP course outline; the core only reads them.
- Micro-skills and their exam weight
- Outline topics mapped to skills
- Lecture transcript chunks mapped to skills (only approved mappings ground content)
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import Boolean, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, utcnow


class Skill(Base):
    """A micro-skill: the unit the mastery model and the planner work on."""

    __tablename__ = "micro_skills"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    code: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    unit_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    exam_weight: Mapped[float] = mapped_column(Float, default=1.0)
    description: Mapped[str | None] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)

    def __repr__(self) -> str:
        return f"<Skill {self.code} unit={self.unit_id} weight={self.exam_weight}>"


class OutlineTopic(Base):
    """A node of the official course outline."""

    __tablename__ = "outline_topics"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    unit_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    topic_number: Mapped[str | None] = mapped_column(String(32))
    title: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    learning_outcomes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)

    def __repr__(self) -> str:
        return f"<OutlineTopic {self.topic_number or ''} {self.title[:40]}>"

    @property
    def grounding_text(self) -> str:
        return self.description or self.learning_outcomes or self.title


class SkillOutlineMap(Base):
    __tablename__ = "skill_outline_map"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    skill_id: Mapped[UUID] = mapped_column(
        ForeignKey("micro_skills.id", ondelete="CASCADE"), nullable=False
    )
    topic_id: Mapped[UUID] = mapped_column(
        ForeignKey("outline_topics.id", ondelete="CASCADE"), nullable=False
    )
    coverage_strength: Mapped[float] = mapped_column(Float, default=1.0)

    __table_args__ = (
        UniqueConstraint("skill_id", "topic_id", name="uq_skill_outline"),
        Index("idx_skill_outline_skill", "skill_id"),
    )


class LectureChunk(Base):
    """A slice of a lecture transcript."""

    __tablename__ = "lecture_chunks"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    lecture_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    lecture_title: Mapped[str | None] = mapped_column(Text)
    chunk_index: Mapped[int] = mapped_column(Integer, default=0)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    start_seconds: Mapped[int | None] = mapped_column(Integer)
    end_seconds: Mapped[int | None] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)

    def __repr__(self) -> str:
        return f"<LectureChunk lecture={self.lecture_id} #{self.chunk_index}>"


class SkillChunkMap(Base):
    __tablename__ = "skill_chunk_map"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    skill_id: Mapped[UUID] = mapped_column(
        ForeignKey("micro_skills.id", ondelete="CASCADE"), nullable=False
    )
    chunk_id: Mapped[UUID] = mapped_column(
        ForeignKey("lecture_chunks.id", ondelete="CASCADE"), nullable=False
    )
    confidence: Mapped[float] = mapped_column(Float, default=0.0)
    is_approved: Mapped[bool] = mapped_column(Boolean, default=False)

    __table_args__ = (
        UniqueConstraint("skill_id", "chunk_id", name="uq_skill_chunk"),
        Index("idx_skill_chunk_approved", "skill_id", "is_approved"),
    )
