"""
Grounding models.

- AuthorityRecord / AuthorityPassage: vetted legal sources and their quotable text
- EvidenceSpan: links an asserted claim to the source that backs it
- MissingAuthorityLog: claims that could not be grounded, kept for follow-up
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import JSON, Boolean, Float, ForeignKey, Index, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from lexprep.core.states import AuthorityTier, AuthorityType, MissingAuthorityTag, SourceType

from .base import Base, enum_column, utcnow


class AuthorityRecord(Base):
    """A legal authority (case, statute, article) from an allowlisted domain."""

    __tablename__ = "authority_records"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    citation: Mapped[str | None] = mapped_column(Text)
    authority_type: Mapped[AuthorityType] = mapped_column(
        enum_column(AuthorityType), nullable=False, default=AuthorityType.OTHER
    )
    source_url: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    domain: Mapped[str] = mapped_column(String(255), nullable=False)
    tier: Mapped[AuthorityTier] = mapped_column(enum_column(AuthorityTier), nullable=False)
    license_tag: Mapped[str | None] = mapped_column(String(64))
    jurisdiction: Mapped[str | None] = mapped_column(String(64))
    unit_ids: Mapped[list[str]] = mapped_column(JSON, default=list)
    skill_ids: Mapped[list[str]] = mapped_column(JSON, default=list)
    is_verified: Mapped[bool] = mapped_column(Boolean, default=False)
    fetched_at: Mapped[datetime] = mapped_column(default=utcnow)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)

    passages: Mapped[list[AuthorityPassage]] = relationship(
        back_populates="authority",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    __table_args__ = (Index("idx_authority_tier_verified", "tier", "is_verified"),)

    def __repr__(self) -> str:
        return f"<AuthorityRecord {self.citation or self.title[:40]} tier={self.tier.value}>"

    @property
    def verified_passages(self) -> list[AuthorityPassage]:
        return [p for p in self.passages if p.is_verified]


class AuthorityPassage(Base):
    __tablename__ = "authority_passages"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    authority_id: Mapped[UUID] = mapped_column(
        ForeignKey("authority_records.id", ondelete="CASCADE"), nullable=False, index=True
    )
    text: Mapped[str] = mapped_column(Text, nullable=False)
    # {"section": "4(2)", "paragraph_start": 12, "page": 3}
    locator: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    is_verified: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)

    authority: Mapped[AuthorityRecord] = relationship(back_populates="passages")


class EvidenceSpan(Base):
    """Evidence backing one asserted claim of a generated target."""

    __tablename__ = "evidence_spans"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    target_type: Mapped[str] = mapped_column(String(32), nullable=False)
    target_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    source_type: Mapped[SourceType] = mapped_column(enum_column(SourceType), nullable=False)
    source_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    passage_id: Mapped[UUID | None] = mapped_column(Uuid)
    claim_text: Mapped[str] = mapped_column(Text, nullable=False)
    quoted_text: Mapped[str | None] = mapped_column(Text)
    confidence_score: Mapped[float] = mapped_column(Float, default=1.0)
    is_verified: Mapped[bool] = mapped_column(Boolean, default=True)
    verbatim_allowed: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)

    __table_args__ = (Index("idx_evidence_target", "target_type", "target_id"),)


class MissingAuthorityLog(Base):
    """A claim the pipeline refused to assert. Open until resolved_at is set."""

    __tablename__ = "missing_authority_log"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    claim_text: Mapped[str] = mapped_column(Text, nullable=False)
    requested_skill_ids: Mapped[list[str]] = mapped_column(JSON, default=list)
    search_query: Mapped[str | None] = mapped_column(Text)
    search_results: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    error_tag: Mapped[MissingAuthorityTag] = mapped_column(
        enum_column(MissingAuthorityTag), nullable=False
    )
    session_id: Mapped[UUID | None] = mapped_column(Uuid)
    asset_id: Mapped[UUID | None] = mapped_column(Uuid)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)
    resolved_at: Mapped[datetime | None] = mapped_column()
    resolved_by: Mapped[str | None] = mapped_column(String(128))
    resolution_note: Mapped[str | None] = mapped_column(Text)

    __table_args__ = (Index("idx_missing_authority_open", "resolved_at", "error_tag"),)

    def __repr__(self) -> str:
        return f"<MissingAuthorityLog {self.error_tag.value} {self.claim_text[:40]}>"

    @property
    def is_open(self) -> bool:
        return self.resolved_at is None
