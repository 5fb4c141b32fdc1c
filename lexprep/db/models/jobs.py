"""Background job table backing the durable queue."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import JSON, Index, Integer, String, Text, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from lexprep.core.states import JobStatus, JobType

from .base import Base, enum_column, utcnow

_ACTIVE_STATUS_CLAUSE = "status IN ('PENDING', 'PROCESSING')"


class BackgroundJob(Base):
    """
    A unit of asynchronous work.

    Lifecycle: PENDING -> PROCESSING -> COMPLETED | FAILED | PENDING (retry).
    PENDING -> CANCELLED and FAILED -> PENDING are admin actions.
    At most one PENDING/PROCESSING row may hold a given idempotency_key.
    """

    __tablename__ = "background_jobs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    job_type: Mapped[JobType] = mapped_column(enum_column(JobType), nullable=False)
    status: Mapped[JobStatus] = mapped_column(
        enum_column(JobStatus), nullable=False, default=JobStatus.PENDING
    )
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    result: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    last_error: Mapped[str | None] = mapped_column(Text)
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False)
    user_id: Mapped[str | None] = mapped_column(String(64))
    locked_by: Mapped[str | None] = mapped_column(String(128))
    scheduled_for: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    started_at: Mapped[datetime | None] = mapped_column()
    completed_at: Mapped[datetime | None] = mapped_column()

    __table_args__ = (
        Index("idx_job_claim", "status", "priority", "scheduled_for"),
        Index("idx_job_created", "created_at"),
        Index(
            "uq_job_active_key",
            "idempotency_key",
            unique=True,
            postgresql_where=text(_ACTIVE_STATUS_CLAUSE),
            sqlite_where=text(_ACTIVE_STATUS_CLAUSE),
        ),
    )

    def __repr__(self) -> str:
        return f"<BackgroundJob {self.job_type.value} {self.status.value} attempts={self.attempts}/{self.max_attempts}>"

    @property
    def can_retry(self) -> bool:
        return self.attempts < self.max_attempts
