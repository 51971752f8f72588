"""
SQLAlchemy ORM Models — Pipeline Jobs

One row per enqueued stage run. The queue broker only carries the job id;
this row is the durable source of truth for state, attempts and progress.

State machine (status column):
    queued    — persisted and dispatched (or waiting for a retry countdown)
    running   — a worker picked it up
    succeeded — stage returned; result holds its statistics
    failed    — non-retryable error, or retry budget exhausted (last_error set)
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import CheckConstraint, DateTime, Index, Integer, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from docintel.models.documents import Base, JSONType, _utcnow


class PipelineJob(Base):
    __tablename__ = "pipeline_jobs"
    __table_args__ = (
        CheckConstraint(
            "status IN ('queued', 'running', 'succeeded', 'failed')",
            name="pipeline_jobs_status_check",
        ),
        CheckConstraint(
            "kind IN ('extraction', 'embedding')",
            name="pipeline_jobs_kind_check",
        ),
        Index("idx_pipeline_jobs_status_updated", "status", "updated_at"),
        Index("idx_pipeline_jobs_document",       "org_id", "document_id"),
    )

    id:          Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    kind:        Mapped[str]       = mapped_column(Text, nullable=False)
    document_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    org_id:      Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    status:       Mapped[str] = mapped_column(Text, nullable=False, default="queued")
    attempts:     Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    progress:     Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    options:    Mapped[dict]           = mapped_column(JSONType, nullable=False, default=dict)
    result:     Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    last_error: Mapped[Optional[str]]  = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )

    def __repr__(self) -> str:
        return (
            f"<PipelineJob id={self.id} kind={self.kind} doc={self.document_id} "
            f"status={self.status} attempts={self.attempts}/{self.max_attempts}>"
        )
