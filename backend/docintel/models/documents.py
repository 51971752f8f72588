"""
SQLAlchemy ORM Models — Documents, Embedding Chunks & Audit Logs

SQLAlchemy 2.x mapped classes with full async support. Column types are
portable: JSON columns become JSONB on PostgreSQL and plain JSON elsewhere, so
the same models run against SQLite in the test suite.

Tenant scope: every table carries org_id. Repositories in docintel.store.sql
add the org_id predicate to every statement; nothing is read by id alone.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# JSONB on PostgreSQL, JSON on everything else
JSONType = JSON().with_variant(JSONB(), "postgresql")


# ---------------------------------------------------------------------------
# Declarative base: shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Document model: documents
# ---------------------------------------------------------------------------

class Document(Base):
    """
    One uploaded file and the output of its Extraction stage.

    State machine (status column):
        pending    — bytes stored, extraction not yet started
        processing — extraction stage running
        completed  — extraction persisted (processed_at set)
        failed     — extraction raised (processing_error set)

    Only the extraction stage mutates the pipeline columns. Deleting a
    document cascades to its embedding_chunks rows.
    """

    __tablename__ = "documents"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="documents_status_check",
        ),
        Index("idx_documents_org_id",     "org_id"),
        Index("idx_documents_org_status", "org_id", "status"),
    )

    id:     Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    org_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    uploaded_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    original_name:   Mapped[str] = mapped_column(Text, nullable=False)
    mime_type:       Mapped[str] = mapped_column(Text, nullable=False)
    file_size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    storage_path: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Opaque object-storage path returned by the storage collaborator",
    )

    # Extraction state machine
    status: Mapped[str] = mapped_column(Text, nullable=False, default="pending")
    ocr_text:       Mapped[Optional[str]]   = mapped_column(Text, nullable=True)
    ocr_confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    extracted_fields: Mapped[Optional[dict]] = mapped_column(
        JSONType,
        nullable=True,
        comment="Typed structured fields, tagged by document_type",
    )
    processing_error: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Populated only when status='failed'",
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )

    chunks: Mapped[list["EmbeddingChunk"]] = relationship(
        back_populates="document",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return (
            f"<Document id={self.id} org={self.org_id} "
            f"status={self.status} file={self.original_name!r}>"
        )


# ---------------------------------------------------------------------------
# EmbeddingChunk model: embedding_chunks
# ---------------------------------------------------------------------------

class EmbeddingChunk(Base):
    """
    One retrievable window of a document's extracted text.

    chunk_index is contiguous from 0 per document; the whole set is replaced in
    a single transaction by the embedding stage. org_id is denormalized from
    the owning document for tenant-filtered scans.
    """

    __tablename__ = "embedding_chunks"
    __table_args__ = (
        UniqueConstraint("document_id", "chunk_index", name="uq_embedding_chunks_position"),
        Index("idx_embedding_chunks_org_doc", "org_id", "document_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    document_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    org_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    chunk_index: Mapped[int]         = mapped_column(Integer, nullable=False)
    content:     Mapped[str]         = mapped_column(Text, nullable=False)
    vector:      Mapped[list[float]] = mapped_column(JSONType, nullable=False)
    dimensions:  Mapped[int]         = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    document: Mapped[Document] = relationship(back_populates="chunks")


# ---------------------------------------------------------------------------
# AuditLog model: audit_logs
# ---------------------------------------------------------------------------

class AuditLog(Base):
    """
    Append-only audit trail.

    Written by the ingestion service for uploads and deletions, and by
    AuditTrailEventLog for every pipeline / chat decision event.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("idx_audit_logs_org_id",     "org_id"),
        Index("idx_audit_logs_created_at", "created_at"),
    )

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )

    org_id:  Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    level:    Mapped[str] = mapped_column(Text, nullable=False, default="info")
    category: Mapped[str] = mapped_column(Text, nullable=False, default="system")
    action: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="e.g. document.upload, extraction.completed, chat.turn",
    )
    resource: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="e.g. document:<uuid>",
    )
    message: Mapped[str] = mapped_column(Text, nullable=False, default="")

    doc_metadata: Mapped[dict] = mapped_column(
        "metadata",
        JSONType,
        nullable=False,
        default=dict,
    )

    success:    Mapped[bool]     = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    def __repr__(self) -> str:
        return (
            f"<AuditLog id={self.id} org={self.org_id} "
            f"action={self.action!r} success={self.success}>"
        )
