"""
SQLAlchemy persistence backend (PostgreSQL via asyncpg; SQLite via aiosqlite in tests).

Every repository method opens its own short transaction through the shared
async_sessionmaker. Tenant scope is an explicit org_id predicate on every
statement.

Similarity search is a brute-force scan: the tenant's candidate vectors are
loaded (optionally narrowed to one document) and ranked in numpy by
docintel.store.similarity. Document names are joined in the same query.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional, Sequence
from uuid import UUID, uuid4

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docintel.core.errors import NotFound
from docintel.models.chat import ChatSession
from docintel.models.documents import Document, EmbeddingChunk
from docintel.models.jobs import PipelineJob
from docintel.schemas.chat import ChatMessage
from docintel.schemas.documents import DocumentStatus, JobKind, JobStatus
from docintel.store.base import (
    ChatSessionRecord,
    ChatSessionRepository,
    ChunkRecord,
    DocumentRecord,
    DocumentRepository,
    EmbeddingStats,
    EmbeddingStore,
    JobRecord,
    JobRepository,
    NewChunk,
    Repositories,
    ScoredChunk,
    utcnow,
)
from docintel.store.similarity import rank_by_similarity

logger = logging.getLogger(__name__)

SessionFactory = async_sessionmaker[AsyncSession]


# ---------------------------------------------------------------------------
# Row ↔ record mapping
# ---------------------------------------------------------------------------

def _document_record(row: Document) -> DocumentRecord:
    return DocumentRecord(
        id=row.id,
        org_id=row.org_id,
        uploaded_by=row.uploaded_by,
        original_name=row.original_name,
        mime_type=row.mime_type,
        file_size_bytes=row.file_size_bytes,
        storage_path=row.storage_path,
        status=DocumentStatus(row.status),
        ocr_text=row.ocr_text,
        ocr_confidence=row.ocr_confidence,
        extracted_fields=row.extracted_fields,
        processing_error=row.processing_error,
        processed_at=row.processed_at,
        created_at=row.created_at,
    )


def _chunk_record(row: EmbeddingChunk) -> ChunkRecord:
    return ChunkRecord(
        id=row.id,
        document_id=row.document_id,
        org_id=row.org_id,
        chunk_index=row.chunk_index,
        content=row.content,
        vector=list(row.vector),
        created_at=row.created_at,
    )


def _chat_record(row: ChatSession) -> ChatSessionRecord:
    return ChatSessionRecord(
        id=row.id,
        user_id=row.user_id,
        org_id=row.org_id,
        document_id=row.document_id,
        title=row.title,
        messages=[ChatMessage.model_validate(m) for m in (row.messages or [])],
        last_message_at=row.last_message_at,
        created_at=row.created_at,
    )


def _job_record(row: PipelineJob) -> JobRecord:
    return JobRecord(
        id=row.id,
        kind=JobKind(row.kind),
        document_id=row.document_id,
        org_id=row.org_id,
        status=JobStatus(row.status),
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        progress=row.progress,
        options=dict(row.options or {}),
        result=row.result,
        last_error=row.last_error,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _column_value(value: Any) -> Any:
    # str-enums are persisted by value
    return value.value if isinstance(value, (DocumentStatus, JobStatus, JobKind)) else value


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

class SqlDocumentRepository(DocumentRepository):

    def __init__(self, session_factory: SessionFactory) -> None:
        self._sessions = session_factory

    async def create(self, document: DocumentRecord) -> DocumentRecord:
        async with self._sessions() as session, session.begin():
            session.add(
                Document(
                    id=document.id,
                    org_id=document.org_id,
                    uploaded_by=document.uploaded_by,
                    original_name=document.original_name,
                    mime_type=document.mime_type,
                    file_size_bytes=document.file_size_bytes,
                    storage_path=document.storage_path,
                    status=document.status.value,
                    created_at=document.created_at,
                )
            )
        return document

    async def get(self, document_id: UUID, org_id: UUID) -> Optional[DocumentRecord]:
        async with self._sessions() as session:
            row = await session.scalar(
                select(Document).where(Document.id == document_id, Document.org_id == org_id)
            )
            return _document_record(row) if row else None

    async def list_for_org(
        self,
        org_id: UUID,
        status: Optional[DocumentStatus] = None,
        limit:  int = 50,
        offset: int = 0,
    ) -> list[DocumentRecord]:
        stmt = select(Document).where(Document.org_id == org_id)
        if status is not None:
            stmt = stmt.where(Document.status == status.value)
        stmt = stmt.order_by(Document.created_at.desc()).limit(limit).offset(offset)
        async with self._sessions() as session:
            rows = (await session.scalars(stmt)).all()
            return [_document_record(r) for r in rows]

    async def mark_processing(self, document_id: UUID, org_id: UUID) -> bool:
        return await self._update(
            document_id, org_id,
            status=DocumentStatus.PROCESSING.value,
            processing_error=None,
        ) > 0

    async def mark_completed(
        self,
        document_id:      UUID,
        org_id:           UUID,
        *,
        ocr_text:         Optional[str],
        ocr_confidence:   Optional[float],
        extracted_fields: Optional[dict],
        processed_at:     datetime,
    ) -> None:
        updated = await self._update(
            document_id, org_id,
            status=DocumentStatus.COMPLETED.value,
            ocr_text=ocr_text,
            ocr_confidence=ocr_confidence,
            extracted_fields=extracted_fields,
            processing_error=None,
            processed_at=processed_at,
        )
        if not updated:
            raise NotFound("Document not found", details={"document_id": str(document_id)})

    async def mark_failed(self, document_id: UUID, org_id: UUID, error: str) -> None:
        updated = await self._update(
            document_id, org_id,
            status=DocumentStatus.FAILED.value,
            processing_error=error,
        )
        if not updated:
            logger.warning("mark_failed on missing document | doc=%s org=%s", document_id, org_id)

    async def delete(self, document_id: UUID, org_id: UUID) -> bool:
        async with self._sessions() as session, session.begin():
            # Chunks are removed explicitly: SQLite ignores ON DELETE CASCADE
            # unless the foreign_keys pragma is on.
            await session.execute(
                delete(EmbeddingChunk).where(
                    EmbeddingChunk.document_id == document_id,
                    EmbeddingChunk.org_id == org_id,
                )
            )
            result = await session.execute(
                delete(Document).where(Document.id == document_id, Document.org_id == org_id)
            )
            return result.rowcount > 0

    async def _update(self, document_id: UUID, org_id: UUID, **values: Any) -> int:
        async with self._sessions() as session, session.begin():
            result = await session.execute(
                update(Document)
                .where(Document.id == document_id, Document.org_id == org_id)
                .values(**values, updated_at=utcnow())
            )
            return result.rowcount


# ---------------------------------------------------------------------------
# Embedding chunks
# ---------------------------------------------------------------------------

class SqlEmbeddingStore(EmbeddingStore):

    def __init__(self, session_factory: SessionFactory) -> None:
        self._sessions = session_factory

    async def replace_chunks(
        self,
        document_id: UUID,
        org_id:      UUID,
        chunks:      Sequence[NewChunk],
    ) -> int:
        now = utcnow()
        async with self._sessions() as session, session.begin():
            await session.execute(
                delete(EmbeddingChunk).where(
                    EmbeddingChunk.document_id == document_id,
                    EmbeddingChunk.org_id == org_id,
                )
            )
            session.add_all(
                EmbeddingChunk(
                    id=uuid4(),
                    document_id=document_id,
                    org_id=org_id,
                    chunk_index=i,
                    content=c.content,
                    vector=list(c.vector),
                    dimensions=len(c.vector),
                    created_at=now,
                )
                for i, c in enumerate(chunks)
            )
        logger.debug("Chunks replaced | doc=%s org=%s count=%d", document_id, org_id, len(chunks))
        return len(chunks)

    async def search(
        self,
        org_id:         UUID,
        query_vector:   Sequence[float],
        top_k:          int = 5,
        document_id:    Optional[UUID] = None,
        min_similarity: float = 0.0,
    ) -> list[ScoredChunk]:
        stmt = (
            select(
                EmbeddingChunk.document_id,
                Document.original_name,
                EmbeddingChunk.chunk_index,
                EmbeddingChunk.content,
                EmbeddingChunk.vector,
            )
            .join(Document, Document.id == EmbeddingChunk.document_id)
            .where(
                EmbeddingChunk.org_id == org_id,
                EmbeddingChunk.dimensions == len(query_vector),
            )
            .order_by(EmbeddingChunk.document_id, EmbeddingChunk.chunk_index)
        )
        if document_id is not None:
            stmt = stmt.where(EmbeddingChunk.document_id == document_id)

        async with self._sessions() as session:
            rows = (await session.execute(stmt)).all()

        ranked = rank_by_similarity(
            query_vector,
            ((row, row.vector) for row in rows),
            top_k,
            min_similarity,
        )
        return [
            ScoredChunk(
                document_id=row.document_id,
                document_name=row.original_name,
                chunk_index=row.chunk_index,
                content=row.content,
                similarity=score,
            )
            for row, score in ranked
        ]

    async def list_chunks(self, document_id: UUID, org_id: UUID) -> list[ChunkRecord]:
        async with self._sessions() as session:
            rows = (
                await session.scalars(
                    select(EmbeddingChunk)
                    .where(EmbeddingChunk.document_id == document_id, EmbeddingChunk.org_id == org_id)
                    .order_by(EmbeddingChunk.chunk_index)
                )
            ).all()
            return [_chunk_record(r) for r in rows]

    async def get_stats(self, document_id: UUID, org_id: UUID) -> Optional[EmbeddingStats]:
        async with self._sessions() as session:
            lengths = (
                await session.scalars(
                    select(func.length(EmbeddingChunk.content)).where(
                        EmbeddingChunk.document_id == document_id,
                        EmbeddingChunk.org_id == org_id,
                    )
                )
            ).all()
        return EmbeddingStats.from_lengths(list(lengths))

    async def delete_document(self, document_id: UUID, org_id: UUID) -> int:
        async with self._sessions() as session, session.begin():
            result = await session.execute(
                delete(EmbeddingChunk).where(
                    EmbeddingChunk.document_id == document_id,
                    EmbeddingChunk.org_id == org_id,
                )
            )
            return result.rowcount


# ---------------------------------------------------------------------------
# Chat sessions
# ---------------------------------------------------------------------------

class SqlChatSessionRepository(ChatSessionRepository):

    def __init__(self, session_factory: SessionFactory) -> None:
        self._sessions = session_factory

    @staticmethod
    def _owned(chat_id: UUID, user_id: UUID, org_id: UUID):
        return select(ChatSession).where(
            ChatSession.id == chat_id,
            ChatSession.user_id == user_id,
            ChatSession.org_id == org_id,
        )

    async def get(self, chat_id: UUID, user_id: UUID, org_id: UUID) -> Optional[ChatSessionRecord]:
        async with self._sessions() as session:
            row = await session.scalar(self._owned(chat_id, user_id, org_id))
            return _chat_record(row) if row else None

    async def save_turn(
        self,
        session_record: ChatSessionRecord,
        user_msg:       ChatMessage,
        reply_msg:      ChatMessage,
    ) -> ChatSessionRecord:
        turn = [m.model_dump(mode="json") for m in (user_msg, reply_msg)]
        async with self._sessions() as session, session.begin():
            row = await session.scalar(
                self._owned(session_record.id, session_record.user_id, session_record.org_id)
                .with_for_update()
            )
            if row is None:
                row = ChatSession(
                    id=session_record.id,
                    user_id=session_record.user_id,
                    org_id=session_record.org_id,
                    document_id=session_record.document_id,
                    title=session_record.title,
                    messages=[m.model_dump(mode="json") for m in session_record.messages] + turn,
                    last_message_at=reply_msg.timestamp,
                    created_at=session_record.created_at,
                )
                session.add(row)
            else:
                # Reassign rather than mutate so the JSON column is flagged dirty
                row.messages = list(row.messages or []) + turn
                row.last_message_at = reply_msg.timestamp
                if row.title is None and session_record.title:
                    row.title = session_record.title
            await session.flush()
            return _chat_record(row)

    async def list_for_user(
        self,
        user_id:     UUID,
        org_id:      UUID,
        document_id: Optional[UUID] = None,
        limit:       int = 50,
        offset:      int = 0,
    ) -> tuple[list[ChatSessionRecord], int]:
        filters = [ChatSession.user_id == user_id, ChatSession.org_id == org_id]
        if document_id is not None:
            filters.append(ChatSession.document_id == document_id)

        async with self._sessions() as session:
            total = await session.scalar(select(func.count()).select_from(ChatSession).where(*filters))
            rows = (
                await session.scalars(
                    select(ChatSession)
                    .where(*filters)
                    .order_by(ChatSession.last_message_at.desc())
                    .limit(limit)
                    .offset(offset)
                )
            ).all()
            return [_chat_record(r) for r in rows], int(total or 0)

    async def delete(self, chat_id: UUID, user_id: UUID, org_id: UUID) -> bool:
        async with self._sessions() as session, session.begin():
            result = await session.execute(
                delete(ChatSession).where(
                    ChatSession.id == chat_id,
                    ChatSession.user_id == user_id,
                    ChatSession.org_id == org_id,
                )
            )
            return result.rowcount > 0


# ---------------------------------------------------------------------------
# Pipeline jobs
# ---------------------------------------------------------------------------

class SqlJobRepository(JobRepository):

    def __init__(self, session_factory: SessionFactory) -> None:
        self._sessions = session_factory

    async def create(self, job: JobRecord) -> JobRecord:
        async with self._sessions() as session, session.begin():
            session.add(
                PipelineJob(
                    id=job.id,
                    kind=job.kind.value,
                    document_id=job.document_id,
                    org_id=job.org_id,
                    status=job.status.value,
                    attempts=job.attempts,
                    max_attempts=job.max_attempts,
                    progress=job.progress,
                    options=job.options,
                    result=job.result,
                    last_error=job.last_error,
                    created_at=job.created_at,
                    updated_at=job.updated_at,
                )
            )
        return job

    async def get(self, job_id: UUID) -> Optional[JobRecord]:
        async with self._sessions() as session:
            row = await session.get(PipelineJob, job_id)
            return _job_record(row) if row else None

    async def update(self, job_id: UUID, **changes: Any) -> JobRecord:
        values = {k: _column_value(v) for k, v in changes.items()}
        values.setdefault("updated_at", utcnow())
        async with self._sessions() as session, session.begin():
            result = await session.execute(
                update(PipelineJob).where(PipelineJob.id == job_id).values(**values)
            )
            if not result.rowcount:
                raise NotFound("Job not found", details={"job_id": str(job_id)})
            row = await session.get(PipelineJob, job_id, populate_existing=True)
            return _job_record(row)

    async def list_for_document(self, document_id: UUID, org_id: UUID) -> list[JobRecord]:
        async with self._sessions() as session:
            rows = (
                await session.scalars(
                    select(PipelineJob)
                    .where(PipelineJob.document_id == document_id, PipelineJob.org_id == org_id)
                    .order_by(PipelineJob.created_at)
                )
            ).all()
            return [_job_record(r) for r in rows]

    async def list_stale(self, status: JobStatus, older_than: datetime, limit: int = 50) -> list[JobRecord]:
        async with self._sessions() as session:
            rows = (
                await session.scalars(
                    select(PipelineJob)
                    .where(PipelineJob.status == status.value, PipelineJob.updated_at < older_than)
                    .order_by(PipelineJob.updated_at)
                    .limit(limit)
                )
            ).all()
            return [_job_record(r) for r in rows]


class SqlRepositories(Repositories):
    """Repositories bundle whose ping() round-trips the database."""

    def __init__(self, session_factory: SessionFactory) -> None:
        super().__init__(
            documents=SqlDocumentRepository(session_factory),
            embeddings=SqlEmbeddingStore(session_factory),
            chats=SqlChatSessionRepository(session_factory),
            jobs=SqlJobRepository(session_factory),
        )
        self._sessions = session_factory

    async def ping(self) -> bool:
        from sqlalchemy import text

        try:
            async with self._sessions() as session:
                await session.execute(text("SELECT 1"))
            return True
        except Exception as exc:
            logger.error("DB health check failed: %s", exc)
            return False
