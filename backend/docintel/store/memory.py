"""
In-memory persistence backend.

Used by the test suite and by single-process deployments (STORE_BACKEND=memory).
Everything lives in plain dicts guarded by one asyncio.Lock per repository.
Records are copied on the way in and on the way out so callers can never
mutate stored state behind the repository's back.

Chunk sets are held as tuples and swapped wholesale, which gives the
replace_chunks() all-or-nothing contract for free.
"""

from __future__ import annotations

import asyncio
import logging
from copy import deepcopy
from dataclasses import replace
from datetime import datetime
from typing import Any, Optional, Sequence
from uuid import UUID, uuid4

from docintel.core.errors import NotFound
from docintel.schemas.chat import ChatMessage
from docintel.schemas.documents import DocumentStatus, JobStatus
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

_Key = tuple[UUID, UUID]   # (org_id, entity_id)


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

class InMemoryDocumentRepository(DocumentRepository):

    def __init__(self) -> None:
        self._rows: dict[_Key, DocumentRecord] = {}
        self._lock = asyncio.Lock()
        self._embeddings: Optional["InMemoryEmbeddingStore"] = None

    def attach_embeddings(self, store: "InMemoryEmbeddingStore") -> None:
        """Wire the chunk store so delete() can cascade."""
        self._embeddings = store

    async def create(self, document: DocumentRecord) -> DocumentRecord:
        async with self._lock:
            self._rows[(document.org_id, document.id)] = deepcopy(document)
        return deepcopy(document)

    async def get(self, document_id: UUID, org_id: UUID) -> Optional[DocumentRecord]:
        row = self._rows.get((org_id, document_id))
        return deepcopy(row) if row else None

    def name_of(self, document_id: UUID, org_id: UUID) -> str:
        row = self._rows.get((org_id, document_id))
        return row.original_name if row else ""

    async def list_for_org(
        self,
        org_id: UUID,
        status: Optional[DocumentStatus] = None,
        limit:  int = 50,
        offset: int = 0,
    ) -> list[DocumentRecord]:
        rows = [
            r for (org, _), r in self._rows.items()
            if org == org_id and (status is None or r.status == status)
        ]
        rows.sort(key=lambda r: r.created_at, reverse=True)
        return [deepcopy(r) for r in rows[offset:offset + limit]]

    async def mark_processing(self, document_id: UUID, org_id: UUID) -> bool:
        async with self._lock:
            row = self._rows.get((org_id, document_id))
            if row is None:
                return False
            row.status = DocumentStatus.PROCESSING
            row.processing_error = None
            return True

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
        async with self._lock:
            row = self._require(document_id, org_id)
            row.status           = DocumentStatus.COMPLETED
            row.ocr_text         = ocr_text
            row.ocr_confidence   = ocr_confidence
            row.extracted_fields = deepcopy(extracted_fields)
            row.processing_error = None
            row.processed_at     = processed_at

    async def mark_failed(self, document_id: UUID, org_id: UUID, error: str) -> None:
        async with self._lock:
            row = self._rows.get((org_id, document_id))
            if row is None:
                logger.warning("mark_failed on missing document | doc=%s org=%s", document_id, org_id)
                return
            row.status = DocumentStatus.FAILED
            row.processing_error = error

    async def delete(self, document_id: UUID, org_id: UUID) -> bool:
        async with self._lock:
            removed = self._rows.pop((org_id, document_id), None)
        if removed is None:
            return False
        if self._embeddings is not None:
            await self._embeddings.delete_document(document_id, org_id)
        return True

    def _require(self, document_id: UUID, org_id: UUID) -> DocumentRecord:
        row = self._rows.get((org_id, document_id))
        if row is None:
            raise NotFound("Document not found", details={"document_id": str(document_id)})
        return row


# ---------------------------------------------------------------------------
# Embedding chunks
# ---------------------------------------------------------------------------

class InMemoryEmbeddingStore(EmbeddingStore):

    def __init__(self, documents: InMemoryDocumentRepository) -> None:
        self._documents = documents
        self._chunks: dict[_Key, tuple[ChunkRecord, ...]] = {}
        self._lock = asyncio.Lock()

    async def replace_chunks(
        self,
        document_id: UUID,
        org_id:      UUID,
        chunks:      Sequence[NewChunk],
    ) -> int:
        now = utcnow()
        records = tuple(
            ChunkRecord(
                id=uuid4(),
                document_id=document_id,
                org_id=org_id,
                chunk_index=i,
                content=c.content,
                vector=list(c.vector),
                created_at=now,
            )
            for i, c in enumerate(chunks)
        )
        async with self._lock:
            if records:
                self._chunks[(org_id, document_id)] = records
            else:
                self._chunks.pop((org_id, document_id), None)
        return len(records)

    async def search(
        self,
        org_id:         UUID,
        query_vector:   Sequence[float],
        top_k:          int = 5,
        document_id:    Optional[UUID] = None,
        min_similarity: float = 0.0,
    ) -> list[ScoredChunk]:
        candidates = [
            (chunk, chunk.vector)
            for (org, doc), chunk_set in self._chunks.items()
            if org == org_id and (document_id is None or doc == document_id)
            for chunk in chunk_set
        ]
        ranked = rank_by_similarity(query_vector, candidates, top_k, min_similarity)
        return [
            ScoredChunk(
                document_id=chunk.document_id,
                document_name=self._documents.name_of(chunk.document_id, org_id),
                chunk_index=chunk.chunk_index,
                content=chunk.content,
                similarity=score,
            )
            for chunk, score in ranked
        ]

    async def list_chunks(self, document_id: UUID, org_id: UUID) -> list[ChunkRecord]:
        return list(self._chunks.get((org_id, document_id), ()))

    async def get_stats(self, document_id: UUID, org_id: UUID) -> Optional[EmbeddingStats]:
        chunk_set = self._chunks.get((org_id, document_id), ())
        return EmbeddingStats.from_lengths([len(c.content) for c in chunk_set])

    async def delete_document(self, document_id: UUID, org_id: UUID) -> int:
        async with self._lock:
            removed = self._chunks.pop((org_id, document_id), ())
        return len(removed)


# ---------------------------------------------------------------------------
# Chat sessions
# ---------------------------------------------------------------------------

class InMemoryChatSessionRepository(ChatSessionRepository):

    def __init__(self) -> None:
        self._rows: dict[UUID, ChatSessionRecord] = {}
        self._lock = asyncio.Lock()

    async def get(self, chat_id: UUID, user_id: UUID, org_id: UUID) -> Optional[ChatSessionRecord]:
        row = self._rows.get(chat_id)
        if row is None or row.user_id != user_id or row.org_id != org_id:
            return None
        return deepcopy(row)

    async def save_turn(
        self,
        session:   ChatSessionRecord,
        user_msg:  ChatMessage,
        reply_msg: ChatMessage,
    ) -> ChatSessionRecord:
        async with self._lock:
            existing = self._rows.get(session.id)
            if existing is None:
                stored = replace(deepcopy(session), messages=list(session.messages))
                self._rows[session.id] = stored
            else:
                stored = existing
                if stored.title is None and session.title:
                    stored.title = session.title
            stored.messages.extend([user_msg, reply_msg])
            stored.last_message_at = reply_msg.timestamp
            return deepcopy(stored)

    async def list_for_user(
        self,
        user_id:     UUID,
        org_id:      UUID,
        document_id: Optional[UUID] = None,
        limit:       int = 50,
        offset:      int = 0,
    ) -> tuple[list[ChatSessionRecord], int]:
        rows = [
            r for r in self._rows.values()
            if r.user_id == user_id and r.org_id == org_id
            and (document_id is None or r.document_id == document_id)
        ]
        rows.sort(key=lambda r: r.last_message_at, reverse=True)
        return [deepcopy(r) for r in rows[offset:offset + limit]], len(rows)

    async def delete(self, chat_id: UUID, user_id: UUID, org_id: UUID) -> bool:
        async with self._lock:
            row = self._rows.get(chat_id)
            if row is None or row.user_id != user_id or row.org_id != org_id:
                return False
            del self._rows[chat_id]
            return True


# ---------------------------------------------------------------------------
# Pipeline jobs
# ---------------------------------------------------------------------------

class InMemoryJobRepository(JobRepository):

    def __init__(self) -> None:
        self._rows: dict[UUID, JobRecord] = {}
        self._lock = asyncio.Lock()

    async def create(self, job: JobRecord) -> JobRecord:
        async with self._lock:
            self._rows[job.id] = deepcopy(job)
        return deepcopy(job)

    async def get(self, job_id: UUID) -> Optional[JobRecord]:
        row = self._rows.get(job_id)
        return deepcopy(row) if row else None

    async def update(self, job_id: UUID, **changes: Any) -> JobRecord:
        async with self._lock:
            row = self._rows.get(job_id)
            if row is None:
                raise NotFound("Job not found", details={"job_id": str(job_id)})
            changes.setdefault("updated_at", utcnow())
            updated = row.evolve(**changes)
            self._rows[job_id] = updated
            return deepcopy(updated)

    async def list_for_document(self, document_id: UUID, org_id: UUID) -> list[JobRecord]:
        rows = [
            r for r in self._rows.values()
            if r.document_id == document_id and r.org_id == org_id
        ]
        rows.sort(key=lambda r: r.created_at)
        return [deepcopy(r) for r in rows]

    async def list_stale(self, status: JobStatus, older_than: datetime, limit: int = 50) -> list[JobRecord]:
        rows = [
            r for r in self._rows.values()
            if r.status == status and r.updated_at < older_than
        ]
        rows.sort(key=lambda r: r.updated_at)
        return [deepcopy(r) for r in rows[:limit]]


def build_memory_repositories() -> Repositories:
    documents  = InMemoryDocumentRepository()
    embeddings = InMemoryEmbeddingStore(documents)
    documents.attach_embeddings(embeddings)
    return Repositories(
        documents=documents,
        embeddings=embeddings,
        chats=InMemoryChatSessionRepository(),
        jobs=InMemoryJobRepository(),
    )
