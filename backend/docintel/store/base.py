"""
Persistence Ports — Abstract Base

Every concrete store (SQLAlchemy, in-memory) implements these interfaces.
The pipeline stages, the orchestrator and the chat service only speak these
protocols, so backends are swappable without touching call sites.

Tenant isolation contract (enforced by ALL implementations):
  - Every read and write takes org_id and MUST scope to it.
  - A row that exists under another org is indistinguishable from a missing row.
  - There is no method that reads across tenants, except the job scanner,
    which returns job ids only and re-enters through run(job_id).

Chunk replace contract:
  - replace_chunks() swaps a document's whole chunk set in one step. Readers
    see either the previous complete set or the new complete set, never a mix.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Optional, Sequence
from uuid import UUID, uuid4

from docintel.schemas.chat import ChatMessage
from docintel.schemas.documents import DocumentStatus, JobKind, JobStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass
class DocumentRecord:
    """
    One uploaded file.

    Invariants:
      status == COMPLETED  →  processed_at is set
      status == FAILED     →  processing_error is set
    """
    org_id:          UUID
    original_name:   str
    mime_type:       str
    storage_path:    str
    file_size_bytes: int = 0
    id:              UUID = field(default_factory=uuid4)
    uploaded_by:     Optional[UUID] = None
    status:          DocumentStatus = DocumentStatus.PENDING
    ocr_text:         Optional[str]   = None
    ocr_confidence:   Optional[float] = None
    extracted_fields: Optional[dict]  = None
    processing_error: Optional[str]   = None
    processed_at:     Optional[datetime] = None
    created_at:       datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class NewChunk:
    """Input to replace_chunks(): chunk_index is assigned from list position."""
    content: str
    vector:  list[float]


@dataclass(frozen=True)
class ChunkRecord:
    id:          UUID
    document_id: UUID
    org_id:      UUID
    chunk_index: int
    content:     str
    vector:      list[float]
    created_at:  datetime


@dataclass(frozen=True)
class ScoredChunk:
    """One search hit. document_name is copied so callers can cite it directly."""
    document_id:   UUID
    document_name: str
    chunk_index:   int
    content:       str
    similarity:    float


@dataclass(frozen=True)
class EmbeddingStats:
    count:            int
    avg_chunk_length: float
    total_chars:      int

    @classmethod
    def from_lengths(cls, lengths: Sequence[int]) -> Optional["EmbeddingStats"]:
        if not lengths:
            return None
        total = sum(lengths)
        return cls(
            count=len(lengths),
            avg_chunk_length=round(total / len(lengths), 2),
            total_chars=total,
        )


@dataclass
class ChatSessionRecord:
    user_id:         UUID
    org_id:          UUID
    id:              UUID = field(default_factory=uuid4)
    document_id:     Optional[UUID] = None
    title:           Optional[str] = None
    messages:        list[ChatMessage] = field(default_factory=list)
    last_message_at: datetime = field(default_factory=utcnow)
    created_at:      datetime = field(default_factory=utcnow)


@dataclass
class JobRecord:
    kind:         JobKind
    document_id:  UUID
    org_id:       UUID
    id:           UUID = field(default_factory=uuid4)
    status:       JobStatus = JobStatus.QUEUED
    attempts:     int = 0
    max_attempts: int = 3
    progress:     int = 0
    options:      dict[str, Any] = field(default_factory=dict)
    result:       Optional[dict[str, Any]] = None
    last_error:   Optional[str] = None
    created_at:   datetime = field(default_factory=utcnow)
    updated_at:   datetime = field(default_factory=utcnow)

    def evolve(self, **changes: Any) -> "JobRecord":
        return replace(self, **changes)


# ---------------------------------------------------------------------------
# Abstract interfaces
# ---------------------------------------------------------------------------

class DocumentRepository(ABC):

    @abstractmethod
    async def create(self, document: DocumentRecord) -> DocumentRecord:
        """Insert a new PENDING document."""

    @abstractmethod
    async def get(self, document_id: UUID, org_id: UUID) -> Optional[DocumentRecord]:
        """Fetch scoped by (id, org_id); None when not visible to the tenant."""

    @abstractmethod
    async def list_for_org(
        self,
        org_id: UUID,
        status: Optional[DocumentStatus] = None,
        limit:  int = 50,
        offset: int = 0,
    ) -> list[DocumentRecord]:
        ...

    @abstractmethod
    async def mark_processing(self, document_id: UUID, org_id: UUID) -> bool:
        """Set status=PROCESSING. Returns False when no row matched."""

    @abstractmethod
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
        ...

    @abstractmethod
    async def mark_failed(self, document_id: UUID, org_id: UUID, error: str) -> None:
        ...

    @abstractmethod
    async def delete(self, document_id: UUID, org_id: UUID) -> bool:
        """Delete the document AND all of its chunks. Returns False when no row matched."""


class EmbeddingStore(ABC):

    @abstractmethod
    async def replace_chunks(
        self,
        document_id: UUID,
        org_id:      UUID,
        chunks:      Sequence[NewChunk],
    ) -> int:
        """Atomically replace the document's chunk set. Returns the new count."""

    @abstractmethod
    async def search(
        self,
        org_id:         UUID,
        query_vector:   Sequence[float],
        top_k:          int = 5,
        document_id:    Optional[UUID] = None,
        min_similarity: float = 0.0,
    ) -> list[ScoredChunk]:
        """Cosine-ranked hits within the tenant, best first, at most top_k."""

    @abstractmethod
    async def list_chunks(self, document_id: UUID, org_id: UUID) -> list[ChunkRecord]:
        """Chunks ordered by chunk_index."""

    @abstractmethod
    async def get_stats(self, document_id: UUID, org_id: UUID) -> Optional[EmbeddingStats]:
        """None when the document has no chunks."""

    @abstractmethod
    async def delete_document(self, document_id: UUID, org_id: UUID) -> int:
        ...


class ChatSessionRepository(ABC):

    @abstractmethod
    async def get(self, chat_id: UUID, user_id: UUID, org_id: UUID) -> Optional[ChatSessionRecord]:
        ...

    @abstractmethod
    async def save_turn(
        self,
        session:   ChatSessionRecord,
        user_msg:  ChatMessage,
        reply_msg: ChatMessage,
    ) -> ChatSessionRecord:
        """
        Persist one complete turn. Creates the session row when it does not
        exist yet; otherwise appends both messages in one write.
        """

    @abstractmethod
    async def list_for_user(
        self,
        user_id:     UUID,
        org_id:      UUID,
        document_id: Optional[UUID] = None,
        limit:       int = 50,
        offset:      int = 0,
    ) -> tuple[list[ChatSessionRecord], int]:
        """Page ordered by last_message_at desc, plus the total count."""

    @abstractmethod
    async def delete(self, chat_id: UUID, user_id: UUID, org_id: UUID) -> bool:
        ...


class JobRepository(ABC):

    @abstractmethod
    async def create(self, job: JobRecord) -> JobRecord:
        ...

    @abstractmethod
    async def get(self, job_id: UUID) -> Optional[JobRecord]:
        """Unscoped lookup: workers only receive the job id."""

    @abstractmethod
    async def update(self, job_id: UUID, **changes: Any) -> JobRecord:
        """Apply column changes, bump updated_at, return the new record."""

    @abstractmethod
    async def list_for_document(self, document_id: UUID, org_id: UUID) -> list[JobRecord]:
        ...

    @abstractmethod
    async def list_stale(self, status: JobStatus, older_than: datetime, limit: int = 50) -> list[JobRecord]:
        """Jobs in `status` whose updated_at is before `older_than`."""


@dataclass
class Repositories:
    """Bundle handed to the services; one instance per backend."""
    documents:  DocumentRepository
    embeddings: EmbeddingStore
    chats:      ChatSessionRepository
    jobs:       JobRepository

    async def ping(self) -> bool:
        return True
