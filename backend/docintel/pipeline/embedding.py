"""
Embedding Stage
═══════════════

    embed(document_id, org_id) -> EmbeddingResult

  1. Fetch the document under (id, org_id); it must have ocr_text
     (PreconditionFailed otherwise: run extraction first).
  2. Normalize + chunk the text (chunk_size / overlap from settings).
  3. Embed every chunk through the batched EmbeddingPipeline. Any batch that
     exhausts its retries fails the whole run.
  4. replace_chunks(): the previous chunk set is swapped for the new one in a
     single write, so readers see the old complete set or the new complete set.

The delete of the old set happens inside step 4 rather than before step 3:
a run that fails while embedding leaves the previous chunks untouched.
Re-running on unchanged text always yields identical chunk boundaries.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional
from uuid import UUID

from docintel.core.errors import NotFound, PreconditionFailed
from docintel.observability.event_log import EventCategory, EventLevel, EventLog
from docintel.observability.tracing import traced
from docintel.processing.chunking import chunk_text, validate_chunking
from docintel.processing.embeddings import EmbeddingPipeline
from docintel.processing.text import normalize_text
from docintel.store.base import DocumentRepository, EmbeddingStore, NewChunk

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], Awaitable[None]]


@dataclass
class EmbeddingResult:
    document_id:      UUID
    chunk_count:      int
    total_chars:      int
    avg_chunk_length: float
    dimensions:       int
    model:            str
    elapsed_ms:       float

    def to_dict(self) -> dict[str, Any]:
        return {
            "document_id":      str(self.document_id),
            "chunk_count":      self.chunk_count,
            "total_chars":      self.total_chars,
            "avg_chunk_length": self.avg_chunk_length,
            "dimensions":       self.dimensions,
            "model":            self.model,
            "elapsed_ms":       round(self.elapsed_ms, 1),
        }


class EmbeddingStage:

    def __init__(
        self,
        documents:     DocumentRepository,
        store:         EmbeddingStore,
        pipeline:      EmbeddingPipeline,
        events:        EventLog,
        *,
        chunk_size:    int = 500,
        chunk_overlap: int = 50,
    ) -> None:
        validate_chunking(chunk_size, chunk_overlap)
        self._documents     = documents
        self._store         = store
        self._pipeline      = pipeline
        self._events        = events
        self._chunk_size    = chunk_size
        self._chunk_overlap = chunk_overlap

    @traced("pipeline.embedding")
    async def embed(
        self,
        document_id: UUID,
        org_id:      UUID,
        progress:    Optional[ProgressCallback] = None,
    ) -> EmbeddingResult:
        t0 = time.monotonic()

        document = await self._documents.get(document_id, org_id)
        if document is None:
            raise NotFound("Document not found", details={"document_id": str(document_id)})
        if document.ocr_text is None:
            raise PreconditionFailed(
                "Document has no extracted text; run extraction first",
                details={"document_id": str(document_id), "status": document.status.value},
            )
        await self._report(progress, 10)

        chunks = chunk_text(normalize_text(document.ocr_text), self._chunk_size, self._chunk_overlap)
        logger.info(
            "Embedding start | doc=%s org=%s chunks=%d chunk_size=%d overlap=%d",
            document_id, org_id, len(chunks), self._chunk_size, self._chunk_overlap,
        )
        await self._report(progress, 20)

        batch = await self._pipeline.embed_texts(chunks)
        await self._report(progress, 80)

        count = await self._store.replace_chunks(
            document_id,
            org_id,
            [NewChunk(content=c, vector=v) for c, v in zip(chunks, batch.vectors)],
        )
        await self._report(progress, 100)

        total_chars = sum(len(c) for c in chunks)
        result = EmbeddingResult(
            document_id=document_id,
            chunk_count=count,
            total_chars=total_chars,
            avg_chunk_length=round(total_chars / count, 2) if count else 0.0,
            dimensions=batch.dimensions,
            model=self._pipeline.model_name,
            elapsed_ms=(time.monotonic() - t0) * 1000,
        )
        logger.info(
            "Embedding done | doc=%s chunks=%d chars=%d dims=%d elapsed_ms=%.0f",
            document_id, count, total_chars, result.dimensions, result.elapsed_ms,
        )
        await self._events.record(
            EventLevel.INFO, EventCategory.EMBEDDING, "embedding.completed",
            f"Stored {count} chunks",
            org_id=org_id, document_id=document_id, duration_ms=result.elapsed_ms,
            metadata={"chunk_count": count, "total_chars": total_chars, "retries": batch.retries},
        )
        return result

    @staticmethod
    async def _report(progress: Optional[ProgressCallback], value: int) -> None:
        if progress is None:
            return
        try:
            await progress(value)
        except Exception as exc:
            logger.warning("Progress report failed | progress=%d error=%s", value, exc)
