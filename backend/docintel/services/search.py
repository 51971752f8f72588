"""
Semantic search over a tenant's embedded chunks.

The query is embedded with the same pipeline (and therefore the same model)
used at ingestion time. An explicit document_id is verified under the tenant
first, so a foreign id answers 404 instead of an empty result.
"""

from __future__ import annotations

import logging
from uuid import UUID

from docintel.core.errors import InvalidConfiguration, NotFound, ServiceUnavailable
from docintel.observability.tracing import traced
from docintel.processing.embeddings import EmbeddingPipeline
from docintel.schemas.documents import SearchRequest, SearchResponse, SearchResult
from docintel.store.base import DocumentRepository, EmbeddingStore

logger = logging.getLogger(__name__)


class SemanticSearchService:

    def __init__(self, documents: DocumentRepository, store: EmbeddingStore, embeddings: EmbeddingPipeline) -> None:
        self._documents  = documents
        self._store      = store
        self._embeddings = embeddings

    @traced("search.semantic")
    async def search(self, org_id: UUID, request: SearchRequest) -> SearchResponse:
        query = request.query.strip()
        if request.document_id is not None and await self._documents.get(request.document_id, org_id) is None:
            raise NotFound("Document not found", details={"document_id": str(request.document_id)})

        try:
            vector = await self._embeddings.embed_query(query)
        except InvalidConfiguration:
            raise
        except Exception as exc:
            logger.error("Search embedding failed | org=%s error=%s", org_id, exc)
            raise ServiceUnavailable("The embedding service is temporarily unavailable") from exc

        hits = await self._store.search(
            org_id,
            vector,
            top_k=request.top_k,
            document_id=request.document_id,
            min_similarity=request.min_similarity,
        )
        logger.info("Search | org=%s doc=%s hits=%d top_k=%d", org_id, request.document_id, len(hits), request.top_k)
        return SearchResponse(
            query=query,
            top_k=request.top_k,
            min_similarity=request.min_similarity,
            document_id=request.document_id,
            results=[
                SearchResult(
                    document_id=h.document_id,
                    document_name=h.document_name,
                    chunk_index=h.chunk_index,
                    content=h.content,
                    similarity=h.similarity,
                )
                for h in hits
            ],
            count=len(hits),
        )
