"""
Document API Router

  POST   /api/v1/documents                    upload + enqueue extraction      → 202
  GET    /api/v1/documents/{id}               status and extraction results
  DELETE /api/v1/documents/{id}               document + chunks, object soft-deleted → 204
  POST   /api/v1/documents/{id}/extract       enqueue extraction               → 202 job
  POST   /api/v1/documents/{id}/embed         enqueue embedding (force flag)   → 202 job
  GET    /api/v1/documents/{id}/embeddings    chunk statistics, null when none
  POST   /api/v1/documents/search             semantic search within the tenant

org_id always comes from the verified token. A document id belonging to
another tenant answers 404, exactly like an id that does not exist.
"""

from __future__ import annotations

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, File, Form, Response, UploadFile, status

from docintel.api.v1.jobs import to_job_response
from docintel.auth.dependencies import CurrentIdentity, Documents, Ingestion, Orchestrator, Search
from docintel.core.errors import EmbeddingsExist, NotFound, PreconditionFailed
from docintel.schemas.documents import (
    MAX_FILE_SIZE_BYTES,
    DocumentResponse,
    DocumentUploadResponse,
    EmbeddingStatsResponse,
    EmbedRequest,
    ErrorResponse,
    ExtractionOptions,
    JobResponse,
    SearchRequest,
    SearchResponse,
)
from docintel.schemas.extraction import DocumentType
from docintel.store.base import DocumentRecord

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/documents", tags=["Documents"])


def _to_response(doc: DocumentRecord) -> DocumentResponse:
    return DocumentResponse(
        document_id=doc.id,
        original_name=doc.original_name,
        mime_type=doc.mime_type,
        size_bytes=doc.file_size_bytes,
        status=doc.status,
        ocr_text_length=len(doc.ocr_text or ""),
        ocr_confidence=doc.ocr_confidence,
        extracted_fields=doc.extracted_fields,
        processing_error=doc.processing_error,
        processed_at=doc.processed_at,
        created_at=doc.created_at,
    )


async def _require_document(documents, document_id: UUID, org_id: UUID) -> DocumentRecord:
    doc = await documents.get(document_id, org_id)
    if doc is None:
        raise NotFound("Document not found", details={"document_id": str(document_id)})
    return doc


# ---------------------------------------------------------------------------
# Upload
# ---------------------------------------------------------------------------

@router.post(
    "",
    response_model=DocumentUploadResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Upload a document for extraction",
    description=(
        "Accepts PDF, PNG, JPEG, TIFF, WEBP, GIF or plain text up to "
        f"{MAX_FILE_SIZE_BYTES // (1024 * 1024)} MB. Returns 202 immediately; "
        "poll GET /jobs/{job_id} for progress."
    ),
    responses={
        400: {"model": ErrorResponse, "description": "Missing file or unsupported type"},
        401: {"model": ErrorResponse, "description": "Missing or invalid bearer token"},
        413: {"model": ErrorResponse, "description": "File exceeds the size limit"},
    },
)
async def upload_document(
    identity:                  CurrentIdentity,
    ingestion:                 Ingestion,
    file:                      UploadFile = File(..., description="Document file"),
    perform_ocr:               bool = Form(True),
    perform_vision_extraction: bool = Form(False),
    language:                  str  = Form("eng", min_length=2, max_length=32),
    document_type:             str  = Form("invoice", description="Unknown types fall back to invoice"),
) -> DocumentUploadResponse:
    data = await file.read()
    options = ExtractionOptions(
        perform_ocr=perform_ocr,
        perform_vision_extraction=perform_vision_extraction,
        language=language,
        document_type=DocumentType.parse(document_type),
    )
    return await ingestion.upload(
        identity.org_id,
        identity.user_id,
        file.filename or "upload",
        file.content_type,
        data,
        options,
    )


# ---------------------------------------------------------------------------
# Search (declared before /{document_id} routes)
# ---------------------------------------------------------------------------

@router.post(
    "/search",
    response_model=SearchResponse,
    summary="Semantic search over the tenant's embedded chunks",
    responses={404: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
async def search_documents(body: SearchRequest, identity: CurrentIdentity, search: Search) -> SearchResponse:
    return await search.search(identity.org_id, body)


# ---------------------------------------------------------------------------
# Read / delete
# ---------------------------------------------------------------------------

@router.get(
    "/{document_id}",
    response_model=DocumentResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_document(document_id: UUID, identity: CurrentIdentity, documents: Documents) -> DocumentResponse:
    return _to_response(await _require_document(documents, document_id, identity.org_id))


@router.delete(
    "/{document_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}},
)
async def delete_document(document_id: UUID, identity: CurrentIdentity, ingestion: Ingestion) -> Response:
    await ingestion.delete(document_id, identity.org_id, identity.user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ---------------------------------------------------------------------------
# Pipeline triggers
# ---------------------------------------------------------------------------

@router.post(
    "/{document_id}/extract",
    response_model=JobResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Enqueue (re-)extraction",
    responses={404: {"model": ErrorResponse}},
)
async def extract_document(
    document_id:  UUID,
    identity:     CurrentIdentity,
    documents:    Documents,
    orchestrator: Orchestrator,
    options:      Optional[ExtractionOptions] = None,
) -> JobResponse:
    await _require_document(documents, document_id, identity.org_id)
    job = await orchestrator.enqueue_extraction(document_id, identity.org_id, options)
    return to_job_response(job)


@router.post(
    "/{document_id}/embed",
    response_model=JobResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Enqueue embedding",
    description="Rejected with 409 EMBEDDINGS_EXIST when chunks already exist, unless force=true.",
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def embed_document(
    document_id:  UUID,
    identity:     CurrentIdentity,
    documents:    Documents,
    orchestrator: Orchestrator,
    body:         Optional[EmbedRequest] = None,
) -> JobResponse:
    body = body or EmbedRequest()
    doc = await _require_document(documents, document_id, identity.org_id)
    if not doc.ocr_text:
        raise PreconditionFailed(
            "Document has no extracted text; run extraction first",
            details={"document_id": str(document_id), "status": doc.status.value},
        )
    stats = await orchestrator.get_embedding_stats(document_id, identity.org_id)
    if stats is not None and not body.force:
        raise EmbeddingsExist(
            "Embeddings already exist for this document; pass force=true to replace them",
            details={"document_id": str(document_id), "count": stats.count},
        )
    job = await orchestrator.enqueue_embedding(document_id, identity.org_id)
    return to_job_response(job)


@router.get(
    "/{document_id}/embeddings",
    response_model=Optional[EmbeddingStatsResponse],
    summary="Chunk statistics; null when the document has no chunks",
    responses={404: {"model": ErrorResponse}},
)
async def get_embedding_stats(
    document_id:  UUID,
    identity:     CurrentIdentity,
    orchestrator: Orchestrator,
) -> Optional[EmbeddingStatsResponse]:
    stats = await orchestrator.get_embedding_stats(document_id, identity.org_id)
    if stats is None:
        return None
    return EmbeddingStatsResponse(
        document_id=document_id,
        count=stats.count,
        avg_chunk_length=stats.avg_chunk_length,
        total_chars=stats.total_chars,
    )
