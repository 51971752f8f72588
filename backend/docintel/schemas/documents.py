"""
Document Pipeline — Pydantic Request/Response Schemas

Covers:
  - Upload intake (POST /api/v1/documents)
  - Stage triggers (extract / embed) and the job status they return
  - Embedding statistics and semantic search
  - The uniform error envelope used by every 4xx/5xx response

Design decisions:
  - document_id and job_id are always server-generated UUIDs.
  - org_id is never accepted from the client; it comes from the verified token.
  - All timestamps are timezone-aware UTC datetimes.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from docintel.schemas.extraction import DocumentType


# ---------------------------------------------------------------------------
# Allowed MIME types: enforced before touching object storage
# ---------------------------------------------------------------------------

ALLOWED_CONTENT_TYPES: frozenset[str] = frozenset(
    {
        "application/pdf",
        "image/png",
        "image/jpeg",
        "image/tiff",
        "image/webp",
        "image/gif",
        "text/plain",
    }
)

MAX_FILE_SIZE_BYTES: int = 50 * 1024 * 1024  # 50 MB


# ---------------------------------------------------------------------------
# State machines
# ---------------------------------------------------------------------------

class DocumentStatus(str, Enum):
    """
    Maps to documents.status.
    Transitions: pending → processing → completed | failed
    """
    PENDING    = "pending"
    PROCESSING = "processing"
    COMPLETED  = "completed"
    FAILED     = "failed"


class JobKind(str, Enum):
    EXTRACTION = "extraction"
    EMBEDDING  = "embedding"


class JobStatus(str, Enum):
    """
    Maps to pipeline_jobs.status.
    Transitions: queued → running → succeeded | failed  (running → queued on retry)
    """
    QUEUED    = "queued"
    RUNNING   = "running"
    SUCCEEDED = "succeeded"
    FAILED    = "failed"


# ---------------------------------------------------------------------------
# Stage options
# ---------------------------------------------------------------------------

class ExtractionOptions(BaseModel):
    """Per-job switches for the extraction stage."""
    perform_ocr:               bool = True
    perform_vision_extraction: bool = False
    language:                  str  = Field("eng", min_length=2, max_length=32)
    document_type:             DocumentType = DocumentType.INVOICE


class EmbedRequest(BaseModel):
    force: bool = Field(
        False,
        description="Replace existing embeddings. Without it, a document that already has chunks is rejected.",
    )


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------

class DocumentUploadResponse(BaseModel):
    """HTTP 202 — bytes are stored; extraction runs asynchronously."""
    document_id:   UUID
    status:        DocumentStatus = DocumentStatus.PENDING
    job_id:        Optional[UUID] = Field(None, description="Extraction job; null when enqueue failed and the scanner will retry")
    original_name: str
    mime_type:     str
    size_bytes:    int
    created_at:    datetime


class DocumentResponse(BaseModel):
    document_id:      UUID
    original_name:    str
    mime_type:        str
    size_bytes:       int
    status:           DocumentStatus
    ocr_text_length:  int = 0
    ocr_confidence:   Optional[float] = None
    extracted_fields: Optional[dict[str, Any]] = None
    processing_error: Optional[str] = None
    processed_at:     Optional[datetime] = None
    created_at:       datetime


class JobResponse(BaseModel):
    """Polled by clients to surface live progress (0–100)."""
    job_id:       UUID
    kind:         JobKind
    document_id:  UUID
    status:       JobStatus
    attempts:     int
    max_attempts: int
    progress:     int = Field(0, ge=0, le=100)
    last_error:   Optional[str] = None
    result:       Optional[dict[str, Any]] = None
    created_at:   datetime
    updated_at:   datetime


class EmbeddingStatsResponse(BaseModel):
    document_id:      UUID
    count:            int
    avg_chunk_length: float
    total_chars:      int


# ---------------------------------------------------------------------------
# Semantic search
# ---------------------------------------------------------------------------

class SearchRequest(BaseModel):
    query:          str            = Field(..., min_length=1, max_length=2_000)
    top_k:          int            = Field(5, ge=1, le=20)
    document_id:    Optional[UUID] = None
    min_similarity: float          = Field(0.0, ge=0.0, le=1.0)


class SearchResult(BaseModel):
    document_id:   UUID
    document_name: str
    chunk_index:   int
    content:       str
    similarity:    float


class SearchResponse(BaseModel):
    query:          str
    top_k:          int
    min_similarity: float
    document_id:    Optional[UUID] = None
    results:        list[SearchResult]
    count:          int


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single structured error — may appear in a list."""
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str         = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope for all 4xx/5xx responses.
    Clients should check `error_code` for programmatic handling.
    """
    error_code: str               = Field(..., description="Stable machine-readable code")
    message:    str               = Field(..., description="Human-readable summary")
    details:    list[ErrorDetail] = Field(default_factory=list)
    request_id: str | None        = Field(None, description="Trace ID for log correlation")


class UploadErrors:
    """Factories for the intake error cases (keeps route handlers thin)."""

    @staticmethod
    def unsupported_file_type(filename: str, detected_type: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="UNSUPPORTED_FILE_TYPE",
            message=f"File type '{detected_type}' is not supported.",
            details=[
                ErrorDetail(
                    field="file",
                    message=f"'{filename}' has type '{detected_type}'. Allowed: PDF, images, plain text.",
                    code="UNSUPPORTED_FILE_TYPE",
                )
            ],
        )

    @staticmethod
    def file_too_large(size_bytes: int) -> ErrorResponse:
        max_mb = MAX_FILE_SIZE_BYTES // (1024 * 1024)
        return ErrorResponse(
            error_code="FILE_TOO_LARGE",
            message=f"Uploaded file exceeds the {max_mb} MB limit.",
            details=[
                ErrorDetail(
                    field="file",
                    message=f"Received {size_bytes:,} bytes; limit is {MAX_FILE_SIZE_BYTES:,} bytes.",
                    code="FILE_TOO_LARGE",
                )
            ],
        )

    @staticmethod
    def missing_file() -> ErrorResponse:
        return ErrorResponse(
            error_code="MISSING_FILE",
            message="No file content was provided in the request.",
            details=[ErrorDetail(field="file", message="The 'file' field is empty.", code="MISSING_FILE")],
        )
