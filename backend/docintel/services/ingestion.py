"""
Document Ingestion Service

Upload flow:
  1. Validate the file: non-empty, ≤ 50 MB, and a supported type. The type is
     sniffed from magic bytes first, so a renamed executable is not accepted
     because the client said "image/png".
  2. Store the bytes under tenants/<org_id>/documents/... (server-built key).
  3. Insert the document row (status=pending).
  4. Record the intake event.
  5. Enqueue the extraction job.

Security invariants:
  - org_id / user_id always come from the verified token, never the body.
  - Filenames are sanitized before they reach the storage key.

Enqueue failure is non-fatal: the document is stored and stays pending; the
upload still returns 202 with job_id=null.
"""

from __future__ import annotations

import logging
import mimetypes
import re
from typing import Optional
from uuid import UUID

from docintel.core.errors import InvalidRequest, NotFound
from docintel.observability.event_log import EventCategory, EventLevel, EventLog
from docintel.pipeline.orchestrator import PipelineOrchestrator
from docintel.schemas.documents import (
    ALLOWED_CONTENT_TYPES,
    MAX_FILE_SIZE_BYTES,
    DocumentStatus,
    DocumentUploadResponse,
    ErrorResponse,
    ExtractionOptions,
    UploadErrors,
)
from docintel.storage.s3 import ObjectStorage
from docintel.store.base import DocumentRecord, DocumentRepository

logger = logging.getLogger(__name__)


class UploadRejected(InvalidRequest):
    """Carries the structured ErrorResponse body and the HTTP status to send."""

    def __init__(self, response: ErrorResponse, status_code: int = 400) -> None:
        super().__init__(response.message)
        self.response    = response
        self.error_code  = response.error_code
        self.status_code = status_code


# ---------------------------------------------------------------------------
# File type helpers
# ---------------------------------------------------------------------------

# Checked against the first 12 bytes of the upload
_MAGIC_BYTES: dict[bytes, str] = {
    b"%PDF":              "application/pdf",
    b"\x89PNG\r\n\x1a\n": "image/png",
    b"\xff\xd8\xff":      "image/jpeg",
    b"II*\x00":           "image/tiff",
    b"MM\x00*":           "image/tiff",
    b"GIF87a":            "image/gif",
    b"GIF89a":            "image/gif",
}


_SNIFFED_TYPES = frozenset(_MAGIC_BYTES.values()) | {"image/webp"}


def detect_mime_type(filename: str, head: bytes, declared: Optional[str] = None) -> str:
    """
    Magic bytes first, then the extension, then the client's declared type.
    PDF and image types are only ever granted by their magic bytes.

    >>> detect_mime_type("scan.bin", b"%PDF-1.7")
    'application/pdf'
    >>> detect_mime_type("notes.txt", b"hello")
    'text/plain'
    >>> detect_mime_type("cat.png", b"MZ\\x90\\x00")
    'application/octet-stream'
    """
    for magic, mime in _MAGIC_BYTES.items():
        if head.startswith(magic):
            return mime
    if head[:4] == b"RIFF" and head[8:12] == b"WEBP":
        return "image/webp"

    if filename.lower().endswith((".txt", ".md")):
        return "text/plain"

    guessed, _ = mimetypes.guess_type(filename)
    mime = guessed or declared or "application/octet-stream"
    if mime in _SNIFFED_TYPES:
        return "application/octet-stream"
    return mime


def sanitize_filename(filename: str) -> str:
    """Basename only, with characters unsafe in storage keys replaced."""
    basename = filename.replace("\\", "/").rsplit("/", 1)[-1]
    safe = re.sub(r"[^a-zA-Z0-9._\-]", "_", basename).strip(".")
    return safe[:200] or "upload"


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class IngestionService:

    def __init__(
        self,
        documents:    DocumentRepository,
        storage:      ObjectStorage,
        orchestrator: PipelineOrchestrator,
        events:       EventLog,
    ) -> None:
        self._documents    = documents
        self._storage      = storage
        self._orchestrator = orchestrator
        self._events       = events

    async def upload(
        self,
        org_id:       UUID,
        user_id:      Optional[UUID],
        filename:     str,
        content_type: Optional[str],
        data:         bytes,
        options:      Optional[ExtractionOptions] = None,
    ) -> DocumentUploadResponse:
        if not data:
            raise UploadRejected(UploadErrors.missing_file())
        if len(data) > MAX_FILE_SIZE_BYTES:
            raise UploadRejected(UploadErrors.file_too_large(len(data)), status_code=413)

        original_name = (filename or "upload").strip() or "upload"
        mime = detect_mime_type(original_name, data[:12], content_type)
        if mime not in ALLOWED_CONTENT_TYPES:
            raise UploadRejected(UploadErrors.unsupported_file_type(original_name, mime))

        safe_name = sanitize_filename(original_name)
        logger.info(
            "Ingest start | org=%s user=%s file=%s size=%d mime=%s",
            org_id, user_id, safe_name, len(data), mime,
        )

        storage_path = await self._storage.upload(org_id, safe_name, data, mime)
        document = await self._documents.create(DocumentRecord(
            org_id=org_id,
            original_name=original_name,
            mime_type=mime,
            storage_path=storage_path,
            file_size_bytes=len(data),
            uploaded_by=user_id,
        ))
        await self._events.record(
            EventLevel.INFO, EventCategory.INTAKE, "document.uploaded",
            f"Stored {original_name}",
            org_id=org_id, user_id=user_id, document_id=document.id,
            metadata={"mime_type": mime, "size_bytes": len(data), "storage_path": storage_path},
        )

        job_id: Optional[UUID] = None
        try:
            job = await self._orchestrator.enqueue_extraction(document.id, org_id, options)
            job_id = job.id
        except Exception as exc:
            logger.error("Failed to enqueue extraction | doc=%s error=%s", document.id, exc)
            await self._events.record(
                EventLevel.ERROR, EventCategory.INTAKE, "document.queue_failed",
                "Document stored but extraction could not be enqueued",
                org_id=org_id, user_id=user_id, document_id=document.id, error=exc,
            )

        return DocumentUploadResponse(
            document_id=document.id,
            status=DocumentStatus.PENDING,
            job_id=job_id,
            original_name=original_name,
            mime_type=mime,
            size_bytes=len(data),
            created_at=document.created_at,
        )

    async def delete(self, document_id: UUID, org_id: UUID, user_id: Optional[UUID] = None) -> None:
        """Remove the row and its chunks together, then soft-delete the stored bytes."""
        document = await self._documents.get(document_id, org_id)
        if document is None:
            raise NotFound("Document not found", details={"document_id": str(document_id)})

        await self._documents.delete(document_id, org_id)
        try:
            await self._storage.delete(document.storage_path)
        except Exception as exc:
            # The row is gone; an orphaned object is left for the lifecycle rule
            logger.error("Object delete failed | doc=%s path=%s error=%s", document_id, document.storage_path, exc)

        await self._events.record(
            EventLevel.INFO, EventCategory.INTAKE, "document.deleted",
            f"Deleted {document.original_name}",
            org_id=org_id, user_id=user_id, document_id=document_id,
        )
