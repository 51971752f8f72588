"""
Extraction Stage
════════════════

    extract(document_id, org_id, options) -> ExtractionResult

Steps and progress checkpoints:

    10  status → processing, document re-fetched under (id, org_id)
    20  raw bytes downloaded
    30  OCR started            (images / PDFs with perform_ocr)
    60  OCR finished or skipped
    70  vision started         (images, perform_vision_extraction, raw text > 50 chars)
    90  sanitized result persisted, status → completed
   100  embedding enqueued (only when text survived sanitizing)

Failure policy:
  • Missing org_id                    → InvalidConfiguration, nothing touched
  • OCR / vision failure              → PartialExtractionFailure warning, stage continues
  • Anything else before persisting   → status → failed (processing_error set), re-raised
  • Embedding enqueue failure         → logged; the document stays completed

text/plain uploads skip OCR: the decoded bytes are the extracted text.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional
from uuid import UUID

from docintel.core.errors import (
    InvalidConfiguration,
    NotFound,
    PartialExtractionFailure,
    with_timeout,
)
from docintel.observability.event_log import EventCategory, EventLevel, EventLog
from docintel.observability.tracing import traced
from docintel.processing.ocr import OCREngine, supports_ocr
from docintel.processing.text import decode_plain_text, sanitize_extracted_text
from docintel.processing.vision import StructuredExtractor
from docintel.schemas.documents import ExtractionOptions
from docintel.schemas.extraction import fields_to_json
from docintel.storage.s3 import ObjectStorage, tenant_prefix_matches
from docintel.store.base import DocumentRepository, utcnow

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], Awaitable[None]]
EnqueueEmbedding = Callable[[UUID, UUID], Awaitable[Any]]

PLAIN_TEXT_CONFIDENCE = 1.0


@dataclass
class ExtractionResult:
    document_id:         UUID
    ocr_text_length:     int
    ocr_confidence:      Optional[float]
    has_structured_data: bool
    embedding_queued:    bool
    warnings:            list[PartialExtractionFailure] = field(default_factory=list)
    elapsed_ms:          float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "document_id":         str(self.document_id),
            "ocr_text_length":     self.ocr_text_length,
            "ocr_confidence":      self.ocr_confidence,
            "has_structured_data": self.has_structured_data,
            "embedding_queued":    self.embedding_queued,
            "warnings":            [{"step": w.step, "message": w.message} for w in self.warnings],
            "elapsed_ms":          round(self.elapsed_ms, 1),
        }


class ExtractionStage:

    def __init__(
        self,
        documents:             DocumentRepository,
        storage:               ObjectStorage,
        ocr:                   OCREngine,
        events:                EventLog,
        vision:                Optional[StructuredExtractor] = None,
        *,
        download_timeout:      float = 60.0,
        ocr_timeout:           float = 120.0,
        vision_timeout:        float = 60.0,
        vision_min_text_chars: int   = 50,
        enqueue_embedding:     Optional[EnqueueEmbedding] = None,
    ) -> None:
        self._documents = documents
        self._storage   = storage
        self._ocr       = ocr
        self._vision    = vision
        self._events    = events
        self._download_timeout      = download_timeout
        self._ocr_timeout           = ocr_timeout
        self._vision_timeout        = vision_timeout
        self._vision_min_text_chars = vision_min_text_chars
        self._enqueue_embedding     = enqueue_embedding

    def bind_enqueue(self, enqueue_embedding: EnqueueEmbedding) -> None:
        self._enqueue_embedding = enqueue_embedding

    @traced("pipeline.extraction")
    async def extract(
        self,
        document_id: UUID,
        org_id:      Optional[UUID],
        options:     Optional[ExtractionOptions] = None,
        progress:    Optional[ProgressCallback] = None,
    ) -> ExtractionResult:
        if not org_id:
            raise InvalidConfiguration(
                "org_id is required for tenant isolation",
                details={"document_id": str(document_id)},
            )

        options = options or ExtractionOptions()
        t0 = time.monotonic()
        warnings: list[PartialExtractionFailure] = []

        logger.info("Extraction start | doc=%s org=%s options=%s", document_id, org_id, options.model_dump())

        try:
            if not await self._documents.mark_processing(document_id, org_id):
                raise NotFound("Document not found or access denied", details={"document_id": str(document_id)})
            await self._report(progress, 10)

            document = await self._documents.get(document_id, org_id)
            if document is None or not tenant_prefix_matches(document.storage_path, org_id):
                raise NotFound("Document not found or access denied", details={"document_id": str(document_id)})

            data = await with_timeout(
                self._storage.download(document.storage_path),
                self._download_timeout,
                "download",
            )
            await self._report(progress, 20)
            logger.info("Downloaded | doc=%s bytes=%d mime=%s", document_id, len(data), document.mime_type)

            # -- text ---------------------------------------------------------
            raw_text:   Optional[str]   = None
            confidence: Optional[float] = None

            if document.mime_type == "text/plain":
                raw_text, confidence = decode_plain_text(data), PLAIN_TEXT_CONFIDENCE
            elif options.perform_ocr and supports_ocr(document.mime_type):
                await self._report(progress, 30)
                try:
                    ocr_result = await with_timeout(
                        self._ocr.extract_text(data, document.mime_type, options.language),
                        self._ocr_timeout,
                        "ocr",
                    )
                    raw_text, confidence = ocr_result.text, ocr_result.confidence
                except Exception as exc:
                    raw_text, confidence = None, 0.0
                    await self._degrade("ocr", exc, document_id, org_id, warnings)
            else:
                logger.info(
                    "Skipping OCR | doc=%s perform_ocr=%s supports_ocr=%s",
                    document_id, options.perform_ocr, supports_ocr(document.mime_type),
                )
            await self._report(progress, 60)

            # -- structured fields -------------------------------------------
            fields_json: Optional[dict] = None
            if (
                options.perform_vision_extraction
                and document.mime_type.startswith("image/")
                and len(raw_text or "") > self._vision_min_text_chars
            ):
                await self._report(progress, 70)
                try:
                    if self._vision is None:
                        raise InvalidConfiguration("No structured extractor is configured")
                    fields = await with_timeout(
                        self._vision.extract_structured(data, document.mime_type, options.document_type),
                        self._vision_timeout,
                        "vision",
                    )
                    fields_json = fields_to_json(fields)
                except Exception as exc:
                    fields_json = None
                    await self._degrade("vision", exc, document_id, org_id, warnings)

            # -- persist ------------------------------------------------------
            await self._report(progress, 90)
            ocr_text = sanitize_extracted_text(raw_text)
            await self._documents.mark_completed(
                document_id,
                org_id,
                ocr_text=ocr_text,
                ocr_confidence=confidence,
                extracted_fields=fields_json,
                processed_at=utcnow(),
            )
        except Exception as exc:
            await self._fail(document_id, org_id, exc, time.monotonic() - t0)
            raise

        embedding_queued = await self._maybe_enqueue_embedding(document_id, org_id, ocr_text)
        await self._report(progress, 100)

        result = ExtractionResult(
            document_id=document_id,
            ocr_text_length=len(ocr_text or ""),
            ocr_confidence=confidence,
            has_structured_data=fields_json is not None,
            embedding_queued=embedding_queued,
            warnings=warnings,
            elapsed_ms=(time.monotonic() - t0) * 1000,
        )
        await self._events.record(
            EventLevel.WARN if warnings else EventLevel.INFO,
            EventCategory.EXTRACTION,
            "extraction.completed",
            f"Extracted {result.ocr_text_length} chars"
            + (f" with {len(warnings)} degraded step(s)" if warnings else ""),
            org_id=org_id,
            document_id=document_id,
            duration_ms=result.elapsed_ms,
            metadata={
                "ocr_confidence":      confidence,
                "has_structured_data": result.has_structured_data,
                "embedding_queued":    embedding_queued,
            },
        )
        return result

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _maybe_enqueue_embedding(self, document_id: UUID, org_id: UUID, ocr_text: Optional[str]) -> bool:
        if not ocr_text:
            logger.info("Skipping embedding enqueue | doc=%s reason=no_text", document_id)
            return False
        if self._enqueue_embedding is None:
            logger.warning("Skipping embedding enqueue | doc=%s reason=no_dispatcher", document_id)
            return False
        try:
            await self._enqueue_embedding(document_id, org_id)
            return True
        except Exception as exc:
            logger.error("Embedding enqueue failed | doc=%s error=%s", document_id, exc, exc_info=True)
            await self._events.record(
                EventLevel.ERROR, EventCategory.EXTRACTION, "extraction.enqueue_failed",
                "Could not enqueue embedding; document stays completed",
                org_id=org_id, document_id=document_id, error=exc,
            )
            return False

    async def _degrade(
        self,
        step:        str,
        exc:         BaseException,
        document_id: UUID,
        org_id:      UUID,
        warnings:    list[PartialExtractionFailure],
    ) -> None:
        warning = PartialExtractionFailure(step, exc)
        warnings.append(warning)
        logger.warning("Partial extraction | doc=%s step=%s error=%s", document_id, step, exc)
        await self._events.record(
            EventLevel.WARN, EventCategory.EXTRACTION, f"extraction.{step}_failed",
            warning.message, org_id=org_id, document_id=document_id, error=exc,
        )

    async def _fail(self, document_id: UUID, org_id: UUID, exc: BaseException, elapsed_s: float) -> None:
        message = str(exc) or type(exc).__name__
        logger.error("Extraction failed | doc=%s org=%s error=%s", document_id, org_id, message, exc_info=True)
        try:
            await self._documents.mark_failed(document_id, org_id, message)
        except Exception as mark_exc:
            logger.error("Could not mark document failed | doc=%s error=%s", document_id, mark_exc)
        await self._events.record(
            EventLevel.ERROR, EventCategory.EXTRACTION, "extraction.failed", message,
            org_id=org_id, document_id=document_id, duration_ms=elapsed_s * 1000, error=exc,
        )

    @staticmethod
    async def _report(progress: Optional[ProgressCallback], value: int) -> None:
        if progress is None:
            return
        try:
            await progress(value)
        except Exception as exc:
            logger.warning("Progress report failed | progress=%d error=%s", value, exc)
