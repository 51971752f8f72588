"""
OCR Engines  —  Text Extraction from PDFs and Images
════════════════════════════════════════════════════

Every engine implements one contract:

    extract_text(data, mime_type, language) -> OCRResult(text, confidence)

and MAY raise. The extraction stage owns the failure policy (degrade to
"no text" and carry on); engines never swallow errors themselves.

Engines
───────
  PyMuPDFTextLayer
    - Reads the native PDF text layer in-process (no API call)
    - Returns near-empty text for scanned PDFs, which is the fallback signal

  TextractOCR
    - AWS Textract DetectDocumentText on raw bytes
    - Confidence = mean word confidence, normalized to 0–1

  UnstructuredOCR
    - unstructured.partition (tesseract under the hood), runs in-cluster
    - No per-element confidence; a fixed 0.85 is reported

  LayeredOCREngine  (what the pipeline actually uses)
    - PDF:    text layer first; if it averages < MIN_CHARS_PER_PAGE the file
              is treated as scanned and handed to the OCR backend
    - Image:  straight to the OCR backend (GIF/WEBP are re-encoded to PNG
              first, Textract accepts only PNG/JPEG/TIFF/PDF)

Blocking SDK calls run in the default thread executor; the caller bounds the
whole call with an explicit timeout.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from docintel.core.errors import InvalidConfiguration, InvalidRequest

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

# Below this average the PDF is classified as scanned / image-based
MIN_CHARS_PER_PAGE = 50

# A text layer is exact, not recognized
TEXT_LAYER_CONFIDENCE = 1.0

UNSTRUCTURED_CONFIDENCE = 0.85

_TEXTRACT_NATIVE_IMAGES = frozenset({"image/png", "image/jpeg", "image/tiff"})


def supports_ocr(mime_type: str) -> bool:
    """OCR applies to images and PDFs only."""
    return mime_type.startswith("image/") or mime_type == "application/pdf"


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------

@dataclass
class PageText:
    page_number: int
    text:        str
    confidence:  float


@dataclass
class OCRResult:
    """
    text        : joined page text ("" when nothing was recognized)
    confidence  : 0.0–1.0, averaged over pages that produced text
    engine      : which engine produced the text
    """
    text:       str
    confidence: float
    engine:     str
    pages:      list[PageText] = field(default_factory=list)
    elapsed_ms: float = 0.0

    @classmethod
    def from_pages(cls, pages: list[PageText], engine: str) -> "OCRResult":
        with_text = [p for p in pages if p.text.strip()]
        confidence = (
            sum(p.confidence for p in with_text) / len(with_text)
            if with_text else 0.0
        )
        return cls(
            text="\n\n".join(p.text for p in with_text),
            confidence=round(confidence, 4),
            engine=engine,
            pages=pages,
        )

    @property
    def avg_chars_per_page(self) -> float:
        if not self.pages:
            return 0.0
        return sum(len(p.text) for p in self.pages) / len(self.pages)


# ---------------------------------------------------------------------------
# Abstract engine
# ---------------------------------------------------------------------------

class OCREngine(ABC):

    @property
    @abstractmethod
    def engine_name(self) -> str:
        """Name used in logs and in OCRResult.engine."""

    @abstractmethod
    async def extract_text(self, data: bytes, mime_type: str, language: str = "eng") -> OCRResult:
        """Recognize text in a PDF or image. Raises on backend failure."""

    async def _in_executor(self, fn, *args) -> OCRResult:
        loop = asyncio.get_running_loop()
        t0 = time.monotonic()
        result: OCRResult = await loop.run_in_executor(None, fn, *args)
        result.elapsed_ms = (time.monotonic() - t0) * 1000
        logger.info(
            "%s | pages=%d chars=%d confidence=%.3f elapsed_ms=%.0f",
            self.engine_name, len(result.pages), len(result.text),
            result.confidence, result.elapsed_ms,
        )
        return result


# ---------------------------------------------------------------------------
# PyMuPDF text layer
# ---------------------------------------------------------------------------

class PyMuPDFTextLayer(OCREngine):
    """Native PDF text layer. Image-only pages come back empty."""

    @property
    def engine_name(self) -> str:
        return "pymupdf"

    async def extract_text(self, data: bytes, mime_type: str, language: str = "eng") -> OCRResult:
        if mime_type != "application/pdf":
            raise InvalidRequest(f"{self.engine_name} only reads PDFs, got {mime_type}")
        return await self._in_executor(self._extract_sync, data)

    def _extract_sync(self, data: bytes) -> OCRResult:
        import fitz  # PyMuPDF

        pages: list[PageText] = []
        with fitz.open(stream=data, filetype="pdf") as doc:
            for page_num, page in enumerate(doc, start=1):
                raw = page.get_text("text") or ""
                pages.append(PageText(page_num, raw.strip(), TEXT_LAYER_CONFIDENCE))
        return OCRResult.from_pages(pages, self.engine_name)


# ---------------------------------------------------------------------------
# AWS Textract
# ---------------------------------------------------------------------------

class TextractOCR(OCREngine):
    """
    DetectDocumentText (synchronous API). Multi-page PDFs beyond the sync
    limit are rejected by Textract with UnsupportedDocumentException, which
    the stage records as a partial extraction failure.

    IAM: textract:DetectDocumentText on the worker task role.
    """

    def __init__(self, region: str = "us-east-1") -> None:
        self._region = region

    @property
    def engine_name(self) -> str:
        return "textract"

    async def extract_text(self, data: bytes, mime_type: str, language: str = "eng") -> OCRResult:
        if mime_type.startswith("image/") and mime_type not in _TEXTRACT_NATIVE_IMAGES:
            data = _reencode_as_png(data)
        return await self._in_executor(self._extract_sync, data)

    def _extract_sync(self, data: bytes) -> OCRResult:
        import boto3

        client = boto3.client("textract", region_name=self._region)
        response = client.detect_document_text(Document={"Bytes": data})
        return self.parse_blocks(response.get("Blocks", []))

    def parse_blocks(self, blocks: list[dict]) -> OCRResult:
        lines:       dict[int, list[str]]   = {}
        confidences: dict[int, list[float]] = {}

        for block in blocks:
            page_num = block.get("Page", 1)
            if block["BlockType"] == "LINE":
                lines.setdefault(page_num, []).append(block.get("Text", ""))
            elif block["BlockType"] == "WORD":
                confidences.setdefault(page_num, []).append(block.get("Confidence", 0.0) / 100.0)

        pages = []
        for pn in sorted(lines):
            scores = confidences.get(pn) or [0.0]
            pages.append(PageText(pn, "\n".join(lines[pn]), sum(scores) / len(scores)))
        return OCRResult.from_pages(pages, self.engine_name)


# ---------------------------------------------------------------------------
# Unstructured
# ---------------------------------------------------------------------------

class UnstructuredOCR(OCREngine):
    """
    Local OCR via unstructured. Needs tesseract + poppler in the worker image.
    `language` is passed through as a tesseract language code ("eng", "deu"...).
    """

    @property
    def engine_name(self) -> str:
        return "unstructured"

    async def extract_text(self, data: bytes, mime_type: str, language: str = "eng") -> OCRResult:
        return await self._in_executor(self._extract_sync, data, mime_type, language)

    def _extract_sync(self, data: bytes, mime_type: str, language: str) -> OCRResult:
        import io
        from unstructured.partition.auto import partition

        elements = partition(
            file=io.BytesIO(data),
            content_type=mime_type,
            strategy="ocr_only" if mime_type.startswith("image/") else "hi_res",
            languages=[language],
        )

        pages_dict: dict[int, list[str]] = {}
        for elem in elements:
            page_num = (elem.metadata.page_number if elem.metadata else None) or 1
            text = str(elem).strip()
            if text:
                pages_dict.setdefault(page_num, []).append(text)

        pages = [
            PageText(pn, "\n".join(texts), UNSTRUCTURED_CONFIDENCE)
            for pn, texts in sorted(pages_dict.items())
        ]
        return OCRResult.from_pages(pages, self.engine_name)


# ---------------------------------------------------------------------------
# Layered engine
# ---------------------------------------------------------------------------

class LayeredOCREngine(OCREngine):
    """PDF text layer first, OCR backend for scanned PDFs and images."""

    def __init__(self, text_layer: OCREngine, ocr_backend: OCREngine) -> None:
        self._text_layer  = text_layer
        self._ocr_backend = ocr_backend

    @property
    def engine_name(self) -> str:
        return f"layered({self._ocr_backend.engine_name})"

    async def extract_text(self, data: bytes, mime_type: str, language: str = "eng") -> OCRResult:
        if not supports_ocr(mime_type):
            raise InvalidRequest(f"OCR is not supported for {mime_type}")

        if mime_type == "application/pdf":
            layer = await self._text_layer.extract_text(data, mime_type, language)
            if layer.avg_chars_per_page >= MIN_CHARS_PER_PAGE:
                return layer
            logger.info(
                "PDF text layer sparse | avg_chars_per_page=%.0f fallback=%s",
                layer.avg_chars_per_page, self._ocr_backend.engine_name,
            )

        return await self._ocr_backend.extract_text(data, mime_type, language)


def _reencode_as_png(data: bytes) -> bytes:
    import fitz

    pix = fitz.Pixmap(data)
    if pix.alpha:
        pix = fitz.Pixmap(pix, 0)   # drop alpha
    return pix.tobytes("png")


def build_ocr_engine(backend: str, region: str = "us-east-1") -> OCREngine:
    """Factory used by the service registry (OCR_BACKEND=textract|unstructured)."""
    if backend == "textract":
        fallback: OCREngine = TextractOCR(region=region)
    elif backend == "unstructured":
        fallback = UnstructuredOCR()
    else:
        raise InvalidConfiguration(f"Unknown OCR backend: {backend!r}")
    return LayeredOCREngine(PyMuPDFTextLayer(), fallback)
