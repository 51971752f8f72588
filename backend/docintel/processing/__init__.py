"""
Document Processing Package
════════════════════════════

Building blocks used by the pipeline stages:

  Bytes → OCR (text layer / Textract / Unstructured) → Sanitize → Chunk → Embed
                  └── optional vision extraction → typed fields

Modules
───────
  ocr.py         OCR engines behind one extract_text() contract
  vision.py      Structured (vision) extraction into typed ExtractedFields
  text.py        Sanitizing and normalization of extracted text
  chunking.py    Pure sliding-window chunker
  embeddings.py  Batched embedding pipeline with per-batch retry

Every component is stateless and dependency-injected; the stages in
docintel.pipeline own sequencing, persistence and failure policy.
"""

from docintel.processing.chunking import chunk_text, chunk_windows
from docintel.processing.embeddings import Embedder, EmbeddingPipeline, OpenAIEmbedder
from docintel.processing.ocr import OCREngine, OCRResult, supports_ocr
from docintel.processing.text import normalize_text, sanitize_extracted_text
from docintel.processing.vision import OpenAIVisionExtractor, StructuredExtractor

__all__ = [
    "chunk_text",
    "chunk_windows",
    "Embedder",
    "EmbeddingPipeline",
    "OpenAIEmbedder",
    "OCREngine",
    "OCRResult",
    "supports_ocr",
    "normalize_text",
    "sanitize_extracted_text",
    "OpenAIVisionExtractor",
    "StructuredExtractor",
]
