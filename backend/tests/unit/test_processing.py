"""
Unit Tests — OCR engines, vision extraction, provider adapters
══════════════════════════════════════════════════════════════
No network: SDK clients are replaced with AsyncMock / SimpleNamespace objects.

Coverage targets:
  ✅ OCRResult.from_pages: blank pages ignored for text and confidence
  ✅ Textract block parsing: lines per page, confidence normalized to 0–1
  ✅ LayeredOCREngine: dense text layer wins, sparse PDF and images go to OCR
  ✅ Unsupported MIME types are rejected before any engine runs
  ✅ Vision response parsing: code fences, non-JSON, non-object JSON
  ✅ Confidence scoring: coverage, raw-output and placeholder penalties
  ✅ Typed fields: aliases, schema mismatch degrades to raw_response
  ✅ OpenAI vision / embedding adapters send the expected request shape
"""

from __future__ import annotations

import base64
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from docintel.core.errors import InvalidConfiguration, InvalidRequest
from docintel.processing.embeddings import OpenAIEmbedder
from docintel.processing.ocr import (
    LayeredOCREngine,
    OCREngine,
    OCRResult,
    PageText,
    PyMuPDFTextLayer,
    TextractOCR,
    build_ocr_engine,
    supports_ocr,
)
from docintel.processing.vision import (
    OpenAIVisionExtractor,
    build_extraction_prompt,
    calculate_confidence,
    parse_extraction_response,
)
from docintel.schemas.extraction import (
    DocumentType,
    GenericFields,
    IdentityFields,
    InvoiceFields,
    build_fields,
    expected_fields,
    fields_from_json,
    fields_to_json,
)


class StaticEngine(OCREngine):
    """Returns a fixed result and records every call."""

    def __init__(self, name: str, pages: list[PageText]) -> None:
        self._name = name
        self._pages = pages
        self.calls: list[str] = []

    @property
    def engine_name(self) -> str:
        return self._name

    async def extract_text(self, data: bytes, mime_type: str, language: str = "eng") -> OCRResult:
        self.calls.append(mime_type)
        return OCRResult.from_pages(self._pages, self._name)


# ─────────────────────────────────────────────────────────────────────────────
# OCR
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.extraction
class TestOCRResult:

    def test_blank_pages_are_ignored(self):
        result = OCRResult.from_pages(
            [PageText(1, "First page", 0.9), PageText(2, "   ", 0.1), PageText(3, "Third", 0.7)],
            "test",
        )
        assert result.text == "First page\n\nThird"
        assert result.confidence == 0.8
        assert len(result.pages) == 3

    def test_no_text_scores_zero(self):
        result = OCRResult.from_pages([PageText(1, "", 1.0)], "test")
        assert result.text == ""
        assert result.confidence == 0.0
        assert OCRResult.from_pages([], "test").avg_chars_per_page == 0.0

    @pytest.mark.parametrize(
        "mime, expected",
        [("application/pdf", True), ("image/png", True), ("image/webp", True), ("text/plain", False)],
    )
    def test_supports_ocr(self, mime, expected):
        assert supports_ocr(mime) is expected


@pytest.mark.unit
@pytest.mark.extraction
class TestTextractParsing:

    def test_lines_grouped_by_page(self):
        blocks = [
            {"BlockType": "PAGE", "Page": 1},
            {"BlockType": "LINE", "Page": 1, "Text": "Invoice INV-001"},
            {"BlockType": "LINE", "Page": 1, "Text": "Total 120.00"},
            {"BlockType": "WORD", "Page": 1, "Text": "Invoice", "Confidence": 90.0},
            {"BlockType": "WORD", "Page": 1, "Text": "INV-001", "Confidence": 80.0},
            {"BlockType": "LINE", "Page": 2, "Text": "Thank you"},
            {"BlockType": "WORD", "Page": 2, "Text": "Thank", "Confidence": 100.0},
        ]

        result = TextractOCR().parse_blocks(blocks)

        assert result.text == "Invoice INV-001\nTotal 120.00\n\nThank you"
        assert [p.confidence for p in result.pages] == [pytest.approx(0.85), pytest.approx(1.0)]
        assert result.confidence == pytest.approx(0.925)
        assert result.engine == "textract"

    def test_no_blocks(self):
        result = TextractOCR().parse_blocks([])
        assert result.text == ""
        assert result.confidence == 0.0


@pytest.mark.unit
@pytest.mark.extraction
class TestLayeredOCREngine:

    async def test_dense_text_layer_skips_ocr(self):
        layer   = StaticEngine("pymupdf", [PageText(1, "x" * 80, 1.0), PageText(2, "y" * 60, 1.0)])
        backend = StaticEngine("textract", [PageText(1, "ocr text", 0.9)])

        result = await LayeredOCREngine(layer, backend).extract_text(b"%PDF", "application/pdf")

        assert result.engine == "pymupdf"
        assert result.confidence == 1.0
        assert backend.calls == []

    async def test_sparse_pdf_falls_back_to_ocr(self):
        layer   = StaticEngine("pymupdf", [PageText(1, "page 1", 1.0), PageText(2, "", 1.0)])
        backend = StaticEngine("textract", [PageText(1, "scanned invoice text", 0.9)])

        result = await LayeredOCREngine(layer, backend).extract_text(b"%PDF", "application/pdf")

        assert result.text == "scanned invoice text"
        assert backend.calls == ["application/pdf"]

    async def test_images_go_straight_to_ocr(self):
        layer   = StaticEngine("pymupdf", [])
        backend = StaticEngine("textract", [PageText(1, "receipt", 0.75)])

        result = await LayeredOCREngine(layer, backend).extract_text(b"\x89PNG", "image/png")

        assert result.text == "receipt"
        assert layer.calls == []

    async def test_unsupported_mime_rejected(self):
        engine = LayeredOCREngine(StaticEngine("a", []), StaticEngine("b", []))
        with pytest.raises(InvalidRequest):
            await engine.extract_text(b"hello", "text/plain")

    async def test_text_layer_reads_pdfs_only(self):
        with pytest.raises(InvalidRequest):
            await PyMuPDFTextLayer().extract_text(b"\x89PNG", "image/png")

    def test_factory(self):
        assert build_ocr_engine("unstructured").engine_name == "layered(unstructured)"
        assert build_ocr_engine("textract", region="eu-west-1").engine_name == "layered(textract)"
        with pytest.raises(InvalidConfiguration):
            build_ocr_engine("tesseract-cloud")


# ─────────────────────────────────────────────────────────────────────────────
# Vision response handling
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.extraction
class TestVisionParsing:

    def test_fenced_json(self):
        content = '```json\n{"invoice_number": "INV-9", "total": 42.5}\n```'
        assert parse_extraction_response(content) == {"invoice_number": "INV-9", "total": 42.5}

    def test_bare_json(self):
        assert parse_extraction_response('  {"a": 1}  ') == {"a": 1}

    def test_not_json_is_kept_raw(self):
        content = "Sorry, I cannot read this image."
        assert parse_extraction_response(content) == {"raw_response": content}

    def test_non_object_json_is_kept_raw(self):
        assert parse_extraction_response("[1, 2, 3]") == {"raw_response": "[1, 2, 3]"}

    def test_full_coverage(self):
        data = {"document_type": "memo", "key_information": {"to": "ops"}, "dates": [], "amounts": [1]}
        assert calculate_confidence(data, expected_fields(DocumentType.GENERIC)) == 1.0

    def test_partial_coverage(self):
        data = {"document_type": "memo", "dates": ["2024-01-01"]}
        assert calculate_confidence(data, expected_fields(DocumentType.GENERIC)) == 0.5

    @pytest.mark.parametrize("placeholder", ["Not Found", "N/A", "null"])
    def test_placeholder_penalty(self, placeholder):
        data = {"document_type": placeholder, "key_information": {}, "dates": [], "amounts": []}
        assert calculate_confidence(data, expected_fields(DocumentType.GENERIC)) == 0.8

    def test_raw_output_penalty(self):
        fields = ["raw_response", "other"]
        assert calculate_confidence({"raw_response": "garbled"}, fields) == 0.15

    def test_empty_inputs(self):
        assert calculate_confidence({}, ["a"]) == 0.0
        assert calculate_confidence({"a": 1}, []) == 0.0

    def test_prompt_lists_fields(self):
        prompt = build_extraction_prompt(DocumentType.RECEIPT)
        assert "receipt image" in prompt
        assert "- merchant_name:" in prompt
        assert prompt.endswith("Return ONLY valid JSON, no additional text.")


@pytest.mark.unit
@pytest.mark.extraction
class TestTypedFields:

    def test_invoice_fields(self):
        fields = build_fields(
            DocumentType.INVOICE,
            {"invoice_number": "INV-1", "total": 99.5, "items": [{"description": "Widget", "quantity": 2}]},
            confidence=0.7, model="m",
        )
        assert isinstance(fields, InvoiceFields)
        assert fields.items[0].description == "Widget"
        assert fields.confidence == 0.7

    def test_alias_round_trip(self):
        fields = build_fields(DocumentType.IDENTITY, {"document_type": "Passport", "full_name": "A. Person"})
        assert isinstance(fields, IdentityFields)
        assert fields.id_document_type == "Passport"

        dumped = fields_to_json(fields)
        assert dumped["document_type"] == "Passport"
        assert dumped["type"] == "identity"
        assert fields_from_json(dumped) == fields

    def test_schema_mismatch_degrades_to_raw(self):
        fields = build_fields(DocumentType.INVOICE, {"items": "three widgets"}, confidence=0.2)
        assert fields.items is None
        assert json.loads(fields.raw_response) == {"items": "three widgets"}
        assert fields.confidence == 0.2

    def test_unknown_keys_are_kept(self):
        fields = build_fields(DocumentType.GENERIC, {"document_type": "memo", "author": "ops"})
        assert isinstance(fields, GenericFields)
        assert fields_to_json(fields)["author"] == "ops"

    @pytest.mark.parametrize(
        "value, expected",
        [("receipt", DocumentType.RECEIPT), (" Contract ", DocumentType.CONTRACT), ("poster", DocumentType.INVOICE), (None, DocumentType.INVOICE)],
    )
    def test_document_type_parse(self, value, expected):
        assert DocumentType.parse(value) is expected

    def test_empty_json_is_none(self):
        assert fields_from_json(None) is None
        assert fields_to_json(None) is None


# ─────────────────────────────────────────────────────────────────────────────
# Provider adapters
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.extraction
class TestOpenAIVisionExtractor:

    async def test_request_and_decode(self, sample_png_bytes):
        reply = SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(
            content='```json\n{"merchant_name": "Cafe", "total": "8.50"}\n```'
        ))])
        client = MagicMock()
        client.chat.completions.create = AsyncMock(return_value=reply)

        extractor = OpenAIVisionExtractor(api_key="", client=client)
        fields = await extractor.extract_structured(sample_png_bytes, "image/png", DocumentType.RECEIPT)

        assert fields.type == "receipt"
        assert fields.merchant_name == "Cafe"
        assert fields.model == "gpt-4o-mini"
        assert fields.confidence == pytest.approx(round(2 / 11, 4))

        kwargs = client.chat.completions.create.await_args.kwargs
        image_part = kwargs["messages"][0]["content"][1]
        expected_url = "data:image/png;base64," + base64.b64encode(sample_png_bytes).decode("ascii")
        assert image_part["image_url"]["url"] == expected_url
        assert kwargs["temperature"] == 0.2

    async def test_empty_reply(self):
        client = MagicMock()
        client.chat.completions.create = AsyncMock(return_value=SimpleNamespace(choices=[]))

        fields = await OpenAIVisionExtractor(api_key="", client=client).extract_structured(
            b"img", "image/jpeg", DocumentType.INVOICE
        )
        assert fields.confidence == 0.0
        assert fields.raw_response is None

    def test_requires_credentials(self):
        with pytest.raises(InvalidConfiguration):
            OpenAIVisionExtractor(api_key="")


@pytest.mark.unit
@pytest.mark.embedding
class TestOpenAIEmbedder:

    async def test_vectors_follow_response_index(self):
        response = SimpleNamespace(
            data=[SimpleNamespace(index=1, embedding=[0.0, 1.0]), SimpleNamespace(index=0, embedding=[1.0, 0.0])],
            usage=SimpleNamespace(total_tokens=7),
        )
        client = MagicMock()
        client.embeddings.create = AsyncMock(return_value=response)

        vectors = await OpenAIEmbedder(api_key="", client=client).embed(["first", "second"])

        assert vectors == [[1.0, 0.0], [0.0, 1.0]]
        assert client.embeddings.create.await_args.kwargs == {
            "model": "text-embedding-3-small",
            "input": ["first", "second"],
        }

    async def test_reduced_dimensions_are_requested(self):
        client = MagicMock()
        client.embeddings.create = AsyncMock(return_value=SimpleNamespace(data=[], usage=None))

        await OpenAIEmbedder(api_key="", dimensions=256, client=client).embed(["x"])
        assert client.embeddings.create.await_args.kwargs["dimensions"] == 256

    def test_requires_credentials(self):
        with pytest.raises(InvalidConfiguration):
            OpenAIEmbedder(api_key="")
