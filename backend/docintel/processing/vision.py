"""
Structured (Vision) Extraction
══════════════════════════════

Sends a document image to a vision-capable chat model together with a
per-type field list and decodes the JSON answer into typed ExtractedFields.

    extract_structured(data, mime_type, document_type) -> ExtractedFields

Response handling
─────────────────
  1. Markdown code fences (```json ... ```) are stripped.
  2. The remainder is parsed as JSON; anything unparseable is kept verbatim
     as {"raw_response": content}.
  3. Confidence = share of the type's expected fields that came back non-empty,
     × 0.3 when the output was unparseable,
     × 0.8 when any value is a placeholder ("not found", "n/a", "null"),
     capped at 1.0.

Backend errors propagate; the extraction stage decides what a failure means.
"""

from __future__ import annotations

import base64
import json
import logging
import re
import time
from abc import ABC, abstractmethod
from typing import Any, Optional

from docintel.core.errors import InvalidConfiguration
from docintel.schemas.extraction import (
    DocumentType,
    ExtractedFields,
    build_fields,
    expected_fields,
)

logger = logging.getLogger(__name__)

VISION_MAX_TOKENS  = 1000
VISION_TEMPERATURE = 0.2

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```\s*$", re.IGNORECASE)

_PLACEHOLDERS = ("not found", "n/a")


# ---------------------------------------------------------------------------
# Prompt catalogue
# ---------------------------------------------------------------------------

_FIELD_GUIDE: dict[DocumentType, tuple[str, dict[str, str]]] = {
    DocumentType.INVOICE: ("invoice", {
        "invoice_number":   "Invoice number",
        "invoice_date":     "Invoice date (ISO format)",
        "due_date":         "Payment due date (ISO format)",
        "vendor_name":      "Vendor/supplier name",
        "vendor_address":   "Vendor address",
        "customer_name":    "Customer name",
        "customer_address": "Customer address",
        "items":            "Array of line items with {description, quantity, unit_price, total}",
        "subtotal":         "Subtotal amount",
        "tax":              "Tax amount",
        "total":            "Total amount",
        "currency":         "Currency code (e.g., USD, EUR)",
        "payment_terms":    "Payment terms description",
    }),
    DocumentType.RECEIPT: ("receipt", {
        "merchant_name":    "Store/restaurant name",
        "merchant_address": "Store address",
        "date":             "Transaction date (ISO format)",
        "time":             "Transaction time",
        "items":            "Array of purchased items with {description, quantity, price}",
        "subtotal":         "Subtotal amount",
        "tax":              "Tax amount",
        "tip":              "Tip amount (if applicable)",
        "total":            "Total amount",
        "payment_method":   "Payment method (e.g., Credit Card, Cash)",
        "transaction_id":   "Transaction ID or receipt number",
    }),
    DocumentType.FORM: ("form", {
        "form_type":         "Type of form (e.g., Application, Registration, Survey)",
        "form_fields":       "Object with all visible form fields and their values",
        "date":              "Date on form (ISO format)",
        "signature_present": "Boolean indicating if signature is present",
    }),
    DocumentType.CONTRACT: ("contract", {
        "contract_type":   "Type of contract",
        "parties":         "Array of parties involved with {name, role}",
        "effective_date":  "Contract effective date (ISO format)",
        "expiration_date": "Contract expiration date (ISO format)",
        "terms":           "Key terms and conditions (array of strings)",
        "signatures":      "Array of signatures present with {party, signed, date}",
    }),
    DocumentType.IDENTITY: ("identity document", {
        "document_type":     "Type (e.g., Passport, Driver License, ID Card)",
        "full_name":         "Full name",
        "date_of_birth":     "Date of birth (ISO format)",
        "id_number":         "ID/document number",
        "expiration_date":   "Expiration date (ISO format)",
        "issuing_authority": "Issuing authority/country",
    }),
    DocumentType.BUSINESS_CARD: ("business card", {
        "name":    "Person's name",
        "title":   "Job title",
        "company": "Company name",
        "email":   "Email address",
        "phone":   "Phone number",
        "address": "Business address",
        "website": "Website URL",
    }),
    DocumentType.GENERIC: ("document", {
        "document_type":   "Best guess of document type",
        "key_information": "Object with all relevant fields and values",
        "dates":           "Array of dates found in the document",
        "amounts":         "Array of monetary amounts found",
    }),
}


def build_extraction_prompt(document_type: DocumentType) -> str:
    label, fields = _FIELD_GUIDE[document_type]
    lines = [f"- {name}: {desc}" for name, desc in fields.items()]
    return (
        f"Extract structured data from this {label} image. "
        "Return a JSON object with the following fields:\n"
        + "\n".join(lines)
        + "\n\nReturn ONLY valid JSON, no additional text."
    )


# ---------------------------------------------------------------------------
# Response parsing + scoring
# ---------------------------------------------------------------------------

def parse_extraction_response(content: str) -> dict[str, Any]:
    """Strip code fences and parse; unparseable output becomes {"raw_response": content}."""
    cleaned = _FENCE_RE.sub("", content.strip())
    try:
        parsed = json.loads(cleaned)
    except (json.JSONDecodeError, ValueError):
        logger.warning("Vision response is not JSON | chars=%d", len(content))
        return {"raw_response": content}
    if not isinstance(parsed, dict):
        return {"raw_response": content}
    return parsed


def calculate_confidence(data: dict[str, Any], fields: list[str]) -> float:
    if not data or not fields:
        return 0.0

    present = [f for f in fields if data.get(f) not in (None, "")]
    score = len(present) / len(fields)

    if data.get("raw_response"):
        score *= 0.3

    has_placeholder = any(
        isinstance(v, str) and (any(p in v.lower() for p in _PLACEHOLDERS) or v == "null")
        for v in data.values()
    )
    if has_placeholder:
        score *= 0.8

    return round(min(score, 1.0), 4)


# ---------------------------------------------------------------------------
# Extractors
# ---------------------------------------------------------------------------

class StructuredExtractor(ABC):

    @abstractmethod
    async def extract_structured(
        self,
        data:          bytes,
        mime_type:     str,
        document_type: DocumentType,
    ) -> ExtractedFields:
        """Read typed fields from a document image. Raises on backend failure."""


class OpenAIVisionExtractor(StructuredExtractor):
    """
    Chat completions with an image_url part carrying a base64 data URL.
    The client is created lazily so importing this module never needs a key.
    """

    def __init__(self, api_key: str, model: str = "gpt-4o-mini", client: Optional[Any] = None) -> None:
        if not api_key and client is None:
            raise InvalidConfiguration("OPENAI_API_KEY is required for vision extraction")
        self._api_key = api_key
        self._model   = model
        self._client  = client

    def _get_client(self):
        if self._client is None:
            from openai import AsyncOpenAI
            self._client = AsyncOpenAI(api_key=self._api_key)
        return self._client

    async def extract_structured(
        self,
        data:          bytes,
        mime_type:     str,
        document_type: DocumentType,
    ) -> ExtractedFields:
        t0 = time.monotonic()
        image_url = f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"

        response = await self._get_client().chat.completions.create(
            model=self._model,
            messages=[{
                "role": "user",
                "content": [
                    {"type": "text", "text": build_extraction_prompt(document_type)},
                    {"type": "image_url", "image_url": {"url": image_url}},
                ],
            }],
            max_tokens=VISION_MAX_TOKENS,
            temperature=VISION_TEMPERATURE,
        )

        content = (response.choices[0].message.content if response.choices else None) or "{}"
        parsed = parse_extraction_response(content)
        confidence = calculate_confidence(parsed, expected_fields(document_type))

        logger.info(
            "Vision extraction | type=%s model=%s confidence=%.2f elapsed_ms=%.0f",
            document_type.value, self._model, confidence, (time.monotonic() - t0) * 1000,
        )
        return build_fields(document_type, parsed, confidence=confidence, model=self._model)
