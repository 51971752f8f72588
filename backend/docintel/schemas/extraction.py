"""
Structured Extraction — Typed Field Schemas

The vision extractor returns loosely-shaped JSON. It is decoded at the boundary
into one of the models below, selected by the `type` discriminator, so the
rest of the pipeline only ever handles a typed ExtractedFields value.

Every field is optional: a model that fails to read a value leaves it null
rather than inventing one. Unknown keys are kept (extra="allow") so nothing the
model returned is silently dropped.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

Amount = Optional[Union[float, str]]


class DocumentType(str, Enum):
    INVOICE       = "invoice"
    RECEIPT       = "receipt"
    FORM          = "form"
    CONTRACT      = "contract"
    IDENTITY      = "identity"
    BUSINESS_CARD = "business_card"
    GENERIC       = "generic"

    @classmethod
    def parse(cls, value: "str | DocumentType | None") -> "DocumentType":
        """Unknown or missing values fall back to INVOICE."""
        if isinstance(value, DocumentType):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.INVOICE


# ---------------------------------------------------------------------------
# Shared base
# ---------------------------------------------------------------------------

class _FieldsBase(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    confidence:   float         = Field(0.0, ge=0.0, le=1.0)
    model:        str           = ""
    raw_response: Optional[str] = Field(
        None,
        description="Set when the model output could not be parsed as JSON",
    )


class _Item(BaseModel):
    model_config = ConfigDict(extra="allow")


class LineItem(_Item):
    description: Optional[str] = None
    quantity:    Amount = None
    unit_price:  Amount = None
    total:       Amount = None


class ReceiptItem(_Item):
    description: Optional[str] = None
    quantity:    Amount = None
    price:       Amount = None


class Party(_Item):
    name: Optional[str] = None
    role: Optional[str] = None


class Signature(_Item):
    party:  Optional[str]  = None
    signed: Optional[bool] = None
    date:   Optional[str]  = None


# ---------------------------------------------------------------------------
# Per-type field models
# ---------------------------------------------------------------------------

class InvoiceFields(_FieldsBase):
    type: Literal["invoice"] = "invoice"
    invoice_number:   Optional[str] = None
    invoice_date:     Optional[str] = None
    due_date:         Optional[str] = None
    vendor_name:      Optional[str] = None
    vendor_address:   Optional[str] = None
    customer_name:    Optional[str] = None
    customer_address: Optional[str] = None
    items:            Optional[list[LineItem]] = None
    subtotal:         Amount = None
    tax:              Amount = None
    total:            Amount = None
    currency:         Optional[str] = None
    payment_terms:    Optional[str] = None


class ReceiptFields(_FieldsBase):
    type: Literal["receipt"] = "receipt"
    merchant_name:    Optional[str] = None
    merchant_address: Optional[str] = None
    date:             Optional[str] = None
    time:             Optional[str] = None
    items:            Optional[list[ReceiptItem]] = None
    subtotal:         Amount = None
    tax:              Amount = None
    tip:              Amount = None
    total:            Amount = None
    payment_method:   Optional[str] = None
    transaction_id:   Optional[str] = None


class FormFields(_FieldsBase):
    type: Literal["form"] = "form"
    form_type:         Optional[str]            = None
    form_fields:       Optional[dict[str, Any]] = None
    date:              Optional[str]            = None
    signature_present: Optional[bool]           = None


class ContractFields(_FieldsBase):
    type: Literal["contract"] = "contract"
    contract_type:   Optional[str]             = None
    parties:         Optional[list[Party]]     = None
    effective_date:  Optional[str]             = None
    expiration_date: Optional[str]             = None
    terms:           Optional[list[str]]       = None
    signatures:      Optional[list[Signature]] = None


class IdentityFields(_FieldsBase):
    type: Literal["identity"] = "identity"
    id_document_type:  Optional[str] = Field(None, alias="document_type")
    full_name:         Optional[str] = None
    date_of_birth:     Optional[str] = None
    id_number:         Optional[str] = None
    expiration_date:   Optional[str] = None
    issuing_authority: Optional[str] = None


class BusinessCardFields(_FieldsBase):
    type: Literal["business_card"] = "business_card"
    name:    Optional[str] = None
    title:   Optional[str] = None
    company: Optional[str] = None
    email:   Optional[str] = None
    phone:   Optional[str] = None
    address: Optional[str] = None
    website: Optional[str] = None


class GenericFields(_FieldsBase):
    type: Literal["generic"] = "generic"
    detected_type:   Optional[str]            = Field(None, alias="document_type")
    key_information: Optional[dict[str, Any]] = None
    dates:           Optional[list[str]]      = None
    amounts:         Optional[list[Union[float, str]]] = None


ExtractedFields = Annotated[
    Union[
        InvoiceFields,
        ReceiptFields,
        FormFields,
        ContractFields,
        IdentityFields,
        BusinessCardFields,
        GenericFields,
    ],
    Field(discriminator="type"),
]

FIELD_MODELS: dict[DocumentType, type[_FieldsBase]] = {
    DocumentType.INVOICE:       InvoiceFields,
    DocumentType.RECEIPT:       ReceiptFields,
    DocumentType.FORM:          FormFields,
    DocumentType.CONTRACT:      ContractFields,
    DocumentType.IDENTITY:      IdentityFields,
    DocumentType.BUSINESS_CARD: BusinessCardFields,
    DocumentType.GENERIC:       GenericFields,
}

_ADAPTER: TypeAdapter = TypeAdapter(ExtractedFields)

_BASE_FIELDS = frozenset({"type", "confidence", "model", "raw_response"})


def expected_fields(document_type: DocumentType) -> list[str]:
    """Wire names (aliases) of the type-specific fields, in declaration order."""
    model = FIELD_MODELS[document_type]
    return [
        info.alias or name
        for name, info in model.model_fields.items()
        if name not in _BASE_FIELDS
    ]


def build_fields(document_type: DocumentType, data: dict[str, Any], **meta: Any) -> ExtractedFields:
    """
    Decode model output into the typed fields for `document_type`.
    Values that do not fit the schema degrade to raw_response instead of raising.
    """
    model = FIELD_MODELS[document_type]
    try:
        return model.model_validate({**data, **meta, "type": document_type.value})
    except ValidationError:
        import json
        return model.model_validate({
            **meta,
            "type": document_type.value,
            "raw_response": json.dumps(data, default=str)[:10_000],
        })


def fields_to_json(fields: ExtractedFields | None) -> dict | None:
    if fields is None:
        return None
    return fields.model_dump(mode="json", by_alias=True)


def fields_from_json(data: dict | None) -> ExtractedFields | None:
    if not data:
        return None
    return _ADAPTER.validate_python(data)
