"""
Root conftest.py — Shared fixtures for ALL tests (unit + integration)

Fixture hierarchy:
  session-scoped  : rsa keys, test_jwks
  function-scoped : ids, memory repositories, object storage, event log,
                    fake backends, service container, app + async client

Environment strategy:
  - The `memory` store backend and the `local` pipeline backend are the
    defaults here; SQL store tests build their own aiosqlite engine.
  - OCR, vision, embedding and completion backends are deterministic fakes.
    FakeEmbedder maps text to keyword counts over a tiny vocabulary, so
    cosine similarity in tests is exact and predictable.
  - JWTs are signed with a test RSA key; no live identity provider is needed.
  - Retry back-off is zero so retry tests do not sleep.

How to run:
  pytest                                   # all tests
  pytest -m unit                           # unit tests only
  pytest -m integration                    # FastAPI stack through ASGITransport
  pytest backend/tests/unit/test_chunking.py
"""

from __future__ import annotations

import base64
import os
import re
import time
import uuid
from typing import Optional, Sequence

import pytest
import pytest_asyncio
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from httpx import ASGITransport, AsyncClient

# ─────────────────────────────────────────────────────────────────────────────
# Patch settings BEFORE any docintel imports so modules read test config
# ─────────────────────────────────────────────────────────────────────────────

os.environ.setdefault("DATABASE_URL",          "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("STORE_BACKEND",         "memory")
os.environ.setdefault("PIPELINE_BACKEND",      "local")
os.environ.setdefault("EVENT_LOG_BACKEND",     "memory")
os.environ.setdefault("OCR_BACKEND",           "unstructured")
os.environ.setdefault("AWS_REGION",            "us-east-1")
os.environ.setdefault("S3_BUCKET",             "test-bucket")
os.environ.setdefault("OPENAI_API_KEY",        "sk-test-key")
os.environ.setdefault("CELERY_BROKER_URL",     "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")
os.environ.setdefault("APP_ENV",               "development")
os.environ.setdefault("AUTH_ISSUER",           "https://test.auth.example.com/")
os.environ.setdefault("AUTH_AUDIENCE",         "test-api-audience")

from langchain_core.messages import BaseMessage  # noqa: E402

from docintel.chat.prompts import TITLE_SYSTEM_PROMPT  # noqa: E402
from docintel.llm.completion import CompletionBackend, CompletionResult  # noqa: E402
from docintel.processing.embeddings import Embedder  # noqa: E402
from docintel.processing.ocr import OCREngine, OCRResult, PageText  # noqa: E402
from docintel.processing.vision import StructuredExtractor  # noqa: E402
from docintel.schemas.extraction import DocumentType, build_fields  # noqa: E402

TEST_KID      = "test-key-id-2024"
TEST_ISSUER   = "https://test.auth.example.com/"
TEST_AUDIENCE = "test-api-audience"


# ─────────────────────────────────────────────────────────────────────────────
# RSA key pair + JWKS for signing test JWTs
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture(scope="session")
def rsa_private_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def rsa_private_key_pem(rsa_private_key) -> bytes:
    return rsa_private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )


@pytest.fixture(scope="session")
def test_jwks(rsa_private_key) -> dict:
    """What the issuer's /.well-known/jwks.json returns for the test key."""
    numbers = rsa_private_key.public_key().public_numbers()

    def _b64url(n: int) -> str:
        return base64.urlsafe_b64encode(n.to_bytes((n.bit_length() + 7) // 8, "big")).rstrip(b"=").decode()

    return {
        "keys": [
            {"kty": "RSA", "use": "sig", "alg": "RS256", "kid": TEST_KID, "n": _b64url(numbers.n), "e": _b64url(numbers.e)}
        ]
    }


# ─────────────────────────────────────────────────────────────────────────────
# Tenant, user and document ids
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def org_id() -> uuid.UUID:
    return uuid.UUID("aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa")


@pytest.fixture
def user_id() -> uuid.UUID:
    return uuid.UUID("bbbbbbbb-bbbb-bbbb-bbbb-bbbbbbbbbbbb")


@pytest.fixture
def document_id() -> uuid.UUID:
    return uuid.UUID("cccccccc-cccc-cccc-cccc-cccccccccccc")


@pytest.fixture
def other_org_id() -> uuid.UUID:
    return uuid.UUID("dddddddd-dddd-dddd-dddd-dddddddddddd")


@pytest.fixture
def make_token(rsa_private_key_pem, org_id, user_id):
    """
    Factory fixture for signed test JWTs.

        token = make_token()
        token = make_token(org_id_=other_org, claim="org_id")
        token = make_token(expired=True)
    """
    from jose import jwt as jose_jwt

    def _build(
        org_id_:  Optional[uuid.UUID] = None,
        user_id_: Optional[uuid.UUID] = None,
        claim:    str  = "custom:org_id",
        expired:  bool = False,
        no_org:   bool = False,
        audience: str  = TEST_AUDIENCE,
    ) -> str:
        now = int(time.time())
        claims: dict = {
            "sub":   str(user_id_ or user_id),
            "email": "test@tenant.example.com",
            "iss":   TEST_ISSUER,
            "aud":   audience,
            "exp":   now - 60 if expired else now + 3600,
            "iat":   now,
        }
        if not no_org:
            claims[claim] = str(org_id_ or org_id)
        return jose_jwt.encode(claims, rsa_private_key_pem, algorithm="RS256", headers={"kid": TEST_KID})

    return _build


# ─────────────────────────────────────────────────────────────────────────────
# Fake backends
# ─────────────────────────────────────────────────────────────────────────────

VOCABULARY = ("alpha", "bravo", "charlie", "delta", "echo", "invoice", "total", "vendor")


class FakeEmbedder(Embedder):
    """
    Keyword-count vectors over VOCABULARY. Text without any vocabulary word
    embeds to the zero vector, which scores 0 against everything.
    `fail_times` makes the first N calls raise `error`.
    """

    def __init__(self, fail_times: int = 0, error: Optional[Exception] = None) -> None:
        self.calls: list[list[str]] = []
        self.fail_times = fail_times
        self.error = error or ConnectionError("embedding backend connection reset")

    @property
    def model_name(self) -> str:
        return "fake-keyword-embedder"

    @staticmethod
    def vector_for(text: str) -> list[float]:
        tokens = re.findall(r"[a-z]+", text.lower())
        return [float(tokens.count(word)) for word in VOCABULARY]

    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        if self.fail_times > 0:
            self.fail_times -= 1
            raise self.error
        return [self.vector_for(t) for t in texts]


class FakeCompletion(CompletionBackend):
    """Returns `reply` for chat turns and `title` for title requests; records every prompt."""

    def __init__(
        self,
        reply:       str = "Here is what the documents say.",
        title:       str = '"Invoice Questions"',
        error:       Optional[Exception] = None,
        title_error: Optional[Exception] = None,
    ) -> None:
        self.reply       = reply
        self.title       = title
        self.error       = error
        self.title_error = title_error
        self.prompts: list[list[BaseMessage]] = []

    @property
    def model_name(self) -> str:
        return "fake-llm"

    async def complete(self, messages, temperature: float = 0.7, max_tokens=None) -> CompletionResult:
        messages = list(messages)
        if messages and messages[0].content == TITLE_SYSTEM_PROMPT:
            if self.title_error is not None:
                raise self.title_error
            return CompletionResult(text=self.title, tokens_used=5, model=self.model_name)
        self.prompts.append(messages)
        if self.error is not None:
            raise self.error
        return CompletionResult(text=self.reply, tokens_used=42, model=self.model_name)


class FakeOCR(OCREngine):
    def __init__(self, text: str = "", confidence: float = 0.92, error: Optional[Exception] = None) -> None:
        self.text       = text
        self.confidence = confidence
        self.error      = error
        self.calls: list[tuple[str, str]] = []

    @property
    def engine_name(self) -> str:
        return "fake-ocr"

    async def extract_text(self, data: bytes, mime_type: str, language: str = "eng") -> OCRResult:
        self.calls.append((mime_type, language))
        if self.error is not None:
            raise self.error
        return OCRResult.from_pages([PageText(1, self.text, self.confidence)], self.engine_name)


class FakeVision(StructuredExtractor):
    def __init__(self, data: Optional[dict] = None, error: Optional[Exception] = None) -> None:
        self.data  = data or {"invoice_number": "INV-001", "total": "120.00", "vendor": "Acme"}
        self.error = error
        self.calls = 0

    async def extract_structured(self, data: bytes, mime_type: str, document_type: DocumentType):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return build_fields(document_type, self.data, confidence=0.9, model="fake-vision")


# ─────────────────────────────────────────────────────────────────────────────
# Collaborator fixtures
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def repos():
    from docintel.store.memory import build_memory_repositories
    return build_memory_repositories()


@pytest.fixture
def storage():
    from docintel.storage.s3 import InMemoryObjectStorage
    return InMemoryObjectStorage()


@pytest.fixture
def events():
    from docintel.observability.event_log import RingBufferEventLog
    return RingBufferEventLog(max_entries=1000)


@pytest.fixture
def fake_embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def fake_completion() -> FakeCompletion:
    return FakeCompletion()


@pytest.fixture
def fake_ocr() -> FakeOCR:
    return FakeOCR(text="Invoice INV-001 from Acme. Total due 120.00 by the end of the month.")


@pytest.fixture
def fake_vision() -> FakeVision:
    return FakeVision()


@pytest.fixture
def embedding_pipeline(fake_embedder):
    from docintel.processing.embeddings import EmbeddingPipeline
    return EmbeddingPipeline(fake_embedder, batch_size=4, max_concurrency=2, max_retries=2, base_delay=0.0, max_delay=0.0)


@pytest.fixture
def retry_policy():
    from docintel.pipeline.retry import RetryPolicy
    return RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0)


@pytest.fixture
def dispatcher():
    from docintel.pipeline.dispatch import LocalDispatcher
    return LocalDispatcher(max_workers=2)


@pytest.fixture
def container(repos, storage, events, dispatcher, fake_ocr, fake_vision, fake_embedder, fake_completion, retry_policy):
    """Fully wired services on memory stores and fake backends."""
    from docintel.core.config import get_settings
    from docintel.services.registry import build_container

    settings = get_settings().model_copy(update={"embedding_retry_base_delay": 0.0, "embedding_retry_max_delay": 0.0})
    return build_container(
        settings,
        repositories=repos,
        storage=storage,
        events=events,
        dispatcher=dispatcher,
        ocr=fake_ocr,
        vision=fake_vision,
        embedder=fake_embedder,
        completion=fake_completion,
        retry_policy=retry_policy,
    )


# ─────────────────────────────────────────────────────────────────────────────
# App + HTTP client
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def identity(org_id, user_id):
    from docintel.auth.token import Identity
    return Identity(user_id=user_id, org_id=org_id, email="member@tenant.example.com")


@pytest.fixture
def app(container, identity):
    from docintel.auth.dependencies import get_services
    from docintel.auth.token import get_current_identity
    from docintel.main import create_app

    application = create_app()
    application.dependency_overrides[get_services] = lambda: container
    application.dependency_overrides[get_current_identity] = lambda: identity
    return application


@pytest_asyncio.fixture
async def async_client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


# ─────────────────────────────────────────────────────────────────────────────
# Sample file bytes
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def sample_pdf_bytes() -> bytes:
    """Minimal PDF: passes the %PDF magic-byte check."""
    return (
        b"%PDF-1.4\n"
        b"1 0 obj\n<< /Type /Catalog /Pages 2 0 R >>\nendobj\n"
        b"2 0 obj\n<< /Type /Pages /Kids [3 0 R] /Count 1 >>\nendobj\n"
        b"3 0 obj\n<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] >>\nendobj\n"
        b"trailer\n<< /Size 4 /Root 1 0 R >>\n%%EOF"
    )


@pytest.fixture
def sample_png_bytes() -> bytes:
    return b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


@pytest.fixture
def exe_bytes() -> bytes:
    """Windows PE executable: rejected by the type check."""
    return b"MZ\x90\x00" + b"\x00" * 100
