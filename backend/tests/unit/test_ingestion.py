"""
Unit Tests — Upload intake, deletion and semantic search
════════════════════════════════════════════════════════

Coverage targets:
  ✅ MIME type is sniffed from magic bytes before the extension or client type
  ✅ Filenames are reduced to a safe basename
  ✅ Empty / oversized / unsupported uploads are rejected before storage
  ✅ Happy path: bytes stored under the tenant prefix, pending row, job queued
  ✅ Enqueue failure: document kept, job_id None, queue_failed event
  ✅ Delete removes the row and chunks, soft-deletes the object, scoped by org
  ✅ Search: tenant-scoped hits, foreign document → NotFound,
    embedding outage → ServiceUnavailable
"""

from __future__ import annotations

import pytest

from docintel.core.errors import NotFound, ServiceUnavailable
from docintel.processing.embeddings import EmbeddingPipeline
from docintel.schemas.documents import MAX_FILE_SIZE_BYTES, DocumentStatus, JobKind, SearchRequest
from docintel.services.ingestion import IngestionService, UploadRejected, detect_mime_type, sanitize_filename
from docintel.services.search import SemanticSearchService
from docintel.storage.s3 import tenant_prefix_matches
from docintel.store.base import NewChunk
from tests.conftest import FakeEmbedder


class UnreachableQueue:
    """Orchestrator stand-in whose broker is down."""

    async def enqueue_extraction(self, document_id, org_id, options=None):
        raise ConnectionError("broker unreachable")


class BrokenStorage:
    def __init__(self, inner) -> None:
        self._inner = inner

    async def upload(self, *args, **kwargs):
        return await self._inner.upload(*args, **kwargs)

    async def delete(self, storage_path, hard=False):
        raise ConnectionError("s3 down")


# ─────────────────────────────────────────────────────────────────────────────
# File type helpers
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.ingestion
class TestFileTypeHelpers:

    @pytest.mark.parametrize(
        "filename, head, declared, expected",
        [
            ("scan.bin",   b"%PDF-1.7",              None,        "application/pdf"),
            ("photo.txt",  b"\x89PNG\r\n\x1a\n",     "text/plain", "image/png"),
            ("a.jpg",      b"\xff\xd8\xff\xe0",      None,        "image/jpeg"),
            ("t.tif",      b"II*\x00",               None,        "image/tiff"),
            ("x.webp",     b"RIFF\x00\x00\x00\x00WEBP", None,     "image/webp"),
            ("notes.md",   b"# heading",             None,        "text/plain"),
            ("README",     b"plain words",           "text/plain", "text/plain"),
            ("blob",       b"\x00\x01",              "image/png", "application/octet-stream"),
            ("blob",       b"\x00\x01",              None,        "application/octet-stream"),
        ],
    )
    def test_detect_mime_type(self, filename, head, declared, expected):
        assert detect_mime_type(filename, head, declared) == expected

    @pytest.mark.parametrize("filename", ["cat.png", "scan.pdf", "photo.jpeg"])
    def test_renamed_executable_is_not_trusted(self, filename, exe_bytes):
        assert detect_mime_type(filename, exe_bytes[:12], "image/png") == "application/octet-stream"

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("invoice.pdf",                "invoice.pdf"),
            ("../../etc/passwd",           "passwd"),
            ("C:\\Users\\me\\scan 01.png", "scan_01.png"),
            ("...",                        "upload"),
            ("résumé (final).pdf",         "r_sum___final_.pdf"),
        ],
    )
    def test_sanitize_filename(self, raw, expected):
        assert sanitize_filename(raw) == expected


# ─────────────────────────────────────────────────────────────────────────────
# Upload
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.ingestion
class TestUpload:

    async def test_empty_upload_rejected(self, container, org_id, user_id):
        with pytest.raises(UploadRejected) as exc_info:
            await container.ingestion.upload(org_id, user_id, "a.pdf", "application/pdf", b"")
        assert exc_info.value.status_code == 400
        assert exc_info.value.error_code == "MISSING_FILE"

    async def test_oversized_upload_rejected(self, container, org_id, user_id):
        data = b"%PDF" + b"\x00" * MAX_FILE_SIZE_BYTES
        with pytest.raises(UploadRejected) as exc_info:
            await container.ingestion.upload(org_id, user_id, "big.pdf", "application/pdf", data)
        assert exc_info.value.status_code == 413
        assert exc_info.value.error_code == "FILE_TOO_LARGE"

    async def test_executable_rejected_before_storage(self, container, storage, repos, org_id, user_id, exe_bytes):
        with pytest.raises(UploadRejected) as exc_info:
            await container.ingestion.upload(org_id, user_id, "setup.exe", "image/png", exe_bytes)

        assert exc_info.value.error_code == "UNSUPPORTED_FILE_TYPE"
        assert storage._objects == {}
        assert await repos.documents.list_for_org(org_id) == []

    async def test_happy_path(self, container, storage, repos, events, org_id, user_id, sample_pdf_bytes):
        response = await container.ingestion.upload(org_id, user_id, "Q1 invoice.pdf", "application/octet-stream", sample_pdf_bytes)

        assert response.status is DocumentStatus.PENDING
        assert response.mime_type == "application/pdf"
        assert response.size_bytes == len(sample_pdf_bytes)
        assert response.original_name == "Q1 invoice.pdf"
        assert response.job_id is not None

        document = await repos.documents.get(response.document_id, org_id)
        assert document.uploaded_by == user_id
        assert tenant_prefix_matches(document.storage_path, org_id)
        assert document.storage_path.endswith("Q1_invoice.pdf")
        assert await storage.download(document.storage_path) == sample_pdf_bytes

        [job] = [j for j in await repos.jobs.list_for_document(response.document_id, org_id) if j.kind is JobKind.EXTRACTION]
        assert job.id == response.job_id
        assert job.kind is JobKind.EXTRACTION

        actions = [e.action for e in await events.query()]
        assert "document.uploaded" in actions
        assert "extraction.queued" in actions

        await container.dispatcher.drain()

    async def test_upload_runs_through_the_pipeline(self, container, repos, org_id, user_id, sample_pdf_bytes):
        response = await container.ingestion.upload(org_id, user_id, "invoice.pdf", "application/pdf", sample_pdf_bytes)
        await container.dispatcher.drain()

        document = await repos.documents.get(response.document_id, org_id)
        assert document.status is DocumentStatus.COMPLETED
        assert document.ocr_text.startswith("Invoice INV-001")
        assert (await repos.embeddings.get_stats(response.document_id, org_id)).count == 1

    async def test_enqueue_failure_keeps_document(self, repos, storage, events, org_id, user_id, sample_png_bytes):
        service = IngestionService(repos.documents, storage, UnreachableQueue(), events)

        response = await service.upload(org_id, user_id, "receipt.png", "image/png", sample_png_bytes)

        assert response.job_id is None
        document = await repos.documents.get(response.document_id, org_id)
        assert document.status is DocumentStatus.PENDING

        [failed] = [e for e in await events.query() if e.action == "document.queue_failed"]
        assert failed.document_id == response.document_id
        assert failed.error.name == "ConnectionError"


# ─────────────────────────────────────────────────────────────────────────────
# Delete
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.ingestion
class TestDelete:

    async def test_delete_removes_row_chunks_and_object(self, repos, storage, events, org_id, user_id, sample_pdf_bytes):
        service = IngestionService(repos.documents, storage, UnreachableQueue(), events)
        uploaded = await service.upload(org_id, user_id, "a.pdf", None, sample_pdf_bytes)
        document = await repos.documents.get(uploaded.document_id, org_id)
        await repos.embeddings.replace_chunks(document.id, org_id, [NewChunk("chunk", [1.0])])

        await service.delete(document.id, org_id, user_id)

        assert await repos.documents.get(document.id, org_id) is None
        assert await repos.embeddings.list_chunks(document.id, org_id) == []
        assert document.storage_path in storage.deleted
        assert any(e.action == "document.deleted" for e in await events.query())

    async def test_delete_other_tenant_not_found(self, repos, storage, events, org_id, other_org_id, user_id, sample_pdf_bytes):
        service = IngestionService(repos.documents, storage, UnreachableQueue(), events)
        uploaded = await service.upload(org_id, user_id, "a.pdf", None, sample_pdf_bytes)

        with pytest.raises(NotFound):
            await service.delete(uploaded.document_id, other_org_id)
        assert await repos.documents.get(uploaded.document_id, org_id) is not None

    async def test_object_delete_failure_still_removes_row(self, repos, storage, events, org_id, user_id, sample_pdf_bytes):
        service = IngestionService(repos.documents, BrokenStorage(storage), UnreachableQueue(), events)
        uploaded = await service.upload(org_id, user_id, "a.pdf", None, sample_pdf_bytes)

        await service.delete(uploaded.document_id, org_id)
        assert await repos.documents.get(uploaded.document_id, org_id) is None


# ─────────────────────────────────────────────────────────────────────────────
# Search
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
async def indexed(repos, storage, events, org_id, other_org_id, user_id, sample_pdf_bytes):
    """Two documents for the tenant, one for another tenant, all embedded."""
    service = IngestionService(repos.documents, storage, UnreachableQueue(), events)
    docs = {}
    for org, name, texts in (
        (org_id, "invoices.pdf", ["invoice total vendor", "alpha bravo"]),
        (org_id, "notes.pdf", ["delta echo"]),
        (other_org_id, "theirs.pdf", ["invoice total vendor"]),
    ):
        uploaded = await service.upload(org, user_id, name, None, sample_pdf_bytes)
        await repos.embeddings.replace_chunks(
            uploaded.document_id, org, [NewChunk(t, FakeEmbedder.vector_for(t)) for t in texts]
        )
        docs[name] = uploaded.document_id
    return docs


@pytest.mark.unit
@pytest.mark.ingestion
class TestSearch:

    async def test_ranked_within_tenant(self, repos, embedding_pipeline, indexed, org_id):
        service = SemanticSearchService(repos.documents, repos.embeddings, embedding_pipeline)

        response = await service.search(org_id, SearchRequest(query="  invoice total  ", top_k=5, min_similarity=0.1))

        assert response.query == "invoice total"
        assert response.count == 1
        [hit] = response.results
        assert hit.document_id == indexed["invoices.pdf"]
        assert hit.document_name == "invoices.pdf"
        assert hit.chunk_index == 0

    async def test_document_scope(self, repos, embedding_pipeline, indexed, org_id):
        service = SemanticSearchService(repos.documents, repos.embeddings, embedding_pipeline)

        response = await service.search(org_id, SearchRequest(query="delta", document_id=indexed["invoices.pdf"]))
        assert {r.document_id for r in response.results} == {indexed["invoices.pdf"]}

    async def test_foreign_document_not_found(self, repos, embedding_pipeline, indexed, org_id):
        service = SemanticSearchService(repos.documents, repos.embeddings, embedding_pipeline)
        with pytest.raises(NotFound):
            await service.search(org_id, SearchRequest(query="invoice", document_id=indexed["theirs.pdf"]))

    async def test_embedding_outage(self, repos, indexed, org_id):
        broken = EmbeddingPipeline(FakeEmbedder(fail_times=1), max_retries=0)
        service = SemanticSearchService(repos.documents, repos.embeddings, broken)
        with pytest.raises(ServiceUnavailable):
            await service.search(org_id, SearchRequest(query="invoice"))
