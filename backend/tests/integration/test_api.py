"""
Integration Tests — HTTP API over the wired service container
═════════════════════════════════════════════════════════════
Full FastAPI stack through httpx ASGITransport: routing, dependency
injection, the error envelope, and the pipeline running on the
LocalDispatcher. Only the identity and the external backends are faked.

Test matrix:
  ✅ Upload → 202, extraction + embedding run, document completed
  ✅ Upload rejections: unsupported type (400), empty file (400)
  ✅ Document / job reads; foreign tenant → 404 on every read
  ✅ Embed trigger: 409 EMBEDDINGS_EXIST unless force, 409 without text
  ✅ Failed embedding job → retry endpoint → succeeded
  ✅ Search and chat round trip; chat list / detail / delete
  ✅ Chat backend outage → 503 + Retry-After
  ✅ Validation errors use the 422 envelope
  ✅ /health, /ready; missing bearer token is refused
  ✅ End-to-end: 2000-char document, 5 chunks, chat retrieves exactly chunk 3
"""

from __future__ import annotations

import uuid
from unittest.mock import AsyncMock, patch

import pytest
from httpx import ASGITransport, AsyncClient

from docintel.auth.token import Identity, get_current_identity
from docintel.schemas.documents import DocumentStatus, JobKind, JobStatus

# alpha-only text up to 1350, delta-only 1350–1850, echo to the end
SCENARIO_TEXT = ("alpha " * 300)[:1350] + ("delta " * 100)[:500] + ("echo " * 40)[:149] + "."


async def _upload(client, filename: str, data: bytes, mime: str, **form) -> dict:
    response = await client.post(
        "/api/v1/documents",
        files={"file": (filename, data, mime)},
        data={k: str(v).lower() if isinstance(v, bool) else v for k, v in form.items()},
    )
    assert response.status_code == 202, response.text
    return response.json()


@pytest.fixture
def act_as(app):
    """Switch the caller identity for the following requests."""
    def _switch(org_id, user_id=None):
        identity = Identity(user_id=user_id or uuid.uuid4(), org_id=org_id)
        app.dependency_overrides[get_current_identity] = lambda: identity
    return _switch


# ─────────────────────────────────────────────────────────────────────────────
# Operations
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
@pytest.mark.api
class TestOperations:

    async def test_health(self, async_client):
        response = await async_client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "service": "docintel-api"}

    async def test_ready(self, async_client):
        response = await async_client.get("/ready")
        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    async def test_request_id_is_echoed(self, async_client):
        response = await async_client.get("/health", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"


@pytest.mark.integration
@pytest.mark.api
class TestAuthentication:

    @pytest.fixture
    async def unauthenticated_client(self, container):
        from docintel.auth.dependencies import get_services
        from docintel.main import create_app

        application = create_app()
        application.dependency_overrides[get_services] = lambda: container
        async with AsyncClient(transport=ASGITransport(app=application), base_url="http://test") as client:
            yield client

    async def test_missing_bearer_token_refused(self, unauthenticated_client, document_id):
        response = await unauthenticated_client.get(f"/api/v1/documents/{document_id}")
        assert response.status_code in (401, 403)

    async def test_verified_token_scopes_the_request(self, unauthenticated_client, make_token, test_jwks, document_id):
        with patch("docintel.auth.token._fetch_jwks", new=AsyncMock(return_value=test_jwks)):
            response = await unauthenticated_client.get(
                f"/api/v1/documents/{document_id}",
                headers={"Authorization": f"Bearer {make_token()}"},
            )
        assert response.status_code == 404
        assert response.json()["error_code"] == "NOT_FOUND"

    async def test_expired_token_is_401(self, unauthenticated_client, make_token, test_jwks, document_id):
        with patch("docintel.auth.token._fetch_jwks", new=AsyncMock(return_value=test_jwks)):
            response = await unauthenticated_client.get(
                f"/api/v1/documents/{document_id}",
                headers={"Authorization": f"Bearer {make_token(expired=True)}"},
            )
        assert response.status_code == 401


# ─────────────────────────────────────────────────────────────────────────────
# Documents
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
@pytest.mark.api
class TestDocumentRoutes:

    async def test_upload_processes_document(self, async_client, container, sample_pdf_bytes):
        body = await _upload(async_client, "invoice.pdf", sample_pdf_bytes, "application/pdf", language="deu")
        assert body["status"] == "pending"
        assert body["mime_type"] == "application/pdf"
        assert body["job_id"]

        await container.dispatcher.drain()

        doc = (await async_client.get(f"/api/v1/documents/{body['document_id']}")).json()
        assert doc["status"] == DocumentStatus.COMPLETED.value
        assert doc["ocr_confidence"] == 0.92
        assert doc["ocr_text_length"] > 0
        assert doc["processed_at"] is not None

        job = (await async_client.get(f"/api/v1/jobs/{body['job_id']}")).json()
        assert job["status"] == JobStatus.SUCCEEDED.value
        assert job["progress"] == 100

        stats = (await async_client.get(f"/api/v1/documents/{body['document_id']}/embeddings")).json()
        assert stats["count"] == 1

    async def test_vision_fields_for_images(self, async_client, container, sample_png_bytes):
        body = await _upload(
            async_client, "invoice.png", sample_png_bytes, "image/png",
            perform_vision_extraction=True, document_type="invoice",
        )
        await container.dispatcher.drain()

        doc = (await async_client.get(f"/api/v1/documents/{body['document_id']}")).json()
        assert doc["extracted_fields"]["type"] == "invoice"
        assert doc["extracted_fields"]["invoice_number"] == "INV-001"

    async def test_unsupported_type_rejected(self, async_client, exe_bytes):
        response = await async_client.post(
            "/api/v1/documents",
            files={"file": ("setup.exe", exe_bytes, "application/octet-stream")},
            headers={"X-Request-ID": "req-exe"},
        )
        assert response.status_code == 400
        body = response.json()
        assert body["error_code"] == "UNSUPPORTED_FILE_TYPE"
        assert body["request_id"] == "req-exe"
        assert body["details"][0]["field"] == "file"

    async def test_empty_file_rejected(self, async_client):
        response = await async_client.post("/api/v1/documents", files={"file": ("a.pdf", b"", "application/pdf")})
        assert response.status_code == 400
        assert response.json()["error_code"] == "MISSING_FILE"

    async def test_unknown_document_404(self, async_client, document_id):
        for method, path in (
            ("GET",    f"/api/v1/documents/{document_id}"),
            ("DELETE", f"/api/v1/documents/{document_id}"),
            ("POST",   f"/api/v1/documents/{document_id}/extract"),
            ("POST",   f"/api/v1/documents/{document_id}/embed"),
            ("GET",    f"/api/v1/documents/{document_id}/embeddings"),
        ):
            response = await async_client.request(method, path)
            assert response.status_code == 404, (method, path)
            assert response.json()["error_code"] == "NOT_FOUND"

    async def test_foreign_tenant_sees_404(self, async_client, container, act_as, other_org_id, sample_pdf_bytes):
        body = await _upload(async_client, "invoice.pdf", sample_pdf_bytes, "application/pdf")
        await container.dispatcher.drain()

        act_as(other_org_id)
        assert (await async_client.get(f"/api/v1/documents/{body['document_id']}")).status_code == 404
        assert (await async_client.get(f"/api/v1/jobs/{body['job_id']}")).status_code == 404
        assert (await async_client.delete(f"/api/v1/documents/{body['document_id']}")).status_code == 404

    async def test_delete_document(self, async_client, container, repos, org_id, sample_pdf_bytes):
        body = await _upload(async_client, "invoice.pdf", sample_pdf_bytes, "application/pdf")
        await container.dispatcher.drain()

        response = await async_client.delete(f"/api/v1/documents/{body['document_id']}")
        assert response.status_code == 204
        assert (await async_client.get(f"/api/v1/documents/{body['document_id']}")).status_code == 404
        assert await repos.embeddings.list_chunks(uuid.UUID(body["document_id"]), org_id) == []

    async def test_extract_trigger(self, async_client, container, sample_pdf_bytes):
        body = await _upload(async_client, "invoice.pdf", sample_pdf_bytes, "application/pdf")
        await container.dispatcher.drain()

        response = await async_client.post(
            f"/api/v1/documents/{body['document_id']}/extract",
            json={"perform_ocr": True, "language": "fra"},
        )
        assert response.status_code == 202
        job = response.json()
        assert job["kind"] == JobKind.EXTRACTION.value
        assert job["status"] == JobStatus.QUEUED.value
        await container.dispatcher.drain()

    async def test_embed_conflict_and_force(self, async_client, container, sample_pdf_bytes):
        body = await _upload(async_client, "invoice.pdf", sample_pdf_bytes, "application/pdf")
        await container.dispatcher.drain()
        embed_url = f"/api/v1/documents/{body['document_id']}/embed"

        conflict = await async_client.post(embed_url)
        assert conflict.status_code == 409
        assert conflict.json()["error_code"] == "EMBEDDINGS_EXIST"

        forced = await async_client.post(embed_url, json={"force": True})
        assert forced.status_code == 202
        assert forced.json()["kind"] == JobKind.EMBEDDING.value
        await container.dispatcher.drain()

    async def test_embed_without_text_is_409(self, async_client, container, fake_ocr, sample_pdf_bytes):
        fake_ocr.text = ""
        body = await _upload(async_client, "blank.pdf", sample_pdf_bytes, "application/pdf")
        await container.dispatcher.drain()

        response = await async_client.post(f"/api/v1/documents/{body['document_id']}/embed")
        assert response.status_code == 409
        assert response.json()["error_code"] == "PRECONDITION_FAILED"

        stats = await async_client.get(f"/api/v1/documents/{body['document_id']}/embeddings")
        assert stats.status_code == 200
        assert stats.json() is None


# ─────────────────────────────────────────────────────────────────────────────
# Jobs
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
@pytest.mark.api
class TestJobRoutes:

    async def test_failed_embedding_job_can_be_retried(self, async_client, container, repos, fake_embedder, org_id, sample_pdf_bytes):
        fake_embedder.fail_times = 100
        fake_embedder.error = ValueError("input rejected by provider")

        body = await _upload(async_client, "invoice.pdf", sample_pdf_bytes, "application/pdf")
        await container.dispatcher.drain()

        jobs = await repos.jobs.list_for_document(uuid.UUID(body["document_id"]), org_id)
        [embedding_job] = [j for j in jobs if j.kind is JobKind.EMBEDDING]
        detail = (await async_client.get(f"/api/v1/jobs/{embedding_job.id}")).json()
        assert detail["status"] == JobStatus.FAILED.value
        assert "input rejected" in detail["last_error"]

        doc = (await async_client.get(f"/api/v1/documents/{body['document_id']}")).json()
        assert doc["status"] == DocumentStatus.COMPLETED.value

        fake_embedder.fail_times = 0
        retried = await async_client.post(f"/api/v1/jobs/{embedding_job.id}/retry")
        assert retried.status_code == 202
        assert retried.json()["attempts"] == 0
        await container.dispatcher.drain()

        detail = (await async_client.get(f"/api/v1/jobs/{embedding_job.id}")).json()
        assert detail["status"] == JobStatus.SUCCEEDED.value

    async def test_retry_of_succeeded_job_is_409(self, async_client, container, sample_pdf_bytes):
        body = await _upload(async_client, "invoice.pdf", sample_pdf_bytes, "application/pdf")
        await container.dispatcher.drain()

        response = await async_client.post(f"/api/v1/jobs/{body['job_id']}/retry")
        assert response.status_code == 409

    async def test_unknown_job_404(self, async_client):
        response = await async_client.get(f"/api/v1/jobs/{uuid.uuid4()}")
        assert response.status_code == 404


# ─────────────────────────────────────────────────────────────────────────────
# Search + chat
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
@pytest.mark.api
class TestSearchAndChat:

    async def test_search(self, async_client, container, sample_pdf_bytes):
        body = await _upload(async_client, "invoice.pdf", sample_pdf_bytes, "application/pdf")
        await container.dispatcher.drain()

        response = await async_client.post("/api/v1/documents/search", json={"query": "invoice total", "top_k": 3})
        assert response.status_code == 200
        results = response.json()["results"]
        assert results[0]["document_id"] == body["document_id"]
        assert results[0]["document_name"] == "invoice.pdf"

    async def test_chat_lifecycle(self, async_client, container, sample_pdf_bytes):
        body = await _upload(async_client, "invoice.pdf", sample_pdf_bytes, "application/pdf")
        await container.dispatcher.drain()

        first = await async_client.post("/api/v1/chat", json={"message": "What is the invoice total?"})
        assert first.status_code == 200
        reply = first.json()
        assert reply["title"] == "Invoice Questions"
        assert reply["sources"][0]["document_id"] == body["document_id"]
        chat_id = reply["chat_id"]

        follow_up = await async_client.post("/api/v1/chat", json={"message": "And the vendor?", "chat_id": chat_id})
        assert follow_up.status_code == 200

        listing = (await async_client.get("/api/v1/chat")).json()
        assert listing["pagination"]["total"] == 1
        assert listing["chats"][0]["message_count"] == 4

        detail = (await async_client.get(f"/api/v1/chat/{chat_id}")).json()
        assert [m["role"] for m in detail["messages"]] == ["user", "assistant", "user", "assistant"]

        assert (await async_client.delete(f"/api/v1/chat/{chat_id}")).status_code == 204
        assert (await async_client.get(f"/api/v1/chat/{chat_id}")).status_code == 404

    async def test_chat_backend_outage_is_503(self, async_client, fake_completion):
        fake_completion.error = ConnectionError("llm unreachable")

        response = await async_client.post("/api/v1/chat", json={"message": "hello"})

        assert response.status_code == 503
        assert response.json()["error_code"] == "SERVICE_UNAVAILABLE"
        assert "Retry-After" in response.headers

    async def test_validation_envelope(self, async_client):
        response = await async_client.post("/api/v1/chat", json={"message": ""})
        assert response.status_code == 422
        body = response.json()
        assert body["error_code"] == "VALIDATION_ERROR"
        assert any("message" in d["field"] for d in body["details"])

    async def test_invalid_search_params_422(self, async_client):
        response = await async_client.post("/api/v1/documents/search", json={"query": "x", "top_k": 0})
        assert response.status_code == 422


# ─────────────────────────────────────────────────────────────────────────────
# End-to-end retrieval
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
@pytest.mark.api
class TestEndToEnd:

    async def test_chat_retrieves_the_one_relevant_chunk(self, async_client, container, fake_ocr, fake_completion, sample_pdf_bytes):
        assert len(SCENARIO_TEXT) == 2000
        fake_ocr.text = SCENARIO_TEXT

        body = await _upload(async_client, "report.pdf", sample_pdf_bytes, "application/pdf")
        await container.dispatcher.drain()

        stats = (await async_client.get(f"/api/v1/documents/{body['document_id']}/embeddings")).json()
        assert stats["count"] == 5

        reply = (await async_client.post("/api/v1/chat", json={"message": "delta", "document_id": body["document_id"]})).json()
        assert len(reply["sources"]) == 1
        [source] = reply["sources"]
        assert source["chunk_index"] == 3
        assert source["similarity"] == pytest.approx(1.0)
        assert source["content"].startswith("delta")
        assert "alpha" not in source["content"] and "echo" not in source["content"]
        assert "[Source 1]:" in fake_completion.prompts[-1][0].content

    async def test_unrelated_question_gets_no_sources(self, async_client, container, fake_ocr, sample_pdf_bytes):
        fake_ocr.text = SCENARIO_TEXT
        await _upload(async_client, "report.pdf", sample_pdf_bytes, "application/pdf")
        await container.dispatcher.drain()

        reply = (await async_client.post("/api/v1/chat", json={"message": "what is the weather?"})).json()
        assert reply["sources"] == []
        assert reply["answer"]
