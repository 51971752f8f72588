"""
FastAPI Application — Entry Point

Document Intelligence API

  - Routes are versioned under /api/v1/ (documents, jobs, chat)
  - Every route except /health and /ready requires a verified bearer token;
    the token's (sub, org_id) pair scopes every read and write
  - Pipeline work is asynchronous: uploads and triggers answer 202 with a job
  - Uniform ErrorResponse envelope on every 4xx/5xx

Error mapping:
  DocIntelError subclasses → their status_code + error_code
  ServiceUnavailable       → 503 + Retry-After
  RequestValidationError   → 422 VALIDATION_ERROR
  anything else            → 500 INTERNAL_ERROR (no stack traces leaked)
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from docintel.api.v1.chat import router as chat_router
from docintel.api.v1.documents import router as documents_router
from docintel.api.v1.jobs import router as jobs_router
from docintel.auth.dependencies import Services
from docintel.core.config import settings
from docintel.core.errors import DocIntelError, ServiceUnavailable
from docintel.observability.tracing import TracingConfig
from docintel.schemas.documents import ErrorDetail, ErrorResponse
from docintel.services.ingestion import UploadRejected

logger = logging.getLogger(__name__)

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)


def _request_id(request: Request) -> str:
    return request.headers.get("X-Request-ID") or str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Application lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    TracingConfig.init(settings.langsmith_api_key, settings.langsmith_project)
    logger.info(
        "Starting Document Intelligence API | env=%s store=%s pipeline=%s",
        settings.app_env, settings.store_backend, settings.pipeline_backend,
    )
    yield
    logger.info("Shutting down Document Intelligence API")
    if settings.store_backend == "sql":
        from docintel.db.session import get_engine
        await get_engine().dispose()


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app() -> FastAPI:
    app = FastAPI(
        title="Document Intelligence API",
        description=(
            "Document upload, OCR and structured extraction, chunk embedding, "
            "semantic search and retrieval-augmented chat, isolated per organization."
        ),
        version="1.0.0",
        docs_url="/api/docs" if not settings.is_production else None,
        redoc_url=None,
        openapi_url="/api/openapi.json" if not settings.is_production else None,
        lifespan=lifespan,
    )

    app.add_middleware(GZipMiddleware, minimum_size=1024)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.app_env == "development" else [],
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID", "Retry-After"],
    )

    @app.middleware("http")
    async def request_id_and_logging(request: Request, call_next):
        request_id = _request_id(request)
        start = time.perf_counter()

        response = await call_next(request)

        response.headers["X-Request-ID"] = request_id
        logger.info(
            "HTTP %s %s %d %.1fms | request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            (time.perf_counter() - start) * 1000,
            request_id,
        )
        return response

    # ----------------------------------------------------------------
    # Exception handlers: uniform structured error responses
    # ----------------------------------------------------------------

    @app.exception_handler(UploadRejected)
    async def upload_rejected_handler(request: Request, exc: UploadRejected):
        body = exc.response.model_copy(update={"request_id": _request_id(request)})
        return JSONResponse(status_code=exc.status_code, content=body.model_dump(mode="json"))

    @app.exception_handler(DocIntelError)
    async def docintel_error_handler(request: Request, exc: DocIntelError):
        request_id = _request_id(request)
        if exc.status_code >= 500:
            logger.error("Request failed | path=%s code=%s error=%s", request.url.path, exc.error_code, exc.message)
        body = ErrorResponse(
            error_code=exc.error_code,
            message=exc.message,
            details=[
                ErrorDetail(field=key, message=str(value), code=exc.error_code)
                for key, value in exc.details.items()
            ],
            request_id=request_id,
        )
        headers = {"X-Request-ID": request_id}
        if isinstance(exc, ServiceUnavailable):
            headers["Retry-After"] = str(exc.retry_after)
        return JSONResponse(status_code=exc.status_code, content=body.model_dump(mode="json"), headers=headers)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        details = [
            ErrorDetail(
                field=" → ".join(str(loc) for loc in err["loc"]),
                message=err["msg"],
                code="VALIDATION_ERROR",
            )
            for err in exc.errors()
        ]
        body = ErrorResponse(
            error_code="VALIDATION_ERROR",
            message="Request validation failed.",
            details=details,
            request_id=_request_id(request),
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=body.model_dump(mode="json"),
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        request_id = _request_id(request)
        logger.exception("Unhandled exception | path=%s request_id=%s", request.url.path, request_id)
        body = ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="An unexpected error occurred.",
            request_id=request_id,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=body.model_dump(mode="json"),
            headers={"X-Request-ID": request_id},
        )

    # ----------------------------------------------------------------
    # Routers
    # ----------------------------------------------------------------

    app.include_router(documents_router, prefix="/api/v1")
    app.include_router(jobs_router,      prefix="/api/v1")
    app.include_router(chat_router,      prefix="/api/v1")

    # ----------------------------------------------------------------
    # Health & readiness (no auth; used by the load balancer)
    # ----------------------------------------------------------------

    @app.get("/health", tags=["Operations"], summary="Liveness probe")
    async def health() -> dict:
        return {"status": "ok", "service": "docintel-api"}

    @app.get("/ready", tags=["Operations"], summary="Readiness probe: the store answers")
    async def readiness(services: Services) -> JSONResponse:
        if not await services.repositories.ping():
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "not_ready", "store": settings.store_backend},
            )
        return JSONResponse(status_code=status.HTTP_200_OK, content={"status": "ready", "store": settings.store_backend})

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "docintel.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.app_env == "development",
        log_level="debug" if settings.debug else "info",
    )
