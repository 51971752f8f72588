"""
Service Registry — the single wiring point.

Builds every collaborator from Settings and hands them to the services:

    Settings ──► Repositories (sql | memory)
             ──► ObjectStorage (S3)
             ──► EventLog (ring buffer | audit_logs)
             ──► OCR / vision / embeddings / completion backends
             ──► ExtractionStage, EmbeddingStage
             ──► PipelineOrchestrator + dispatcher (celery | local)
             ──► IngestionService, SemanticSearchService, ChatService

The API process and the Celery worker each call get_container() once per
process. Tests call build_container() with in-memory stores and fake
backends passed as overrides.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from docintel.chat.service import ChatService
from docintel.core.config import Settings, get_settings
from docintel.core.errors import InvalidConfiguration
from docintel.llm.completion import ChatOpenAIBackend, CompletionBackend
from docintel.observability.event_log import AuditTrailEventLog, EventLog, RingBufferEventLog
from docintel.pipeline.dispatch import CeleryDispatcher, JobDispatcher, LocalDispatcher
from docintel.pipeline.embedding import EmbeddingStage
from docintel.pipeline.extraction import ExtractionStage
from docintel.pipeline.orchestrator import PipelineOrchestrator
from docintel.pipeline.retry import RetryPolicy
from docintel.processing.embeddings import Embedder, EmbeddingPipeline, OpenAIEmbedder
from docintel.processing.ocr import OCREngine, build_ocr_engine
from docintel.processing.vision import OpenAIVisionExtractor, StructuredExtractor
from docintel.services.ingestion import IngestionService
from docintel.services.search import SemanticSearchService
from docintel.storage.s3 import ObjectStorage, S3ObjectStorage
from docintel.store.base import Repositories

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    settings:     Settings
    repositories: Repositories
    storage:      ObjectStorage
    events:       EventLog
    dispatcher:   JobDispatcher
    orchestrator: PipelineOrchestrator
    ingestion:    IngestionService
    search:       SemanticSearchService
    chat:         ChatService


# ---------------------------------------------------------------------------
# Collaborator factories
# ---------------------------------------------------------------------------

def build_repositories(s: Settings) -> Repositories:
    if s.store_backend == "memory":
        from docintel.store.memory import build_memory_repositories
        return build_memory_repositories()
    if s.store_backend == "sql":
        from docintel.db.session import get_session_factory
        from docintel.store.sql import SqlRepositories
        return SqlRepositories(get_session_factory())
    raise InvalidConfiguration(f"Unknown store backend: {s.store_backend!r}")


def build_event_log(s: Settings) -> EventLog:
    if s.event_log_backend == "memory":
        return RingBufferEventLog(max_entries=s.event_log_max_entries, retention_days=s.event_log_retention_days)
    if s.event_log_backend == "audit":
        from docintel.db.session import get_session_factory
        return AuditTrailEventLog(get_session_factory(), retention_days=s.event_log_retention_days)
    raise InvalidConfiguration(f"Unknown event log backend: {s.event_log_backend!r}")


def build_dispatcher(s: Settings) -> JobDispatcher:
    if s.pipeline_backend == "celery":
        return CeleryDispatcher()
    if s.pipeline_backend == "local":
        return LocalDispatcher(max_workers=s.pipeline_local_workers)
    raise InvalidConfiguration(f"Unknown pipeline backend: {s.pipeline_backend!r}")


def build_vision(s: Settings) -> Optional[StructuredExtractor]:
    # Vision is opt-in per job; without a key the stage degrades that step
    if not s.openai_api_key:
        logger.warning("OPENAI_API_KEY not set; structured extraction disabled")
        return None
    return OpenAIVisionExtractor(api_key=s.openai_api_key, model=s.vision_model)


# ---------------------------------------------------------------------------
# Container
# ---------------------------------------------------------------------------

def build_container(
    s:            Settings,
    *,
    repositories: Optional[Repositories]        = None,
    storage:      Optional[ObjectStorage]       = None,
    events:       Optional[EventLog]            = None,
    dispatcher:   Optional[JobDispatcher]       = None,
    ocr:          Optional[OCREngine]           = None,
    vision:       Optional[StructuredExtractor] = None,
    embedder:     Optional[Embedder]            = None,
    completion:   Optional[CompletionBackend]   = None,
    retry_policy: Optional[RetryPolicy]         = None,
) -> ServiceContainer:
    repositories = repositories or build_repositories(s)
    storage = storage or S3ObjectStorage(
        bucket=s.s3_bucket,
        region=s.aws_region,
        kms_key_arn=s.s3_default_kms_key_arn,
        access_key_id=s.aws_access_key_id,
        secret_access_key=s.aws_secret_access_key,
    )
    events     = events or build_event_log(s)
    dispatcher = dispatcher or build_dispatcher(s)
    ocr        = ocr or build_ocr_engine(s.ocr_backend, region=s.aws_region)
    if vision is None:
        vision = build_vision(s)
    embedder   = embedder or OpenAIEmbedder(
        api_key=s.openai_api_key,
        model=s.embedding_model,
        dimensions=s.embedding_dimensions,
    )
    completion = completion or ChatOpenAIBackend(
        api_key=s.openai_api_key,
        model=s.llm_model,
        max_tokens=s.llm_max_tokens,
    )

    embeddings = EmbeddingPipeline(
        embedder,
        batch_size=s.embedding_batch_size,
        max_concurrency=s.embedding_max_concurrency,
        max_retries=s.embedding_max_retries,
        base_delay=s.embedding_retry_base_delay,
        max_delay=s.embedding_retry_max_delay,
        timeout=s.embedding_timeout_seconds,
    )
    extraction = ExtractionStage(
        repositories.documents,
        storage,
        ocr,
        events,
        vision,
        download_timeout=s.download_timeout_seconds,
        ocr_timeout=s.ocr_timeout_seconds,
        vision_timeout=s.vision_timeout_seconds,
        vision_min_text_chars=s.vision_min_text_chars,
    )
    embedding = EmbeddingStage(
        repositories.documents,
        repositories.embeddings,
        embeddings,
        events,
        chunk_size=s.chunk_size,
        chunk_overlap=s.chunk_overlap,
    )
    orchestrator = PipelineOrchestrator(
        repositories.jobs,
        repositories.documents,
        repositories.embeddings,
        extraction,
        embedding,
        dispatcher,
        events,
        retry_policy=retry_policy or RetryPolicy.from_settings(s),
    )
    if isinstance(dispatcher, LocalDispatcher):
        dispatcher.bind(orchestrator.run)

    chat = ChatService(
        repositories.chats,
        repositories.documents,
        repositories.embeddings,
        embeddings,
        completion,
        events,
        similarity_floor=s.chat_similarity_floor,
        context_chunks=s.chat_default_context_chunks,
        history_messages=s.chat_history_messages,
        generate_titles=s.chat_generate_titles,
        completion_timeout=s.llm_timeout_seconds,
        max_tokens=s.llm_max_tokens,
    )

    logger.info(
        "Services wired | store=%s pipeline=%s events=%s ocr=%s embed_model=%s llm=%s",
        s.store_backend, s.pipeline_backend, s.event_log_backend,
        s.ocr_backend, s.embedding_model, s.llm_model,
    )
    return ServiceContainer(
        settings=s,
        repositories=repositories,
        storage=storage,
        events=events,
        dispatcher=dispatcher,
        orchestrator=orchestrator,
        ingestion=IngestionService(repositories.documents, storage, orchestrator, events),
        search=SemanticSearchService(repositories.documents, repositories.embeddings, embeddings),
        chat=chat,
    )


@lru_cache
def get_container() -> ServiceContainer:
    return build_container(get_settings())
