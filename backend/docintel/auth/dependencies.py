"""
Composed FastAPI Dependencies

Route handlers import their request context from here: the verified
identity and the services, both overridable in tests through
app.dependency_overrides.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends

from docintel.auth.token import Identity, get_current_identity
from docintel.chat.service import ChatService
from docintel.pipeline.orchestrator import PipelineOrchestrator
from docintel.services.ingestion import IngestionService
from docintel.services.registry import ServiceContainer, get_container
from docintel.services.search import SemanticSearchService
from docintel.store.base import DocumentRepository


def get_services() -> ServiceContainer:
    return get_container()


Services = Annotated[ServiceContainer, Depends(get_services)]


def get_orchestrator(services: Services) -> PipelineOrchestrator:
    return services.orchestrator


def get_ingestion(services: Services) -> IngestionService:
    return services.ingestion


def get_search(services: Services) -> SemanticSearchService:
    return services.search


def get_chat(services: Services) -> ChatService:
    return services.chat


def get_documents(services: Services) -> DocumentRepository:
    return services.repositories.documents


# ---------------------------------------------------------------------------
# Type aliases for cleaner route signatures
# ---------------------------------------------------------------------------

CurrentIdentity = Annotated[Identity,              Depends(get_current_identity)]
Orchestrator    = Annotated[PipelineOrchestrator,  Depends(get_orchestrator)]
Ingestion       = Annotated[IngestionService,      Depends(get_ingestion)]
Search          = Annotated[SemanticSearchService, Depends(get_search)]
Chat            = Annotated[ChatService,           Depends(get_chat)]
Documents       = Annotated[DocumentRepository,    Depends(get_documents)]
