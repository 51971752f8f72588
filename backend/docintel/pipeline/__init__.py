"""
Pipeline Package

Extraction and embedding stages plus the orchestrator that runs them as
durable jobs::

    from docintel.pipeline import PipelineOrchestrator

    job = await orchestrator.enqueue_extraction(document_id, org_id)
    ...
    await orchestrator.run(job.id)       # inside a worker
"""

from docintel.pipeline.dispatch import CeleryDispatcher, JobDispatcher, LocalDispatcher
from docintel.pipeline.embedding import EmbeddingResult, EmbeddingStage
from docintel.pipeline.extraction import ExtractionResult, ExtractionStage
from docintel.pipeline.orchestrator import PipelineOrchestrator
from docintel.pipeline.retry import RetryPolicy

__all__ = [
    "CeleryDispatcher",
    "EmbeddingResult",
    "EmbeddingStage",
    "ExtractionResult",
    "ExtractionStage",
    "JobDispatcher",
    "LocalDispatcher",
    "PipelineOrchestrator",
    "RetryPolicy",
]
