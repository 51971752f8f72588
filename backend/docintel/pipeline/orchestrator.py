"""
Pipeline Orchestrator
═════════════════════

Owns the job state machine for the two pipeline stages:

    queued ──► running ──► succeeded
       ▲          │
       │          ├──► queued     (retryable error, attempts left: re-dispatched with back-off)
       │          └──► failed     (non-retryable, or attempts exhausted)
       │                  │
       └── retrigger() ◄──┘       (manual, fresh attempt budget)

Every job is a pipeline_jobs row carrying {document_id, org_id}. Dispatchers
only move job ids; run() reloads the row, so duplicate deliveries are
harmless: a job that already succeeded or failed is skipped, and both
stages are safe to re-run on their own.

Ordering for one document: the extraction stage enqueues embedding only
after it has persisted its result, through enqueue_embedding().

run() never raises for stage errors. The outcome lives on the job row
(status, attempts, last_error, result) and in the event log.
"""

from __future__ import annotations

import logging
import time
from datetime import timedelta
from typing import Any, Awaitable, Callable, Optional
from uuid import UUID

from docintel.core.errors import NotFound, PreconditionFailed
from docintel.observability.event_log import EventCategory, EventLevel, EventLog
from docintel.pipeline.dispatch import JobDispatcher
from docintel.pipeline.embedding import EmbeddingStage
from docintel.pipeline.extraction import ExtractionStage
from docintel.pipeline.retry import RetryPolicy
from docintel.schemas.documents import ExtractionOptions, JobKind, JobStatus
from docintel.store.base import (
    DocumentRepository,
    EmbeddingStats,
    EmbeddingStore,
    JobRecord,
    JobRepository,
    utcnow,
)

logger = logging.getLogger(__name__)

ProgressHook = Callable[[UUID, int], Awaitable[None]]


class PipelineOrchestrator:

    def __init__(
        self,
        jobs:         JobRepository,
        documents:    DocumentRepository,
        embeddings:   EmbeddingStore,
        extraction:   ExtractionStage,
        embedding:    EmbeddingStage,
        dispatcher:   JobDispatcher,
        events:       EventLog,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self._jobs       = jobs
        self._documents  = documents
        self._embeddings = embeddings
        self._extraction = extraction
        self._embedding  = embedding
        self._dispatcher = dispatcher
        self._events     = events
        self._retry      = retry_policy or RetryPolicy()

        extraction.bind_enqueue(self.enqueue_embedding)

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    async def enqueue_extraction(
        self,
        document_id: UUID,
        org_id:      UUID,
        options:     Optional[ExtractionOptions] = None,
    ) -> JobRecord:
        return await self._enqueue(
            JobKind.EXTRACTION,
            document_id,
            org_id,
            (options or ExtractionOptions()).model_dump(mode="json"),
        )

    async def enqueue_embedding(self, document_id: UUID, org_id: UUID) -> JobRecord:
        return await self._enqueue(JobKind.EMBEDDING, document_id, org_id, {})

    async def _enqueue(self, kind: JobKind, document_id: UUID, org_id: UUID, options: dict) -> JobRecord:
        job = await self._jobs.create(JobRecord(
            kind=kind,
            document_id=document_id,
            org_id=org_id,
            max_attempts=self._retry.max_attempts,
            options=options,
        ))
        logger.info("Job queued | job=%s kind=%s doc=%s org=%s", job.id, kind.value, document_id, org_id)
        await self._dispatcher.dispatch(job.id, kind)
        await self._events.record(
            EventLevel.INFO, EventCategory.PIPELINE, f"{kind.value}.queued",
            f"{kind.value.capitalize()} job queued",
            org_id=org_id, document_id=document_id, job_id=job.id,
        )
        return job

    # ------------------------------------------------------------------
    # Worker entry point
    # ------------------------------------------------------------------

    async def run(self, job_id: UUID, on_progress: Optional[ProgressHook] = None) -> Optional[JobRecord]:
        """
        Execute one attempt of the job and settle its state.

        `on_progress` is called after every checkpoint is written to the job
        row; the Celery task uses it to mirror progress into task meta.
        """
        job = await self._jobs.get(job_id)
        if job is None:
            logger.warning("Job not found, dropping message | job=%s", job_id)
            return None
        if job.status in (JobStatus.SUCCEEDED, JobStatus.FAILED):
            logger.info("Job already settled, skipping | job=%s status=%s", job_id, job.status.value)
            return job

        job = await self._jobs.update(
            job_id,
            status=JobStatus.RUNNING,
            attempts=job.attempts + 1,
            progress=0,
        )
        logger.info(
            "Job running | job=%s kind=%s doc=%s attempt=%d/%d",
            job.id, job.kind.value, job.document_id, job.attempts, job.max_attempts,
        )

        async def progress(value: int) -> None:
            await self._jobs.update(job_id, progress=value)
            if on_progress is not None:
                await on_progress(job_id, value)

        t0 = time.monotonic()
        try:
            result = await self._execute(job, progress)
        except Exception as exc:
            return await self._settle_failure(job, exc, (time.monotonic() - t0) * 1000)

        job = await self._jobs.update(
            job_id,
            status=JobStatus.SUCCEEDED,
            progress=100,
            result=result,
            last_error=None,
        )
        elapsed_ms = (time.monotonic() - t0) * 1000
        logger.info("Job succeeded | job=%s kind=%s elapsed_ms=%.0f", job.id, job.kind.value, elapsed_ms)
        await self._events.record(
            EventLevel.INFO, EventCategory.PIPELINE, f"{job.kind.value}.succeeded",
            f"{job.kind.value.capitalize()} succeeded on attempt {job.attempts}",
            org_id=job.org_id, document_id=job.document_id, job_id=job.id,
            duration_ms=elapsed_ms, metadata={"attempts": job.attempts},
        )
        return job

    async def _execute(self, job: JobRecord, progress) -> dict[str, Any]:
        if job.kind is JobKind.EXTRACTION:
            options = ExtractionOptions.model_validate(job.options or {})
            result = await self._extraction.extract(job.document_id, job.org_id, options, progress=progress)
        else:
            result = await self._embedding.embed(job.document_id, job.org_id, progress=progress)
        return result.to_dict()

    async def _settle_failure(self, job: JobRecord, exc: BaseException, elapsed_ms: float) -> JobRecord:
        message = f"{type(exc).__name__}: {exc}"

        if self._retry.should_retry(exc, job.attempts, job.max_attempts):
            delay = self._retry.delay_for(job.attempts)
            job = await self._jobs.update(job.id, status=JobStatus.QUEUED, last_error=message)
            logger.warning(
                "Job retry scheduled | job=%s kind=%s attempt=%d/%d delay=%.1fs error=%s",
                job.id, job.kind.value, job.attempts, job.max_attempts, delay, message,
            )
            await self._events.record(
                EventLevel.WARN, EventCategory.PIPELINE, f"{job.kind.value}.retry_scheduled",
                f"Attempt {job.attempts} failed; retrying in {delay:.1f}s",
                org_id=job.org_id, document_id=job.document_id, job_id=job.id,
                duration_ms=elapsed_ms, metadata={"attempts": job.attempts, "delay_s": delay}, error=exc,
            )
            await self._dispatcher.dispatch(job.id, job.kind, countdown=delay)
            return job

        job = await self._jobs.update(job.id, status=JobStatus.FAILED, last_error=message)
        reason = "exhausted" if self._retry.is_retryable(exc) else "non_retryable"
        logger.error(
            "Job failed | job=%s kind=%s attempt=%d/%d reason=%s error=%s",
            job.id, job.kind.value, job.attempts, job.max_attempts, reason, message,
        )
        await self._events.record(
            EventLevel.ERROR, EventCategory.PIPELINE, f"{job.kind.value}.failed",
            f"Job failed after {job.attempts} attempt(s) ({reason})",
            org_id=job.org_id, document_id=job.document_id, job_id=job.id,
            duration_ms=elapsed_ms, metadata={"attempts": job.attempts, "reason": reason}, error=exc,
        )
        return job

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    async def get_job(self, job_id: UUID, org_id: UUID) -> JobRecord:
        job = await self._jobs.get(job_id)
        if job is None or job.org_id != org_id:
            raise NotFound("Job not found", details={"job_id": str(job_id)})
        return job

    async def retrigger(self, job_id: UUID, org_id: UUID) -> JobRecord:
        job = await self.get_job(job_id, org_id)
        if job.status is not JobStatus.FAILED:
            raise PreconditionFailed(
                "Only failed jobs can be retried",
                details={"job_id": str(job_id), "status": job.status.value},
            )
        job = await self._jobs.update(job_id, status=JobStatus.QUEUED, attempts=0, progress=0)
        logger.info("Job retriggered | job=%s kind=%s doc=%s", job.id, job.kind.value, job.document_id)
        await self._dispatcher.dispatch(job.id, job.kind)
        await self._events.record(
            EventLevel.INFO, EventCategory.PIPELINE, f"{job.kind.value}.retriggered",
            "Failed job re-queued with a fresh attempt budget",
            org_id=job.org_id, document_id=job.document_id, job_id=job.id,
        )
        return job

    async def requeue_stale(self, older_than_seconds: float, limit: int = 50) -> int:
        """
        Re-dispatch queued jobs whose message never reached a worker.
        Jobs waiting on a retry countdown are only picked up once their
        row is older than the cutoff, which the back-off cap keeps below it.
        """
        cutoff = utcnow() - timedelta(seconds=older_than_seconds)
        stale = await self._jobs.list_stale(JobStatus.QUEUED, cutoff, limit=limit)
        for job in stale:
            # Touch updated_at so the next scan does not pick it up again immediately
            await self._jobs.update(job.id)
            await self._dispatcher.dispatch(job.id, job.kind)
            logger.warning("Stale job re-dispatched | job=%s kind=%s age_cutoff=%s", job.id, job.kind.value, cutoff)
        if stale:
            await self._events.record(
                EventLevel.WARN, EventCategory.PIPELINE, "pipeline.requeued_stale",
                f"Re-dispatched {len(stale)} stale job(s)",
                metadata={"job_ids": [str(j.id) for j in stale]},
            )
        return len(stale)

    async def get_embedding_stats(self, document_id: UUID, org_id: UUID) -> Optional[EmbeddingStats]:
        if await self._documents.get(document_id, org_id) is None:
            raise NotFound("Document not found", details={"document_id": str(document_id)})
        return await self._embeddings.get_stats(document_id, org_id)
