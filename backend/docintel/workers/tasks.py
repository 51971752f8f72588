"""
Celery Tasks — Pipeline Job Execution

Task: run_pipeline_job(job_id)
  Loads the job row and runs one attempt through PipelineOrchestrator.run().
  Progress checkpoints (0–100) are written to the job row and mirrored into
  the Celery task state as PROGRESS meta. Retries are re-dispatched by the
  orchestrator with a countdown, so the task itself never raises for a
  failed stage.

Task: requeue_stale_jobs
  Beat task. Re-dispatches queued jobs whose message never reached a worker
  (broker outage during enqueue, lost message).

Task: health_check
  Round-trips the store from inside the worker.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Optional

from celery import Task

from docintel.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Async task helper
# ---------------------------------------------------------------------------

_loop: Optional[asyncio.AbstractEventLoop] = None


def run_async(coro):
    """
    Execute a coroutine from a synchronous Celery task.
    One event loop per worker process: pooled DB connections are bound to it.
    """
    global _loop
    if _loop is None or _loop.is_closed():
        _loop = asyncio.new_event_loop()
        asyncio.set_event_loop(_loop)
    return _loop.run_until_complete(coro)


def _services():
    from docintel.services.registry import get_container
    return get_container()


# ---------------------------------------------------------------------------
# Pipeline job
# ---------------------------------------------------------------------------

@celery_app.task(
    name="docintel.workers.tasks.run_pipeline_job",
    bind=True,
    acks_late=True,
    reject_on_worker_lost=True,
    soft_time_limit=270,
    time_limit=330,
)
def run_pipeline_job(self: Task, job_id: str) -> dict[str, Any]:
    return run_async(_run_pipeline_job_async(self, uuid.UUID(job_id)))


async def _run_pipeline_job_async(task: Task, job_id: uuid.UUID) -> dict[str, Any]:
    orchestrator = _services().orchestrator

    async def mirror_progress(jid: uuid.UUID, progress: int) -> None:
        task.update_state(state="PROGRESS", meta={"job_id": str(jid), "progress": progress})

    job = await orchestrator.run(job_id, on_progress=mirror_progress)
    if job is None:
        return {"job_id": str(job_id), "status": "not_found"}
    return {
        "job_id":   str(job.id),
        "kind":     job.kind.value,
        "status":   job.status.value,
        "attempts": job.attempts,
        "progress": job.progress,
    }


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------

@celery_app.task(name="docintel.workers.tasks.requeue_stale_jobs")
def requeue_stale_jobs() -> dict[str, int]:
    return run_async(_requeue_stale_jobs_async())


async def _requeue_stale_jobs_async() -> dict[str, int]:
    services = _services()
    requeued = await services.orchestrator.requeue_stale(services.settings.pipeline_stale_job_seconds)
    purged = await services.events.purge_expired()
    if requeued:
        logger.warning("Stale scan | requeued=%d", requeued)
    return {"requeued": requeued, "events_purged": purged}


@celery_app.task(name="docintel.workers.tasks.health_check")
def health_check() -> dict[str, str]:
    store_ok = run_async(_services().repositories.ping())
    return {"status": "ok" if store_ok else "degraded", "worker": "healthy", "store": "ok" if store_ok else "error"}
