"""
Job dispatchers — how a persisted job id reaches a worker.

The job row in pipeline_jobs is the source of truth; a dispatcher only moves
the id. Delivery is at-least-once: a lost message leaves the row `queued`,
and the stale-job scanner dispatches it again.

  CeleryDispatcher  — apply_async onto the kind's queue, with countdown
  LocalDispatcher   — in-process asyncio pool bounded by a semaphore
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional
from uuid import UUID

from docintel.core.errors import InvalidConfiguration
from docintel.schemas.documents import JobKind

logger = logging.getLogger(__name__)

JobRunner = Callable[[UUID], Awaitable[Any]]

QUEUE_FOR_KIND: dict[JobKind, str] = {
    JobKind.EXTRACTION: "pipeline.extraction",
    JobKind.EMBEDDING:  "pipeline.embedding",
}


class JobDispatcher(ABC):

    @abstractmethod
    async def dispatch(self, job_id: UUID, kind: JobKind, countdown: float = 0.0) -> None:
        """Hand the job id to a worker, optionally after `countdown` seconds."""


class CeleryDispatcher(JobDispatcher):
    """
    Publishes run_pipeline_job. The task import is deferred so the broker is
    not needed at module load time; publishing runs in a thread executor.
    """

    async def dispatch(self, job_id: UUID, kind: JobKind, countdown: float = 0.0) -> None:
        from docintel.workers.tasks import run_pipeline_job

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(
            None,
            lambda: run_pipeline_job.apply_async(
                args=[str(job_id)],
                queue=QUEUE_FOR_KIND[kind],
                countdown=countdown or None,
            ),
        )
        logger.info("Job dispatched | job=%s kind=%s countdown=%.1fs", job_id, kind.value, countdown)


class LocalDispatcher(JobDispatcher):
    """
    Runs jobs on the current event loop, at most `max_workers` at a time.
    drain() waits until every dispatched job, including retries those jobs
    schedule, has finished.
    """

    def __init__(self, max_workers: int = 4) -> None:
        if max_workers < 1:
            raise InvalidConfiguration("max_workers must be >= 1")
        self._max_workers = max_workers
        self._semaphore   = asyncio.Semaphore(max_workers)
        self._tasks: set[asyncio.Task] = set()
        self._runner: Optional[JobRunner] = None
        self._running = 0
        self.peak_concurrency = 0

    def bind(self, runner: JobRunner) -> None:
        self._runner = runner

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def dispatch(self, job_id: UUID, kind: JobKind, countdown: float = 0.0) -> None:
        if self._runner is None:
            raise InvalidConfiguration("LocalDispatcher has no runner bound")
        task = asyncio.get_running_loop().create_task(self._run(job_id, countdown))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.debug("Job scheduled locally | job=%s kind=%s countdown=%.1fs", job_id, kind.value, countdown)

    async def _run(self, job_id: UUID, countdown: float) -> None:
        if countdown > 0:
            await asyncio.sleep(countdown)
        async with self._semaphore:
            self._running += 1
            self.peak_concurrency = max(self.peak_concurrency, self._running)
            try:
                await self._runner(job_id)
            except Exception as exc:
                logger.error("Local job crashed | job=%s error=%s", job_id, exc, exc_info=True)
            finally:
                self._running -= 1

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
