"""
Pipeline Job API Router

GET  /api/v1/jobs/{job_id}        — state, attempts and 0–100 progress (polled by the UI)
POST /api/v1/jobs/{job_id}/retry  — manual re-trigger of a failed job
"""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, status

from docintel.auth.dependencies import CurrentIdentity, Orchestrator
from docintel.schemas.documents import ErrorResponse, JobResponse
from docintel.store.base import JobRecord

router = APIRouter(prefix="/jobs", tags=["Pipeline Jobs"])


def to_job_response(job: JobRecord) -> JobResponse:
    return JobResponse(
        job_id=job.id,
        kind=job.kind,
        document_id=job.document_id,
        status=job.status,
        attempts=job.attempts,
        max_attempts=job.max_attempts,
        progress=job.progress,
        last_error=job.last_error,
        result=job.result,
        created_at=job.created_at,
        updated_at=job.updated_at,
    )


@router.get(
    "/{job_id}",
    response_model=JobResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_job(job_id: UUID, identity: CurrentIdentity, orchestrator: Orchestrator) -> JobResponse:
    return to_job_response(await orchestrator.get_job(job_id, identity.org_id))


@router.post(
    "/{job_id}/retry",
    response_model=JobResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Re-queue a failed job with a fresh attempt budget",
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def retry_job(job_id: UUID, identity: CurrentIdentity, orchestrator: Orchestrator) -> JobResponse:
    return to_job_response(await orchestrator.retrigger(job_id, identity.org_id))
