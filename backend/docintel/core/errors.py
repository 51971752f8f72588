"""
Error taxonomy shared by the pipeline stages, the orchestrator and the chat service.

  NotFound                 — resource not visible under the caller's tenant (404, never retried)
  PreconditionFailed       — a prior stage has not produced its output yet (409, never retried)
  InvalidRequest           — caller input rejected (400)
  InvalidConfiguration     — programmer / config error, fatal (500, never retried)
  TransientServiceFailure  — timeout or 5xx from an external backend (503, retried)
  ServiceUnavailable       — transient failure surfaced synchronously to a chat caller (503)
  PartialExtractionFailure — degraded extraction; recorded as a warning, never raised out of a stage

Third-party exceptions are classified by class-name suffix so this module never
imports the provider SDKs.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

T = TypeVar("T")


class DocIntelError(Exception):
    """Base class. Carries a stable machine-readable code and an HTTP mapping."""

    error_code:  str  = "INTERNAL_ERROR"
    status_code: int  = 500
    retryable:   bool = False

    def __init__(self, message: str, *, details: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class NotFound(DocIntelError):
    error_code  = "NOT_FOUND"
    status_code = 404


class PreconditionFailed(DocIntelError):
    error_code  = "PRECONDITION_FAILED"
    status_code = 409


class EmbeddingsExist(PreconditionFailed):
    """Re-embedding was requested without force on a document that already has chunks."""
    error_code = "EMBEDDINGS_EXIST"


class InvalidRequest(DocIntelError):
    error_code  = "INVALID_REQUEST"
    status_code = 400


class InvalidConfiguration(DocIntelError):
    error_code  = "INVALID_CONFIGURATION"
    status_code = 500


class TransientServiceFailure(DocIntelError):
    error_code  = "TRANSIENT_FAILURE"
    status_code = 503
    retryable   = True


class ServiceUnavailable(TransientServiceFailure):
    error_code = "SERVICE_UNAVAILABLE"

    def __init__(self, message: str, *, retry_after: int = 5, details: dict | None = None) -> None:
        super().__init__(message, details=details)
        self.retry_after = retry_after


class PartialExtractionFailure(DocIntelError):
    """Not raised: stages attach instances of this to their result as warnings."""

    error_code = "PARTIAL_EXTRACTION"

    def __init__(self, step: str, cause: BaseException) -> None:
        super().__init__(f"{step} failed: {cause}")
        self.step  = step
        self.cause = cause


# ---------------------------------------------------------------------------
# Retryable exception detection
# ---------------------------------------------------------------------------

_RETRYABLE_EXCEPTION_TYPES = (
    # openai
    "RateLimitError",
    "ServiceUnavailableError",
    "APITimeoutError",
    "APIConnectionError",
    "InternalServerError",
    # httpx / botocore / generic
    "ConnectTimeout",
    "ReadTimeout",
    "RemoteProtocolError",
    "EndpointConnectionError",
    "ThrottlingException",
)


def is_transient(exc: BaseException) -> bool:
    """True if the exception suggests a transient backend failure."""
    if isinstance(exc, DocIntelError):
        return exc.retryable
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True
    name = type(exc).__name__
    return any(name.endswith(r) for r in _RETRYABLE_EXCEPTION_TYPES)


async def with_timeout(awaitable: Awaitable[T], seconds: float, operation: str) -> T:
    """
    Await an external call with an explicit deadline.
    A timeout is reported as TransientServiceFailure so retry policies treat it
    like any other transient error.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError as exc:
        raise TransientServiceFailure(
            f"{operation} timed out after {seconds:g}s",
            details={"operation": operation, "timeout_seconds": seconds},
        ) from exc
