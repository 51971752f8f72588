"""
Stage Tracing — Timing Spans for Pipeline and Chat Entry Points

`@traced(name)` wraps an async function with wall-clock timing and error
logging. It is always active and logs through the `docintel.trace` logger,
so a deployment raises that logger to DEBUG to see every span:

    trace | span=pipeline.extraction elapsed_ms=412.3 ok

LangSmith:
  The completion backend is a LangChain chat model, so LangSmith tracing is
  switched on purely through environment variables. `TracingConfig.init()`
  sets them from LANGSMITH_API_KEY / LANGSMITH_PROJECT when they are not
  already present in the environment.

Environment variables:
  LANGCHAIN_TRACING_V2=true
  LANGCHAIN_API_KEY=ls__...
  LANGCHAIN_PROJECT=docintel
"""

from __future__ import annotations

import functools
import logging
import os
import time
from typing import Any, Callable, Coroutine, TypeVar

logger = logging.getLogger("docintel.trace")

F = TypeVar("F", bound=Callable[..., Coroutine[Any, Any, Any]])


class TracingConfig:
    """Call once at application startup, with values from Settings."""

    _initialised: bool = False

    @classmethod
    def init(cls, langsmith_api_key: str = "", langsmith_project: str = "docintel") -> None:
        if cls._initialised:
            return
        cls._initialised = True

        if langsmith_api_key and not os.environ.get("LANGCHAIN_API_KEY"):
            os.environ["LANGCHAIN_TRACING_V2"] = "true"
            os.environ["LANGCHAIN_API_KEY"]    = langsmith_api_key
            os.environ["LANGCHAIN_PROJECT"]    = langsmith_project
            logger.info("LangSmith tracing enabled | project=%s", langsmith_project)
        elif os.environ.get("LANGCHAIN_TRACING_V2") == "true":
            logger.info(
                "LangSmith tracing active (from env) | project=%s",
                os.environ.get("LANGCHAIN_PROJECT", "default"),
            )
        else:
            logger.debug("LangSmith tracing disabled")

    @classmethod
    def reset(cls) -> None:
        cls._initialised = False


def traced(name: str | None = None) -> Callable[[F], F]:
    """
    Time an async callable and log the outcome.

    Usage::

        @traced("pipeline.embedding")
        async def embed(self, document_id, org_id): ...
    """
    def decorator(func: F) -> F:
        span_name = name or func.__qualname__

        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            t0 = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
            except Exception as exc:
                elapsed_ms = (time.perf_counter() - t0) * 1000
                logger.error(
                    "trace | span=%s elapsed_ms=%.1f error=%s: %s",
                    span_name, elapsed_ms, type(exc).__name__, exc,
                )
                raise
            elapsed_ms = (time.perf_counter() - t0) * 1000
            logger.debug("trace | span=%s elapsed_ms=%.1f ok", span_name, elapsed_ms)
            return result

        return wrapper  # type: ignore[return-value]
    return decorator
