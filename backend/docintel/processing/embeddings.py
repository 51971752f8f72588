"""
Embedding Pipeline  —  Batched Embeddings with Retry
════════════════════════════════════════════════════

Design goals:
  • Batch efficiency: one backend call per `batch_size` texts (default 20)
  • Bounded fan-out: at most `max_concurrency` batch calls in flight
  • Retry: exponential back-off on transient errors, per batch
  • All-or-nothing: if any batch exhausts its retries the whole call fails.
    A document never ends up with a partially embedded chunk set.
  • Explicit deadline on every backend call (with_timeout)

Retry policy (per batch):
  transient error (is_transient)  → wait base × 2^(attempt−1), capped at max_delay
  anything else                   → fail immediately

OpenAI embedding model selection:
  text-embedding-3-small  → 1536 dims (default)
  text-embedding-3-large  → 3072 dims
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from docintel.core.errors import InvalidConfiguration, TransientServiceFailure, is_transient, with_timeout

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Defaults (overridden from settings by the service registry)
# ---------------------------------------------------------------------------

EMBEDDING_BATCH_SIZE   = 20
MAX_CONCURRENT_BATCHES = 4
MAX_RETRIES            = 3      # retries after the first attempt
RETRY_BASE_DELAY       = 1.0    # seconds; doubles each retry
RETRY_MAX_DELAY        = 30.0
CALL_TIMEOUT_SECONDS   = 30.0


# ---------------------------------------------------------------------------
# Backend contract
# ---------------------------------------------------------------------------

class Embedder(ABC):
    """embed(texts) -> one vector per text, same order. May raise."""

    @property
    @abstractmethod
    def model_name(self) -> str:
        ...

    @abstractmethod
    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        ...


class OpenAIEmbedder(Embedder):
    """openai.AsyncOpenAI embeddings endpoint."""

    def __init__(
        self,
        api_key:    str,
        model:      str = "text-embedding-3-small",
        dimensions: int = 1536,
        client:     Optional[Any] = None,
    ) -> None:
        if not api_key and client is None:
            raise InvalidConfiguration("OPENAI_API_KEY is required for embeddings")
        self._api_key    = api_key
        self._model      = model
        self._dimensions = dimensions
        self._client     = client

    @property
    def model_name(self) -> str:
        return self._model

    def _get_client(self):
        if self._client is None:
            from openai import AsyncOpenAI
            self._client = AsyncOpenAI(api_key=self._api_key)
        return self._client

    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        kwargs: dict[str, Any] = {"model": self._model, "input": list(texts)}
        # dimensions is only accepted by text-embedding-3-* models
        if self._model.startswith("text-embedding-3") and self._dimensions != 1536:
            kwargs["dimensions"] = self._dimensions

        response = await self._get_client().embeddings.create(**kwargs)

        if response.usage:
            logger.debug(
                "OpenAI embeddings | size=%d tokens=%d model=%s",
                len(texts), response.usage.total_tokens, self._model,
            )
        ordered = sorted(response.data, key=lambda d: d.index)
        return [list(d.embedding) for d in ordered]


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

@dataclass
class EmbeddingBatchResult:
    vectors:    list[list[float]]
    batches:    int
    retries:    int
    elapsed_ms: float

    @property
    def dimensions(self) -> int:
        return len(self.vectors[0]) if self.vectors else 0


class EmbeddingPipeline:
    """
    Stateless wrapper around an Embedder.

    Usage:
        pipeline = EmbeddingPipeline(OpenAIEmbedder(api_key=...))
        result   = await pipeline.embed_texts(chunks)
        query    = await pipeline.embed_query("what is the total?")
    """

    def __init__(
        self,
        embedder:        Embedder,
        batch_size:      int   = EMBEDDING_BATCH_SIZE,
        max_concurrency: int   = MAX_CONCURRENT_BATCHES,
        max_retries:     int   = MAX_RETRIES,
        base_delay:      float = RETRY_BASE_DELAY,
        max_delay:       float = RETRY_MAX_DELAY,
        timeout:         float = CALL_TIMEOUT_SECONDS,
    ) -> None:
        if batch_size <= 0 or max_concurrency <= 0 or max_retries < 0:
            raise InvalidConfiguration(
                "embedding batch_size and max_concurrency must be positive, max_retries >= 0"
            )
        self._embedder        = embedder
        self._batch_size      = batch_size
        self._max_concurrency = max_concurrency
        self._max_retries     = max_retries
        self._base_delay      = base_delay
        self._max_delay       = max_delay
        self._timeout         = timeout

    @property
    def model_name(self) -> str:
        return self._embedder.model_name

    async def embed_texts(self, texts: Sequence[str]) -> EmbeddingBatchResult:
        """Embed every text or raise; vectors line up with `texts`."""
        if not texts:
            return EmbeddingBatchResult(vectors=[], batches=0, retries=0, elapsed_ms=0.0)

        t0 = time.monotonic()
        batches = [
            list(texts[i : i + self._batch_size])
            for i in range(0, len(texts), self._batch_size)
        ]
        logger.info(
            "EmbeddingPipeline | texts=%d batches=%d model=%s",
            len(texts), len(batches), self.model_name,
        )

        semaphore = asyncio.Semaphore(self._max_concurrency)
        results = await asyncio.gather(
            *(self._embed_batch_with_retry(b, idx, semaphore) for idx, b in enumerate(batches)),
            return_exceptions=True,
        )

        failures = [r for r in results if isinstance(r, BaseException)]
        if failures:
            logger.error(
                "EmbeddingPipeline failed | batches=%d failed=%d first_error=%s",
                len(batches), len(failures), failures[0],
            )
            raise failures[0]

        vectors: list[list[float]] = []
        retries = 0
        for batch_vectors, batch_retries in results:
            vectors.extend(batch_vectors)
            retries += batch_retries

        if len(vectors) != len(texts):
            raise TransientServiceFailure(
                f"Embedding backend returned {len(vectors)} vectors for {len(texts)} texts"
            )

        elapsed_ms = (time.monotonic() - t0) * 1000
        logger.info(
            "EmbeddingPipeline done | vectors=%d retries=%d elapsed_ms=%.0f",
            len(vectors), retries, elapsed_ms,
        )
        return EmbeddingBatchResult(
            vectors=vectors,
            batches=len(batches),
            retries=retries,
            elapsed_ms=elapsed_ms,
        )

    async def embed_query(self, text: str) -> list[float]:
        """Single query vector, same model as ingestion. One attempt; callers own retry."""
        vectors = await with_timeout(self._embedder.embed([text]), self._timeout, "embed_query")
        if not vectors:
            raise TransientServiceFailure("Embedding backend returned no vector for the query")
        return vectors[0]

    def retry_delay(self, attempt: int) -> float:
        """Back-off before retry number `attempt` (1-based)."""
        return min(self._base_delay * (2 ** (attempt - 1)), self._max_delay)

    async def _embed_batch_with_retry(
        self,
        batch:     list[str],
        batch_idx: int,
        semaphore: asyncio.Semaphore,
    ) -> tuple[list[list[float]], int]:
        last_error: Exception | None = None

        for attempt in range(self._max_retries + 1):
            if attempt > 0:
                delay = self.retry_delay(attempt)
                logger.warning(
                    "Embedding retry | batch=%d attempt=%d delay=%.1fs error=%s",
                    batch_idx, attempt, delay, last_error,
                )
                await asyncio.sleep(delay)

            async with semaphore:
                try:
                    vectors = await with_timeout(
                        self._embedder.embed(batch),
                        self._timeout,
                        f"embedding batch {batch_idx}",
                    )
                except Exception as exc:
                    if not is_transient(exc):
                        logger.error("Non-retryable embedding error | batch=%d error=%s", batch_idx, exc)
                        raise
                    last_error = exc
                    continue

            if len(vectors) != len(batch):
                last_error = TransientServiceFailure(
                    f"batch {batch_idx}: expected {len(batch)} vectors, got {len(vectors)}"
                )
                continue
            return vectors, attempt

        raise last_error or TransientServiceFailure(f"Embedding batch {batch_idx} failed")
