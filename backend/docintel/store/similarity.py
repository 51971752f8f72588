"""
Brute-force cosine ranking shared by every EmbeddingStore backend.

Candidates are stacked into one float32 matrix and scored with a single
matrix-vector product. Zero-magnitude vectors score 0.0. Candidates whose
dimensionality differs from the query are not comparable and are skipped.
"""

from __future__ import annotations

import logging
from typing import Iterable, Sequence, TypeVar

import numpy as np

logger = logging.getLogger(__name__)

T = TypeVar("T")


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine of the angle between two vectors; 0.0 if either has no magnitude."""
    va = np.asarray(a, dtype=np.float32)
    vb = np.asarray(b, dtype=np.float32)
    if va.shape != vb.shape:
        return 0.0
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    return float(np.dot(va, vb) / denom)


def rank_by_similarity(
    query_vector:   Sequence[float],
    candidates:     Iterable[tuple[T, Sequence[float]]],
    top_k:          int,
    min_similarity: float = 0.0,
) -> list[tuple[T, float]]:
    """
    Score (item, vector) pairs against the query and return the best top_k
    at or above min_similarity, highest first. Ties keep candidate order.
    """
    if top_k <= 0:
        return []

    query = np.asarray(query_vector, dtype=np.float32)
    dims  = query.shape[0] if query.ndim == 1 else 0

    items:   list[T] = []
    vectors: list[Sequence[float]] = []
    skipped = 0
    for item, vector in candidates:
        if len(vector) != dims:
            skipped += 1
            continue
        items.append(item)
        vectors.append(vector)

    if skipped:
        logger.warning(
            "Similarity scan | skipped=%d reason=dimension_mismatch query_dims=%d",
            skipped, dims,
        )
    if not items:
        return []

    matrix = np.asarray(vectors, dtype=np.float32)
    norms  = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
    dots   = matrix @ query

    scores = np.zeros(len(items), dtype=np.float32)
    nonzero = norms > 0
    scores[nonzero] = dots[nonzero] / norms[nonzero]

    order = np.argsort(-scores, kind="stable")
    ranked: list[tuple[T, float]] = []
    for idx in order:
        score = float(scores[idx])
        if score < min_similarity:
            break
        ranked.append((items[idx], round(score, 6)))
        if len(ranked) >= top_k:
            break
    return ranked
