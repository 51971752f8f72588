"""
Sliding-Window Chunker
══════════════════════

Splits extracted text into fixed-size character windows that overlap by a
configured amount, so a sentence cut at one window boundary still appears
whole in the neighbouring window.

    text   ├──────────── 1000 chars ────────────┤
    chunk0 [0 ........... 500)
    chunk1            [450 ................... 1000)

Window placement
────────────────
  • Windows start every (chunk_size − overlap) characters.
  • A window that would leave a tail of ≤ overlap characters absorbs that tail,
    so the final chunk can be up to chunk_size + overlap long.
  • Windows containing only whitespace are dropped; chunk indices are assigned
    after dropping so they stay contiguous from 0.

The function is pure and deterministic: same text and parameters, same chunks.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from docintel.core.errors import InvalidConfiguration

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE    = 500
DEFAULT_CHUNK_OVERLAP = 50


@dataclass(frozen=True)
class TextWindow:
    """A chunk plus its character span in the source text."""
    chunk_index: int
    start:       int
    end:         int
    text:        str


def validate_chunking(chunk_size: int, overlap: int) -> None:
    if chunk_size <= 0:
        raise InvalidConfiguration(
            f"chunk_size must be positive (got {chunk_size})",
            details={"chunk_size": chunk_size},
        )
    if overlap < 0 or overlap >= chunk_size:
        raise InvalidConfiguration(
            f"overlap must satisfy 0 <= overlap < chunk_size (got overlap={overlap}, chunk_size={chunk_size})",
            details={"chunk_size": chunk_size, "overlap": overlap},
        )


def chunk_windows(
    text:       str,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    overlap:    int = DEFAULT_CHUNK_OVERLAP,
) -> list[TextWindow]:
    """Chunk `text` and keep each window's [start, end) offsets."""
    validate_chunking(chunk_size, overlap)
    if not text or not text.strip():
        return []

    length = len(text)
    step   = chunk_size - overlap
    spans: list[tuple[int, int]] = []

    start = 0
    while start < length:
        end = min(start + chunk_size, length)
        if length - end <= overlap:
            end = length
        spans.append((start, end))
        if end == length:
            break
        start += step

    windows: list[TextWindow] = []
    for start, end in spans:
        piece = text[start:end]
        if not piece.strip():
            continue
        windows.append(TextWindow(chunk_index=len(windows), start=start, end=end, text=piece))

    logger.debug(
        "Chunked | chars=%d chunk_size=%d overlap=%d chunks=%d",
        length, chunk_size, overlap, len(windows),
    )
    return windows


def chunk_text(
    text:       str,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    overlap:    int = DEFAULT_CHUNK_OVERLAP,
) -> list[str]:
    """
    Split text into overlapping windows.

    >>> chunk_text("", 500, 50)
    []
    >>> [len(c) for c in chunk_text("a" * 1000, 500, 50)]
    [500, 550]
    """
    return [w.text for w in chunk_windows(text, chunk_size, overlap)]
