"""
Text hygiene helpers applied between OCR and persistence / chunking.
"""

from __future__ import annotations

import re
import unicodedata
from typing import Optional

# ASCII control characters except \t (0x09), \n (0x0A) and \r (0x0D)
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")


def sanitize_extracted_text(text: Optional[str]) -> Optional[str]:
    """
    Strip NUL bytes and control characters, then trim.
    Returns None when nothing printable remains, so "no text" has one representation.
    """
    if text is None:
        return None
    cleaned = _CONTROL_CHARS_RE.sub("", text.replace("\x00", "")).strip()
    return cleaned or None


def normalize_text(text: str) -> str:
    """
    Normalize Unicode and line endings before chunking.
    Paragraph breaks (double newlines) are preserved; longer runs collapse to two.
    """
    text = unicodedata.normalize("NFC", text)
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = re.sub(r"[\u200b\u200c\u200d\ufeff]", "", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def decode_plain_text(data: bytes) -> str:
    """Decode a text/plain upload: UTF-8 first, latin-1 as the lossless fallback."""
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return data.decode("latin-1")
