"""
Chat prompts: grounded system prompt, context formatting and title generation.
"""

from __future__ import annotations

from typing import Final, Sequence

from docintel.store.base import ScoredChunk

NO_CONTEXT: Final[str] = "No relevant context found."

EMPTY_ANSWER_FALLBACK: Final[str] = "I apologize, but I could not generate a response."

DEFAULT_TITLE: Final[str] = "New Chat"

TITLE_MAX_WORDS: Final[int] = 6

_SYSTEM_TEMPLATE: Final[str] = """\
You are a helpful AI assistant with access to {scope}. Your role is to answer questions based on the provided context.

CONTEXT:
{context}

INSTRUCTIONS:
- Answer questions using ONLY the information from the context above.
- If the context does not contain enough information to answer, say so clearly.
- Cite specific sources when making claims (e.g., "According to Source 1...").
- Be concise and accurate.
- If asked about information not in the context, politely explain that you can only answer based on the available documents.
- Do not make up or infer information beyond what is explicitly stated in the context.
"""

TITLE_SYSTEM_PROMPT: Final[str] = (
    f"Generate a concise, descriptive title (max {TITLE_MAX_WORDS} words) for a chat "
    "conversation based on the first user message. Return only the title, nothing else."
)


def format_context(chunks: Sequence[ScoredChunk]) -> str:
    """
    >>> format_context([])
    'No relevant context found.'
    """
    if not chunks:
        return NO_CONTEXT
    return "\n\n".join(f"[Source {i}]: {c.content}" for i, c in enumerate(chunks, start=1))


def build_system_prompt(chunks: Sequence[ScoredChunk], document_scoped: bool) -> str:
    scope = (
        "the provided document"
        if document_scoped
        else "the available documents in your organization"
    )
    return _SYSTEM_TEMPLATE.format(scope=scope, context=format_context(chunks))


def clean_title(raw: str) -> str:
    """Strip surrounding quotes and cap at TITLE_MAX_WORDS words."""
    title = raw.strip().strip("\"'").strip()
    return " ".join(title.split()[:TITLE_MAX_WORDS])


def fallback_title(message: str) -> str:
    """
    >>> fallback_title("what is the total amount due on this invoice please")
    'what is the total amount due'
    >>> fallback_title("   ")
    'New Chat'
    """
    words = message.split()[:TITLE_MAX_WORDS]
    return " ".join(words) or DEFAULT_TITLE
