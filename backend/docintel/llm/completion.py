"""
Completion Backend — Chat Completion for the RAG Chat Service

    complete(messages, temperature) -> CompletionResult(text, tokens_used, model)

Messages are LangChain BaseMessage values (SystemMessage / HumanMessage /
AIMessage) so prompt assembly stays provider-agnostic. The production backend
drives langchain-openai ChatOpenAI; tests inject a fake CompletionBackend.

Backend errors propagate unchanged; the chat service wraps them as
ServiceUnavailable for its callers.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Sequence

from langchain_core.messages import BaseMessage

from docintel.core.errors import InvalidConfiguration

logger = logging.getLogger(__name__)


def estimate_tokens(messages: Sequence[BaseMessage], completion: str = "") -> int:
    """4 chars ≈ 1 token. Used only when the provider reports no usage."""
    total_chars = sum(len(m.content) for m in messages if isinstance(m.content, str))
    return max(1, (total_chars + len(completion)) // 4)


@dataclass
class CompletionResult:
    text:        str
    tokens_used: Optional[int]
    model:       str
    latency_ms:  float = 0.0


class CompletionBackend(ABC):

    @property
    @abstractmethod
    def model_name(self) -> str:
        ...

    @abstractmethod
    async def complete(
        self,
        messages:    Sequence[BaseMessage],
        temperature: float = 0.7,
        max_tokens:  Optional[int] = None,
    ) -> CompletionResult:
        ...


class ChatOpenAIBackend(CompletionBackend):
    """ChatOpenAI with per-call temperature / max_tokens bound onto the runnable."""

    def __init__(self, api_key: str, model: str = "gpt-4o-mini", max_tokens: int = 1000) -> None:
        if not api_key:
            raise InvalidConfiguration("OPENAI_API_KEY is required for chat completion")
        self._api_key    = api_key
        self._model      = model
        self._max_tokens = max_tokens
        self._llm        = None

    @property
    def model_name(self) -> str:
        return self._model

    def _get_llm(self):
        if self._llm is None:
            from langchain_openai import ChatOpenAI

            self._llm = ChatOpenAI(
                model=self._model,
                api_key=self._api_key,
                max_tokens=self._max_tokens,
            )
        return self._llm

    async def complete(
        self,
        messages:    Sequence[BaseMessage],
        temperature: float = 0.7,
        max_tokens:  Optional[int] = None,
    ) -> CompletionResult:
        runnable = self._get_llm().bind(
            temperature=temperature,
            max_tokens=max_tokens or self._max_tokens,
        )

        t0 = time.perf_counter()
        reply = await runnable.ainvoke(list(messages))
        latency = (time.perf_counter() - t0) * 1000

        text = reply.content if isinstance(reply.content, str) else ""
        usage = getattr(reply, "usage_metadata", None) or {}
        tokens = usage.get("total_tokens") or estimate_tokens(messages, text)

        logger.info(
            "Completion | model=%s tokens=%d latency_ms=%.0f",
            self._model, tokens, latency,
        )
        return CompletionResult(text=text, tokens_used=tokens, model=self._model, latency_ms=latency)
