"""
Retrieval-Augmented Chat Service
════════════════════════════════

    send_message(user_id, org_id, ChatRequest) -> ChatResponse

Turn lifecycle:

    resolve session ─► embed query ─► retrieve ─► compose prompt ─► complete ─► persist
                       (same model as ingestion)  (top-k above the similarity floor)

Guarantees:
  • Sessions are always looked up under (chat_id, user_id, org_id).
  • Retrieval is scoped to org_id, and to the session's document when it has one.
  • Chunks under the similarity floor never enter the prompt. With no usable
    context the model answers from conversation history and sources == [].
  • Embedding / completion failures surface as ServiceUnavailable (retryable)
    and nothing is written: the user message and the answer are persisted
    together in one save_turn() call at the very end.
  • Title generation failures fall back to the first words of the message.
"""

from __future__ import annotations

import logging
import time
from typing import Awaitable, Optional, TypeVar
from uuid import UUID

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from docintel.chat.prompts import (
    EMPTY_ANSWER_FALLBACK,
    TITLE_SYSTEM_PROMPT,
    build_system_prompt,
    clean_title,
    fallback_title,
)
from docintel.core.errors import (
    DocIntelError,
    InvalidConfiguration,
    InvalidRequest,
    NotFound,
    ServiceUnavailable,
    with_timeout,
)
from docintel.llm.completion import CompletionBackend
from docintel.observability.event_log import EventCategory, EventLevel, EventLog
from docintel.observability.tracing import traced
from docintel.processing.embeddings import EmbeddingPipeline
from docintel.schemas.chat import (
    ChatDetail,
    ChatListResponse,
    ChatMessage,
    ChatRequest,
    ChatResponse,
    ChatRole,
    ChatSource,
    ChatSummary,
    Pagination,
)
from docintel.store.base import (
    ChatSessionRecord,
    ChatSessionRepository,
    DocumentRepository,
    EmbeddingStore,
    ScoredChunk,
    utcnow,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

TITLE_MAX_TOKENS = 20


class ChatService:

    def __init__(
        self,
        sessions:           ChatSessionRepository,
        documents:          DocumentRepository,
        store:              EmbeddingStore,
        embeddings:         EmbeddingPipeline,
        completion:         CompletionBackend,
        events:             EventLog,
        *,
        similarity_floor:   float = 0.3,
        context_chunks:     int   = 5,
        history_messages:   int   = 10,
        generate_titles:    bool  = True,
        completion_timeout: float = 30.0,
        max_tokens:         Optional[int] = None,
    ) -> None:
        if not 0.0 <= similarity_floor <= 1.0:
            raise InvalidConfiguration("similarity_floor must be within [0, 1]")
        if context_chunks < 1:
            raise InvalidConfiguration("context_chunks must be at least 1")
        self._sessions   = sessions
        self._documents  = documents
        self._store      = store
        self._embeddings = embeddings
        self._completion = completion
        self._events     = events
        self._floor              = similarity_floor
        self._context_chunks     = context_chunks
        self._history_messages   = history_messages
        self._generate_titles    = generate_titles
        self._completion_timeout = completion_timeout
        self._max_tokens         = max_tokens

    # ------------------------------------------------------------------
    # send_message
    # ------------------------------------------------------------------

    @traced("chat.turn")
    async def send_message(self, user_id: UUID, org_id: UUID, request: ChatRequest) -> ChatResponse:
        message = request.message.strip()
        if not message:
            raise InvalidRequest("Message must not be empty")

        t0 = time.monotonic()
        asked_at = utcnow()
        session = await self._resolve_session(user_id, org_id, request)
        scope_document = session.document_id or request.document_id

        query_vector = await self._call_backend("embedding", self._embeddings.embed_query(message))
        hits = await self._store.search(
            org_id,
            query_vector,
            top_k=request.max_context_chunks or self._context_chunks,
            document_id=scope_document,
            min_similarity=self._floor,
        )
        logger.info(
            "Chat retrieval | chat=%s org=%s doc=%s hits=%d floor=%.2f",
            session.id, org_id, scope_document, len(hits), self._floor,
        )

        prompt = self._compose(session, hits, message, document_scoped=scope_document is not None)
        result = await self._call_backend(
            "completion",
            with_timeout(
                self._completion.complete(prompt, temperature=request.temperature, max_tokens=self._max_tokens),
                self._completion_timeout,
                "completion",
            ),
        )
        answer = result.text.strip() or EMPTY_ANSWER_FALLBACK

        if session.title is None and not session.messages:
            session.title = await self._title_for(message)

        sources = [
            ChatSource(
                document_id=h.document_id,
                document_name=h.document_name,
                chunk_index=h.chunk_index,
                content=h.content,
                similarity=h.similarity,
            )
            for h in hits
        ]
        saved = await self._sessions.save_turn(
            session,
            ChatMessage(role=ChatRole.USER, content=message, timestamp=asked_at),
            ChatMessage(role=ChatRole.ASSISTANT, content=answer, timestamp=utcnow(), sources=sources),
        )

        elapsed_ms = (time.monotonic() - t0) * 1000
        logger.info(
            "Chat turn | chat=%s sources=%d tokens=%s elapsed_ms=%.0f",
            saved.id, len(sources), result.tokens_used, elapsed_ms,
        )
        await self._events.record(
            EventLevel.INFO, EventCategory.CHAT, "chat.answered",
            "Answered with context" if sources else "Answered without context",
            org_id=org_id, user_id=user_id, document_id=scope_document, duration_ms=elapsed_ms,
            metadata={"chat_id": str(saved.id), "sources": len(sources), "tokens_used": result.tokens_used},
        )
        return ChatResponse(
            chat_id=saved.id,
            answer=answer,
            sources=sources,
            tokens_used=result.tokens_used,
            title=saved.title,
        )

    async def _resolve_session(self, user_id: UUID, org_id: UUID, request: ChatRequest) -> ChatSessionRecord:
        if request.chat_id is not None:
            session = await self._sessions.get(request.chat_id, user_id, org_id)
            if session is None:
                raise NotFound("Chat not found", details={"chat_id": str(request.chat_id)})
            # A cross-document session may narrow a single turn to one document
            if session.document_id is None and request.document_id is not None:
                await self._require_document(request.document_id, org_id)
            return session

        if request.document_id is not None:
            await self._require_document(request.document_id, org_id)
        # Not persisted until the turn completes
        return ChatSessionRecord(user_id=user_id, org_id=org_id, document_id=request.document_id)

    async def _require_document(self, document_id: UUID, org_id: UUID) -> None:
        if await self._documents.get(document_id, org_id) is None:
            raise NotFound("Document not found", details={"document_id": str(document_id)})

    def _compose(
        self,
        session: ChatSessionRecord,
        hits: list[ScoredChunk],
        message: str,
        document_scoped: bool,
    ) -> list[BaseMessage]:
        prompt: list[BaseMessage] = [
            SystemMessage(content=build_system_prompt(hits, document_scoped=document_scoped))
        ]
        history = session.messages[-self._history_messages:] if self._history_messages > 0 else []
        for past in history:
            if past.role is ChatRole.USER:
                prompt.append(HumanMessage(content=past.content))
            else:
                prompt.append(AIMessage(content=past.content))
        prompt.append(HumanMessage(content=message))
        return prompt

    async def _call_backend(self, backend: str, call: Awaitable[T]) -> T:
        try:
            return await call
        except InvalidConfiguration:
            raise
        except Exception as exc:
            logger.error("Chat backend failed | backend=%s error=%s", backend, exc, exc_info=True)
            await self._events.record(
                EventLevel.ERROR, EventCategory.CHAT, f"chat.{backend}_failed",
                f"{backend.capitalize()} backend failed; nothing persisted", error=exc,
            )
            details = exc.details if isinstance(exc, DocIntelError) else {}
            raise ServiceUnavailable(
                f"The {backend} service is temporarily unavailable",
                details={"backend": backend, **details},
            ) from exc

    async def _title_for(self, message: str) -> str:
        if not self._generate_titles:
            return fallback_title(message)
        try:
            result = await with_timeout(
                self._completion.complete(
                    [SystemMessage(content=TITLE_SYSTEM_PROMPT), HumanMessage(content=message)],
                    temperature=0.7,
                    max_tokens=TITLE_MAX_TOKENS,
                ),
                self._completion_timeout,
                "title",
            )
            return clean_title(result.text) or fallback_title(message)
        except Exception as exc:
            logger.warning("Title generation failed, using fallback | error=%s", exc)
            return fallback_title(message)

    # ------------------------------------------------------------------
    # Management
    # ------------------------------------------------------------------

    async def list_chats(
        self,
        user_id:     UUID,
        org_id:      UUID,
        document_id: Optional[UUID] = None,
        limit:       int = 50,
        offset:      int = 0,
    ) -> ChatListResponse:
        rows, total = await self._sessions.list_for_user(user_id, org_id, document_id, limit, offset)
        return ChatListResponse(
            chats=[
                ChatSummary(
                    chat_id=r.id,
                    title=r.title or "Untitled Chat",
                    document_id=r.document_id,
                    message_count=len(r.messages),
                    last_message_at=r.last_message_at,
                    created_at=r.created_at,
                )
                for r in rows
            ],
            pagination=Pagination(total=total, limit=limit, offset=offset, has_more=offset + len(rows) < total),
        )

    async def get_chat(self, chat_id: UUID, user_id: UUID, org_id: UUID) -> ChatDetail:
        session = await self._sessions.get(chat_id, user_id, org_id)
        if session is None:
            raise NotFound("Chat not found", details={"chat_id": str(chat_id)})
        return ChatDetail(
            chat_id=session.id,
            title=session.title or "Untitled Chat",
            document_id=session.document_id,
            messages=session.messages,
            last_message_at=session.last_message_at,
            created_at=session.created_at,
        )

    async def delete_chat(self, chat_id: UUID, user_id: UUID, org_id: UUID) -> None:
        if not await self._sessions.delete(chat_id, user_id, org_id):
            raise NotFound("Chat not found", details={"chat_id": str(chat_id)})
        logger.info("Chat deleted | chat=%s user=%s org=%s", chat_id, user_id, org_id)
