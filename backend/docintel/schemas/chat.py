"""
Chat — Pydantic Schemas

ChatMessage / ChatSource are the validated shape of chat_sessions.messages
entries. Sources are snapshots (document name, chunk text and score copied at
answer time) so a transcript still renders after the chunk is re-embedded or
its document is deleted.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field, model_validator


class ChatRole(str, Enum):
    USER      = "user"
    ASSISTANT = "assistant"


class ChatSource(BaseModel):
    document_id:   UUID
    document_name: str = ""
    chunk_index:   int
    content:       str
    similarity:    float


class ChatMessage(BaseModel):
    role:      ChatRole
    content:   str
    timestamp: datetime
    sources:   Optional[list[ChatSource]] = None

    @model_validator(mode="after")
    def _sources_only_on_assistant(self) -> "ChatMessage":
        if self.role is ChatRole.USER and self.sources is not None:
            raise ValueError("sources are only allowed on assistant messages")
        return self


# ---------------------------------------------------------------------------
# API payloads
# ---------------------------------------------------------------------------

class ChatRequest(BaseModel):
    message:            str            = Field(..., min_length=1, max_length=4_000)
    chat_id:            Optional[UUID] = None
    document_id:        Optional[UUID] = None
    max_context_chunks: Optional[int]  = Field(None, ge=1, le=20)   # None: the configured default
    temperature:        float          = Field(0.7, ge=0.0, le=2.0)


class ChatResponse(BaseModel):
    chat_id:     UUID
    answer:      str
    sources:     list[ChatSource]
    tokens_used: Optional[int] = None
    title:       Optional[str] = None


class ChatSummary(BaseModel):
    chat_id:         UUID
    title:           str
    document_id:     Optional[UUID] = None
    message_count:   int
    last_message_at: datetime
    created_at:      datetime


class Pagination(BaseModel):
    total:    int
    limit:    int
    offset:   int
    has_more: bool


class ChatListResponse(BaseModel):
    chats:      list[ChatSummary]
    pagination: Pagination


class ChatDetail(BaseModel):
    chat_id:         UUID
    title:           str
    document_id:     Optional[UUID] = None
    messages:        list[ChatMessage]
    last_message_at: datetime
    created_at:      datetime
