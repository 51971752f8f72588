"""
Chat API Router

  POST   /api/v1/chat            send a message (creates the chat when chat_id is omitted)
  GET    /api/v1/chat            list the caller's chats, newest activity first
  GET    /api/v1/chat/{chat_id}  full transcript with sources
  DELETE /api/v1/chat/{chat_id}

Chats are private to (user_id, org_id). Backend outages answer 503 with a
Retry-After header and leave the chat unchanged.
"""

from __future__ import annotations

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Query, Response, status

from docintel.auth.dependencies import Chat, CurrentIdentity
from docintel.schemas.chat import ChatDetail, ChatListResponse, ChatRequest, ChatResponse
from docintel.schemas.documents import ErrorResponse

router = APIRouter(prefix="/chat", tags=["Chat"])


@router.post(
    "",
    response_model=ChatResponse,
    responses={
        400: {"model": ErrorResponse},
        404: {"model": ErrorResponse, "description": "Chat or document not visible to the caller"},
        503: {"model": ErrorResponse, "description": "Embedding or completion backend unavailable"},
    },
)
async def send_message(body: ChatRequest, identity: CurrentIdentity, chat: Chat) -> ChatResponse:
    return await chat.send_message(identity.user_id, identity.org_id, body)


@router.get("", response_model=ChatListResponse)
async def list_chats(
    identity:    CurrentIdentity,
    chat:        Chat,
    document_id: Optional[UUID] = None,
    limit:       int = Query(50, ge=1, le=100),
    offset:      int = Query(0, ge=0),
) -> ChatListResponse:
    return await chat.list_chats(identity.user_id, identity.org_id, document_id, limit, offset)


@router.get("/{chat_id}", response_model=ChatDetail, responses={404: {"model": ErrorResponse}})
async def get_chat(chat_id: UUID, identity: CurrentIdentity, chat: Chat) -> ChatDetail:
    return await chat.get_chat(chat_id, identity.user_id, identity.org_id)


@router.delete("/{chat_id}", status_code=status.HTTP_204_NO_CONTENT, responses={404: {"model": ErrorResponse}})
async def delete_chat(chat_id: UUID, identity: CurrentIdentity, chat: Chat) -> Response:
    await chat.delete_chat(chat_id, identity.user_id, identity.org_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
