"""
SQLAlchemy ORM Models — Chat Sessions

A chat session owns its message history exclusively. Messages are stored as a
JSON list and validated through docintel.schemas.chat.ChatMessage whenever they
cross the repository boundary; sources inside assistant messages are snapshots
of the chunks used at answer time, never foreign keys.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Index, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from docintel.models.documents import Base, JSONType, _utcnow


class ChatSession(Base):
    """Multi-turn conversation owned by (user_id, org_id)."""

    __tablename__ = "chat_sessions"
    __table_args__ = (
        Index("idx_chat_sessions_owner", "org_id", "user_id", "last_message_at"),
    )

    id:      Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    org_id:  Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    # NULL = cross-document chat over the whole organization
    document_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    title:    Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    messages: Mapped[list[dict]]    = mapped_column(JSONType, nullable=False, default=list)

    last_message_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    created_at:      Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    def __repr__(self) -> str:
        return (
            f"<ChatSession id={self.id} org={self.org_id} user={self.user_id} "
            f"messages={len(self.messages or [])}>"
        )
