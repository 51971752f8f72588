"""
Chat Package

Retrieval-augmented chat over a tenant's embedded documents::

    from docintel.chat import ChatService

    response = await chat_service.send_message(user_id, org_id, ChatRequest(message="..."))
"""

from docintel.chat.service import ChatService

__all__ = ["ChatService"]
