"""Service dependency for the chat routes."""
from fastapi import HTTPException, Request

from chat_api.services.chat_service import ChatService


def get_chat_service(request: Request) -> ChatService:
    service = getattr(request.app.state, "chat_service", None)
    if service is None:
        raise HTTPException(503, "Chat service is not ready")
    return service
