"""Chat routes: one message per turn, session history and table inventory."""
import asyncio
import logging
import time
from contextvars import copy_context
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, field_validator

from chat_api.services.chat_service import ChatService
from chat_api.services.runtime import get_foreground_executor, get_request_id, log_event
from chat_api.routes.deps import get_chat_service

router = APIRouter(prefix="/api/chat", tags=["chat"])
logger = logging.getLogger("chat_route")

TABLE_NAME_PATTERN = r"^[a-zA-Z_][a-zA-Z0-9_]*$"


class MessageContext(BaseModel):
    current_table: Optional[str] = Field(default=None, pattern=TABLE_NAME_PATTERN)


class ChatMessageRequest(BaseModel):
    message:    str                      = Field(..., min_length=1, max_length=2000)
    session_id: Optional[UUID]           = None
    context:    Optional[MessageContext] = None

    @field_validator("message")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("message must not be blank")
        return value


class ChatReply(BaseModel):
    content:                str
    confidence:             int
    sql_used:               Optional[str]                  = None
    table_used:             Optional[str]                  = None
    suggestions:            List[str]                      = []
    requires_clarification: bool                           = False
    clarification_question: Optional[str]                  = None
    data:                   Optional[List[Dict[str, Any]]] = None
    intent:                 Optional[str]                  = None
    chart:                  Optional[str]                  = None
    provider_used:          Optional[str]                  = None
    latency_ms:             Optional[int]                  = None
    insights:               List[Dict[str, Any]]           = []


class ChatMessageResponse(BaseModel):
    success:    bool = True
    session_id: str
    request_id: str
    response:   ChatReply


class TableInfo(BaseModel):
    name:      str
    row_count: Optional[int] = None


@router.post("/message", response_model=ChatMessageResponse)
async def post_message(req: ChatMessageRequest, service: ChatService = Depends(get_chat_service)):
    started = time.perf_counter()
    session_id = str(req.session_id) if req.session_id else None
    current_table = req.context.current_table if req.context else None
    log_event(logger, logging.INFO, "chat_message_received", chars=len(req.message), has_session=bool(session_id))

    loop = asyncio.get_running_loop()
    ctx = copy_context()
    try:
        sid, reply = await loop.run_in_executor(
            get_foreground_executor(),
            lambda: ctx.run(service.handle_message, req.message, session_id, current_table),
        )
    except Exception as exc:
        logger.exception("chat_message_failed request_id=%s", get_request_id())
        raise HTTPException(500, "Erro interno ao processar a mensagem.") from exc

    log_event(
        logger,
        logging.INFO,
        "chat_message_done",
        elapsed_ms=round((time.perf_counter() - started) * 1000, 2),
        confidence=reply.confidence,
        provider=reply.provider_used,
    )
    return ChatMessageResponse(
        session_id=sid,
        request_id=get_request_id(),
        response=ChatReply(**reply.to_dict()),
    )


@router.get("/sessions/{session_id}")
def get_session(session_id: str, service: ChatService = Depends(get_chat_service)):
    session = service.get_session(session_id)
    if session is None:
        raise HTTPException(404, "Session not found")
    return {"success": True, "session": session.to_dict()}


@router.delete("/sessions/{session_id}")
def delete_session(session_id: str, service: ChatService = Depends(get_chat_service)):
    if not service.delete_session(session_id):
        raise HTTPException(404, "Session not found")
    return {"success": True}


@router.get("/tables", response_model=List[TableInfo])
def list_tables(service: ChatService = Depends(get_chat_service)):
    return [TableInfo(name=t.name, row_count=t.row_count) for t in service.table_inventory(with_counts=True)]


@router.get("/stats")
def stats(service: ChatService = Depends(get_chat_service)):
    return {"success": True, "stats": service.stats()}
