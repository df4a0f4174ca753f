"""
FastAPI backend for the conversational query assistant.
Run with: uvicorn chat_api.main:app --reload --port 8000
"""
import sys
import os
import uuid
import logging
from pathlib import Path
from dotenv import load_dotenv

# Ensure project root is importable
sys.path.insert(0, str(Path(__file__).parent.parent))
load_dotenv(Path(__file__).parent.parent / ".env")

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from chat_api.routes.chat import router as chat_router
from chat_api.services import settings
from chat_api.services.chat_service import ChatService
from chat_api.services.context_memory import ContextMemoryStore
from chat_api.services.llm_providers import ProviderChain, build_providers_from_env
from chat_api.services.orchestrator import Orchestrator
from chat_api.services.runtime import clear_context, log_event, set_request_id, shutdown_shared_executor
from chat_api.services.schema_cache import SchemaCache
from chat_api.services.session import SessionStore
from chat_api.services.sql_translator import SqlTranslator
from datastore.db_utils import DatabaseConfig, SQLStore

app = FastAPI(title="Conversational Query Assistant API", version="1.0.0")
logger = logging.getLogger("chat_api")

if not logging.getLogger().handlers:
    logging.basicConfig(
        level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def build_chat_service() -> ChatService:
    """Wire every collaborator. Raises ``NoProviderConfiguredError`` without an LLM key."""
    chain = ProviderChain(build_providers_from_env())
    store = SQLStore.from_config(
        DatabaseConfig(
            url=settings.DATABASE_URL,
            query_timeout=settings.DB_QUERY_TIMEOUT_S,
            max_rows=settings.DB_MAX_ROWS,
            allow_raw_read=settings.ENABLE_RAW_READ,
            include_tables=settings.INCLUDE_TABLES,
        )
    )
    schema_cache = SchemaCache(store)
    contexts = ContextMemoryStore()
    sessions = SessionStore(on_evict=contexts.clear)
    sessions.add_sweep_hook(contexts.sweep_expired)
    orchestrator = Orchestrator(chain, schema_cache, SqlTranslator(store))
    return ChatService(store, schema_cache, contexts, sessions, orchestrator)


@app.on_event("startup")
def start_chat_service():
    service = build_chat_service()
    service.sessions.start_sweeper()
    app.state.chat_service = service
    log_event(logger, logging.INFO, "chat_service_ready", providers=service.orchestrator.chain.names)


@app.on_event("shutdown")
def shutdown_workers():
    service = getattr(app.state, "chat_service", None)
    if service is not None:
        service.sessions.stop_sweeper()
    shutdown_shared_executor(wait=False)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    details = [
        {
            "field": ".".join(str(p) for p in err.get("loc", ()) if p != "body"),
            "message": err.get("msg", ""),
        }
        for err in exc.errors()
    ]
    log_event(logger, logging.INFO, "request_validation_failed", path=request.url.path, fields=[d["field"] for d in details])
    return JSONResponse(status_code=400, content={"success": False, "error": "Validation failed", "details": details})


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    request_id = set_request_id(request.headers.get("x-request-id") or str(uuid.uuid4()))
    try:
        response = await call_next(request)
    except Exception:
        logger.exception("request_failed request_id=%s path=%s", request_id, request.url.path)
        raise
    finally:
        clear_context()
    response.headers["x-request-id"] = request_id
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(chat_router)


@app.get("/api/health")
def health():
    return {"status": "ok"}
