"""
Runtime utilities:
- turn executor: one job per chat turn, submitted by the async route
- call executor: bounds every LLM and store call made inside a turn
- request/session context for structured logs
"""
from __future__ import annotations

import json
import logging
import os
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from contextvars import ContextVar, copy_context
from typing import Any, Callable, Dict, Optional

_LOGGER = logging.getLogger("runtime")

_REQUEST_ID: ContextVar[str] = ContextVar("request_id", default="-")
_SESSION_ID: ContextVar[str] = ContextVar("session_id", default="-")

_TURN_EXECUTOR: Optional[ThreadPoolExecutor] = None
_CALL_EXECUTOR: Optional[ThreadPoolExecutor] = None
_EXECUTOR_LOCK = threading.Lock()
_PENDING_LOCK = threading.Lock()
_PENDING_FUTURES: set[Future] = set()
_TURN_WORKERS = max(2, int(os.getenv("CHAT_TURN_MAX_WORKERS", "8")))
_CALL_WORKERS = max(4, int(os.getenv("CHAT_THREADPOOL_MAX_WORKERS", "16")))


def get_request_id() -> str:
    return _REQUEST_ID.get() or "-"


def get_session_id() -> str:
    return _SESSION_ID.get() or "-"


def set_request_id(request_id: Optional[str]) -> str:
    rid = (request_id or "").strip() or str(uuid.uuid4())
    _REQUEST_ID.set(rid)
    return rid


def set_session_id(session_id: Optional[str]) -> str:
    sid = (session_id or "").strip() or "-"
    _SESSION_ID.set(sid)
    return sid


def clear_context() -> None:
    _REQUEST_ID.set("-")
    _SESSION_ID.set("-")


def log_event(logger: logging.Logger, level: int, event: str, **fields: Any) -> None:
    payload: Dict[str, Any] = {
        "event": event,
        "request_id": get_request_id(),
        "session_id": get_session_id(),
    }
    payload.update(fields)
    logger.log(level, json.dumps(payload, default=str, ensure_ascii=False))


def _get_turn_executor() -> ThreadPoolExecutor:
    global _TURN_EXECUTOR
    if _TURN_EXECUTOR is not None:
        return _TURN_EXECUTOR
    with _EXECUTOR_LOCK:
        if _TURN_EXECUTOR is None:
            _TURN_EXECUTOR = ThreadPoolExecutor(max_workers=_TURN_WORKERS, thread_name_prefix="chat-turn")
        return _TURN_EXECUTOR


def _get_call_executor() -> ThreadPoolExecutor:
    global _CALL_EXECUTOR
    if _CALL_EXECUTOR is not None:
        return _CALL_EXECUTOR
    with _EXECUTOR_LOCK:
        if _CALL_EXECUTOR is None:
            _CALL_EXECUTOR = ThreadPoolExecutor(max_workers=_CALL_WORKERS, thread_name_prefix="chat-call")
        return _CALL_EXECUTOR


def get_foreground_executor() -> ThreadPoolExecutor:
    return _get_turn_executor()


def run_with_timeout(fn: Callable[[], Any], timeout_s: float) -> Any:
    """Run ``fn`` on the call executor and wait at most ``timeout_s``.

    The caller's context variables travel with the call so log lines emitted
    inside keep their request/session ids. Raises
    ``concurrent.futures.TimeoutError`` when the budget is exhausted; the
    worker is left to finish best-effort.
    """
    ctx = copy_context()
    future = _get_call_executor().submit(ctx.run, fn)
    with _PENDING_LOCK:
        _PENDING_FUTURES.add(future)

    def _done(fut: Future) -> None:
        with _PENDING_LOCK:
            _PENDING_FUTURES.discard(fut)

    future.add_done_callback(_done)
    try:
        return future.result(timeout=max(0.05, float(timeout_s)))
    except FuturesTimeoutError:
        future.cancel()
        raise


def shutdown_shared_executor(wait: bool = False) -> None:
    global _TURN_EXECUTOR, _CALL_EXECUTOR
    with _EXECUTOR_LOCK:
        if _TURN_EXECUTOR is None and _CALL_EXECUTOR is None:
            return
        with _PENDING_LOCK:
            pending = list(_PENDING_FUTURES)
            _PENDING_FUTURES.clear()
        for fut in pending:
            fut.cancel()
        if _TURN_EXECUTOR is not None:
            _TURN_EXECUTOR.shutdown(wait=wait, cancel_futures=True)
            _TURN_EXECUTOR = None
        if _CALL_EXECUTOR is not None:
            _CALL_EXECUTOR.shutdown(wait=wait, cancel_futures=True)
            _CALL_EXECUTOR = None
        _LOGGER.info("shared_executor_shutdown")
