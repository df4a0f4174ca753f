"""
Tolerant JSON extraction for LLM replies.

Models wrap JSON in markdown fences, use single quotes or leave comments
behind. Each strategy below is total: it returns a dict or ``None`` and never
raises. ``extract_json`` walks them in order and falls back to the caller's
default.
"""
from __future__ import annotations

import copy
import json
import re
from typing import Any, Callable, Dict, List, Optional

_FENCE = re.compile(r"```(?:json|javascript|js)?\s*(.*?)```", re.IGNORECASE | re.DOTALL)
_LINE_COMMENT = re.compile(r"(?m)^\s*//.*$|(?<=[,{\[\s])//[^\n\"']*$", re.MULTILINE)
_BLOCK_COMMENT = re.compile(r"/\*.*?\*/", re.DOTALL)


def _strip_fence(text: str) -> str:
    raw = (text or "").strip()
    m = _FENCE.search(raw)
    return m.group(1).strip() if m else raw


def _outermost_object(text: str) -> Optional[str]:
    raw = _strip_fence(text)
    i = raw.find("{")
    j = raw.rfind("}")
    if i == -1 or j <= i:
        return None
    return raw[i:j + 1]


def _loads_dict(candidate: Optional[str]) -> Optional[Dict[str, Any]]:
    if not candidate:
        return None
    try:
        obj = json.loads(candidate)
    except (ValueError, TypeError):
        return None
    return obj if isinstance(obj, dict) else None


def parse_outermost(text: str) -> Optional[Dict[str, Any]]:
    return _loads_dict(_outermost_object(text))


def parse_single_quoted(text: str) -> Optional[Dict[str, Any]]:
    candidate = _outermost_object(text)
    if candidate is None:
        return None
    return _loads_dict(candidate.replace("'", '"'))


def parse_without_comments(text: str) -> Optional[Dict[str, Any]]:
    candidate = _outermost_object(text)
    if candidate is None:
        return None
    cleaned = _BLOCK_COMMENT.sub("", candidate)
    cleaned = _LINE_COMMENT.sub("", cleaned)
    # Trailing commas usually come with commented-out last entries.
    cleaned = re.sub(r",\s*([}\]])", r"\1", cleaned)
    return _loads_dict(cleaned)


STRATEGIES: List[Callable[[str], Optional[Dict[str, Any]]]] = [
    parse_outermost,
    parse_single_quoted,
    parse_without_comments,
]


def extract_json(text: Optional[str], default: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
    """Return the first object any strategy recovers, else a copy of ``default``."""
    if text:
        for strategy in STRATEGIES:
            obj = strategy(text)
            if obj is not None:
                return obj
    return copy.deepcopy(default) if default is not None else None
