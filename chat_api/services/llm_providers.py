"""
Language-model providers and the fixed-order fallback chain.

Primary: OpenAI through ``langchain_openai.ChatOpenAI``.
Secondary: any OpenAI-compatible ``/chat/completions`` endpoint (DeepSeek by
default) called directly with ``httpx``.

``ProviderChain.run`` tries each provider at most once, in order, and returns
an ``Attempt`` instead of raising.
"""
from __future__ import annotations

import logging
import time
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, List, Optional, Sequence, TypeVar

import httpx
from langchain_core.output_parsers import StrOutputParser

from chat_api.services import settings
from chat_api.services.runtime import log_event, run_with_timeout

logger = logging.getLogger("llm_providers")

T = TypeVar("T")


class ProviderError(Exception):
    """A provider call failed (transport, timeout or empty reply)."""


class NoProviderConfiguredError(RuntimeError):
    """No language-model provider has credentials; the service cannot start."""


class LLMProvider:
    name = "provider"

    def complete(self, prompt: str, *, max_tokens: int, temperature: float, timeout_s: float) -> str:
        raise NotImplementedError


class ChatModelProvider(LLMProvider):
    """Wraps a LangChain chat model; bounds are bound per call."""

    def __init__(self, name: str, chat_model: Any):
        self.name = name
        self._llm = chat_model

    def complete(self, prompt: str, *, max_tokens: int, temperature: float, timeout_s: float) -> str:
        chain = self._llm.bind(max_tokens=max_tokens, temperature=temperature) | StrOutputParser()
        try:
            out = run_with_timeout(lambda: chain.invoke(prompt), timeout_s=timeout_s)
        except FuturesTimeoutError as exc:
            raise ProviderError(f"{self.name}_timeout_{timeout_s}s") from exc
        except Exception as exc:
            # openai/langchain raise their own hierarchies; normalise them here.
            raise ProviderError(f"{self.name}_call_failed: {exc}") from exc
        if not (out or "").strip():
            raise ProviderError(f"{self.name}_empty_reply")
        return out


class HttpChatProvider(LLMProvider):
    """Direct ``POST {api_base}/chat/completions`` for OpenAI-compatible APIs."""

    def __init__(self, name: str, api_key: str, model: str, api_base: str, client: Optional[httpx.Client] = None):
        self.name = name
        self.model = model
        self.api_base = api_base.rstrip("/")
        self._api_key = api_key
        self._client = client

    def _post(self, payload: dict, timeout_s: float) -> dict:
        headers = {"Authorization": f"Bearer {self._api_key}", "Content-Type": "application/json"}
        timeout = httpx.Timeout(timeout_s, connect=min(5.0, timeout_s))
        if self._client is not None:
            resp = self._client.post(f"{self.api_base}/chat/completions", headers=headers, json=payload, timeout=timeout)
        else:
            with httpx.Client(timeout=timeout) as client:
                resp = client.post(f"{self.api_base}/chat/completions", headers=headers, json=payload)
        resp.raise_for_status()
        return resp.json()

    def complete(self, prompt: str, *, max_tokens: int, temperature: float, timeout_s: float) -> str:
        payload = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": max_tokens,
            "temperature": temperature,
            "stream": False,
        }
        try:
            body = self._post(payload, timeout_s)
        except httpx.HTTPError as exc:
            raise ProviderError(f"{self.name}_http_error: {exc}") from exc
        try:
            content = str(body["choices"][0]["message"]["content"] or "")
        except (KeyError, IndexError, TypeError) as exc:
            raise ProviderError(f"{self.name}_malformed_reply") from exc
        if not content.strip():
            raise ProviderError(f"{self.name}_empty_reply")
        return content


@dataclass
class Attempt(Generic[T]):
    ok: bool
    value: Optional[T] = None
    provider: Optional[str] = None
    errors: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class CallBounds:
    max_tokens: int
    temperature: float
    timeout_s: float


def _identity(text: str) -> str:
    return text


class ProviderChain:
    def __init__(self, providers: Sequence[LLMProvider]):
        self.providers = list(providers)

    @property
    def names(self) -> List[str]:
        return [p.name for p in self.providers]

    def run(
        self,
        stage: str,
        prompt: str,
        bounds: CallBounds,
        parse: Callable[[str], Optional[T]] = _identity,
    ) -> Attempt[T]:
        """Ask each provider once; ``parse`` returning ``None`` (or raising
        ``ValueError``) counts as a failed attempt and moves to the next one."""
        errors: List[str] = []
        for provider in self.providers:
            started = time.perf_counter()
            try:
                raw = provider.complete(
                    prompt,
                    max_tokens=bounds.max_tokens,
                    temperature=bounds.temperature,
                    timeout_s=bounds.timeout_s,
                )
                value = parse(raw)
                if value is None:
                    raise ValueError("unusable_reply")
            except (ProviderError, ValueError, httpx.HTTPError) as exc:
                errors.append(f"{provider.name}: {exc}")
                log_event(
                    logger,
                    logging.WARNING,
                    "llm_attempt_failed",
                    stage=stage,
                    provider=provider.name,
                    error=str(exc)[:200],
                    elapsed_ms=round((time.perf_counter() - started) * 1000, 2),
                )
                continue
            log_event(
                logger,
                logging.INFO,
                "llm_attempt_ok",
                stage=stage,
                provider=provider.name,
                prompt_chars=len(prompt),
                elapsed_ms=round((time.perf_counter() - started) * 1000, 2),
            )
            return Attempt(ok=True, value=value, provider=provider.name, errors=errors)
        return Attempt(ok=False, errors=errors)


def build_providers_from_env() -> List[LLMProvider]:
    """Providers in fixed order (primary first). Raises when none is configured."""
    providers: List[LLMProvider] = []
    if settings.OPENAI_API_KEY:
        from langchain_openai import ChatOpenAI

        llm = ChatOpenAI(
            model=settings.OPENAI_MODEL,
            api_key=settings.OPENAI_API_KEY,
            max_retries=0,
        )
        providers.append(ChatModelProvider("openai", llm))
    if settings.DEEPSEEK_API_KEY:
        providers.append(
            HttpChatProvider(
                "deepseek",
                api_key=settings.DEEPSEEK_API_KEY,
                model=settings.DEEPSEEK_MODEL,
                api_base=settings.DEEPSEEK_API_BASE,
            )
        )
    if not providers:
        raise NoProviderConfiguredError(
            "No LLM provider configured: set OPENAI_API_KEY and/or DEEPSEEK_API_KEY"
        )
    log_event(logger, logging.INFO, "llm_providers_ready", providers=[p.name for p in providers])
    return providers
