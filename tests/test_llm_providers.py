import sys
from pathlib import Path

import httpx
import pytest
from langchain_core.language_models.fake_chat_models import FakeListChatModel

ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT))

from chat_api.services import llm_providers
from chat_api.services.llm_providers import (
    CallBounds,
    ChatModelProvider,
    HttpChatProvider,
    LLMProvider,
    NoProviderConfiguredError,
    ProviderChain,
    ProviderError,
)

BOUNDS = CallBounds(max_tokens=100, temperature=0.1, timeout_s=5)


class _ScriptedProvider(LLMProvider):
    def __init__(self, name, reply=None, error=None):
        self.name = name
        self.reply = reply
        self.error = error
        self.calls = 0

    def complete(self, prompt, *, max_tokens, temperature, timeout_s):
        self.calls += 1
        if self.error:
            raise self.error
        return self.reply


def test_primary_answer_wins():
    primary = _ScriptedProvider("primary", reply="ok")
    secondary = _ScriptedProvider("secondary", reply="other")
    attempt = ProviderChain([primary, secondary]).run("stage", "prompt", BOUNDS)
    assert attempt.ok
    assert attempt.value == "ok"
    assert attempt.provider == "primary"
    assert secondary.calls == 0


def test_failure_moves_to_secondary_once():
    primary = _ScriptedProvider("primary", error=ProviderError("boom"))
    secondary = _ScriptedProvider("secondary", reply="fine")
    attempt = ProviderChain([primary, secondary]).run("stage", "prompt", BOUNDS)
    assert attempt.ok
    assert attempt.provider == "secondary"
    assert primary.calls == 1
    assert secondary.calls == 1
    assert attempt.errors and attempt.errors[0].startswith("primary")


def test_unparseable_reply_counts_as_failure():
    primary = _ScriptedProvider("primary", reply="not json")
    secondary = _ScriptedProvider("secondary", reply="42")
    attempt = ProviderChain([primary, secondary]).run(
        "stage", "prompt", BOUNDS, parse=lambda raw: int(raw) if raw.isdigit() else None
    )
    assert attempt.value == 42
    assert attempt.provider == "secondary"


def test_all_failures_return_not_ok():
    providers = [_ScriptedProvider("a", error=ProviderError("x")), _ScriptedProvider("b", error=ProviderError("y"))]
    attempt = ProviderChain(providers).run("stage", "prompt", BOUNDS)
    assert not attempt.ok
    assert attempt.value is None
    assert [p.calls for p in providers] == [1, 1]
    assert len(attempt.errors) == 2


def test_http_provider_posts_chat_completion():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["authorization"]
        return httpx.Response(200, json={"choices": [{"message": {"content": "olá"}}]})

    client = httpx.Client(transport=httpx.MockTransport(handler))
    provider = HttpChatProvider("deepseek", api_key="k", model="deepseek-chat", api_base="https://api.example.com/", client=client)
    assert provider.complete("oi", max_tokens=10, temperature=0.1, timeout_s=2) == "olá"
    assert seen["url"] == "https://api.example.com/chat/completions"
    assert seen["auth"] == "Bearer k"


def test_http_provider_errors_become_provider_errors():
    client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(500)))
    provider = HttpChatProvider("deepseek", api_key="k", model="m", api_base="https://api.example.com", client=client)
    with pytest.raises(ProviderError):
        provider.complete("oi", max_tokens=10, temperature=0.1, timeout_s=2)

    empty = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"choices": []})))
    provider = HttpChatProvider("deepseek", api_key="k", model="m", api_base="https://api.example.com", client=empty)
    with pytest.raises(ProviderError):
        provider.complete("oi", max_tokens=10, temperature=0.1, timeout_s=2)


def test_chat_model_provider_wraps_langchain_model():
    provider = ChatModelProvider("openai", FakeListChatModel(responses=["resposta"]))
    assert provider.complete("oi", max_tokens=10, temperature=0.1, timeout_s=5) == "resposta"


def test_no_keys_is_fatal(monkeypatch):
    monkeypatch.setattr(llm_providers.settings, "OPENAI_API_KEY", "")
    monkeypatch.setattr(llm_providers.settings, "DEEPSEEK_API_KEY", "")
    with pytest.raises(NoProviderConfiguredError):
        llm_providers.build_providers_from_env()


def test_deepseek_only_configuration(monkeypatch):
    monkeypatch.setattr(llm_providers.settings, "OPENAI_API_KEY", "")
    monkeypatch.setattr(llm_providers.settings, "DEEPSEEK_API_KEY", "sk-test")
    providers = llm_providers.build_providers_from_env()
    assert [p.name for p in providers] == ["deepseek"]
