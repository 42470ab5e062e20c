"""
Tests for the LLM client: JSON extraction, token estimates, retry and provider fallback.
"""

import asyncio
import json

import httpx
import pytest

from grooshub.core.config import get_settings
from grooshub.core.flags import get_flags
from grooshub.services import llm


def completion(text: str) -> dict:
    return {
        "choices": [{"message": {"role": "assistant", "content": text}}],
        "usage": {"prompt_tokens": 10, "completion_tokens": 5},
    }


@pytest.fixture
def keys(monkeypatch):
    monkeypatch.setenv("FF_LLM_PROVIDER", "openai")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-openai")
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-anthropic")
    get_settings.cache_clear()
    get_flags.cache_clear()
    monkeypatch.setattr(llm, "_backoff", lambda attempt, retry_after=None: 0)


@pytest.fixture
def transport(monkeypatch):
    """transport(handler) routes the shared client through an httpx.MockTransport."""
    def _install(handler):
        monkeypatch.setattr(llm, "_client", httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    return _install


class TestExtractJson:

    def test_fenced_block_with_prose(self):
        text = 'Sure, here it is:\n```json\n{"text": "ok", "keyPoints": ["a"]}\n```\nAnything else?'
        assert llm.extract_json(text) == {"text": "ok", "keyPoints": ["a"]}

    def test_skips_braces_that_are_not_json(self):
        text = 'Use {name} as placeholder. {"memory": {"shouldUpdate": false}} and {more}'
        assert llm.extract_json(text) == {"memory": {"shouldUpdate": False}}

    def test_nothing_parses(self):
        assert llm.extract_json("") is None
        assert llm.extract_json("no json here") is None
        assert llm.extract_json('{"unterminated": ') is None


class TestTokenEstimates:

    def test_four_chars_per_token(self):
        assert llm.estimate_tokens("") == 0
        assert llm.estimate_tokens("abcd") == 1
        assert llm.estimate_tokens("abcde") == 2

    def test_messages(self):
        messages = [{"role": "user", "content": "abcd"}, {"role": "assistant", "content": "abcdefgh"}]
        assert llm.estimate_messages_tokens(messages) == 2 + (4 + 1) + (4 + 2)
        assert llm.estimate_messages_tokens([]) == 2


class TestProviders:

    def test_chain_has_one_fallback_with_key(self, keys):
        assert [p.name for p in llm.provider_chain()] == ["openai", "anthropic"]

    def test_no_fallback_without_keys(self):
        assert [p.name for p in llm.provider_chain()] == ["openai"]

    def test_each_provider_uses_its_own_model(self, monkeypatch):
        monkeypatch.setenv("FF_LLM_PROVIDER", "gemini")
        monkeypatch.setenv("GEMINI_MODEL", "gemini-2.0-flash")
        monkeypatch.setenv("OPENAI_API_KEY", "sk-openai")
        get_settings.cache_clear()
        get_flags.cache_clear()

        chain = llm.provider_chain()
        assert [(p.name, p.model) for p in chain] == [
            ("gemini", "gemini-2.0-flash"),
            ("openai", get_settings().openai_model),
        ]
        assert chain[0].url == llm.GEMINI_BASE_URL + "/chat/completions"

    def test_missing_key_raises(self):
        with pytest.raises(ValueError, match="No API key"):
            asyncio.run(llm.complete("hi"))


class TestChat:

    def test_retries_transient_errors(self, keys, transport):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(json.loads(request.content))
            if len(calls) < 3:
                return httpx.Response(503)
            return httpx.Response(200, json=completion("hallo"))

        transport(handler)
        answer = asyncio.run(llm.complete("prompt", system="sys"))

        assert answer.text == "hallo"
        assert len(calls) == 3
        assert calls[0]["messages"] == [
            {"role": "system", "content": "sys"},
            {"role": "user", "content": "prompt"},
        ]

    def test_falls_back_to_next_provider(self, keys, transport):
        hosts = []

        def handler(request: httpx.Request) -> httpx.Response:
            hosts.append(request.url.host)
            if request.url.host == "api.openai.com":
                return httpx.Response(500)
            body = json.loads(request.content)
            assert body["model"] == get_settings().anthropic_model
            assert request.headers["authorization"] == "Bearer sk-anthropic"
            return httpx.Response(200, json=completion("fallback"))

        transport(handler)
        answer = asyncio.run(llm.complete("prompt"))
        assert answer.text == "fallback"
        assert answer.provider == "anthropic"
        assert answer.model == get_settings().anthropic_model
        assert hosts.count("api.openai.com") == llm.MAX_RETRIES + 1
        assert hosts[-1] == "api.anthropic.com"

    def test_client_errors_are_not_retried(self, monkeypatch, transport):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-openai")
        get_settings.cache_clear()
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(401, json={"error": "bad key"})

        transport(handler)
        with pytest.raises(httpx.HTTPStatusError):
            asyncio.run(llm.complete("prompt"))
        assert len(calls) == 1

    def test_reports_model_from_response(self, keys, transport):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={**completion("ok"), "model": "gpt-4o-mini-2024-07-18"})

        transport(handler)
        answer = asyncio.run(llm.complete("prompt"))
        assert answer.model == "gpt-4o-mini-2024-07-18"
        assert answer.provider == "openai"
