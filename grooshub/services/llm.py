"""
LLM client for the background analysis calls.

Every provider is reached through its OpenAI-compatible /chat/completions
endpoint. The provider picked by FF_LLM_PROVIDER goes first; when it fails,
the next provider with an API key gets one try.

  - Retry with exponential backoff + jitter on 429 and 5xx, honouring Retry-After
  - One pooled httpx client for the whole process
  - Lenient JSON extraction from model output
  - Token estimates without a tokenizer (~4 chars per token)
"""

import asyncio
import json
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from ..core.config import get_settings
from ..core.flags import get_flags

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = {429, 500, 502, 503, 504}
MAX_RETRIES = 3
BASE_DELAY = 1.0
MAX_DELAY = 16.0

PROVIDERS = ("openai", "anthropic", "gemini")
GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/openai"


@dataclass
class Provider:
    name: str
    base_url: str
    api_key: str
    model: str

    @property
    def url(self) -> str:
        return f"{self.base_url.rstrip('/')}/chat/completions"


def get_provider(name: str) -> Provider:
    settings = get_settings()
    name = name.lower()
    if name == "anthropic":
        return Provider(name, settings.anthropic_base_url, settings.anthropic_api_key, settings.anthropic_model)
    if name == "gemini":
        return Provider(name, GEMINI_BASE_URL, settings.gemini_api_key, settings.gemini_model)
    return Provider("openai", settings.openai_base_url, settings.openai_api_key, settings.openai_model)


def provider_chain() -> list[Provider]:
    """Configured provider first, then at most one fallback that has a key."""
    primary = get_provider(get_flags().llm_provider)
    chain = [primary]
    for name in PROVIDERS:
        if name == primary.name:
            continue
        candidate = get_provider(name)
        if candidate.api_key:
            chain.append(candidate)
            break
    return chain


# ── HTTP ─────────────────────────────────────────────────────────────

_client: Optional[httpx.AsyncClient] = None


def _get_client() -> httpx.AsyncClient:
    global _client
    if _client is None or _client.is_closed:
        _client = httpx.AsyncClient(
            timeout=httpx.Timeout(connect=10, read=120, write=30, pool=10),
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
        )
    return _client


async def close_client():
    """Close the shared HTTP client. Call on app shutdown."""
    global _client
    if _client and not _client.is_closed:
        await _client.aclose()
    _client = None


def _backoff(attempt: int, retry_after: Optional[str] = None) -> float:
    if retry_after:
        try:
            return min(MAX_DELAY, float(retry_after))
        except ValueError:
            pass
    return min(MAX_DELAY, BASE_DELAY * (2 ** attempt) + random.uniform(0, 1))


async def _post_with_retry(provider: Provider, payload: dict) -> dict:
    headers = {
        "Authorization": f"Bearer {provider.api_key}",
        "Content-Type": "application/json",
    }
    client = _get_client()
    last_error: Optional[Exception] = None

    for attempt in range(MAX_RETRIES + 1):
        retry_after = None
        try:
            resp = await client.post(provider.url, json=payload, headers=headers)
            if resp.status_code in RETRYABLE_STATUS:
                retry_after = resp.headers.get("retry-after")
                last_error = httpx.HTTPStatusError(
                    f"{provider.name} returned {resp.status_code}",
                    request=resp.request, response=resp,
                )
            else:
                if resp.status_code >= 400:
                    logger.error("LLM API error %d from %s: %s", resp.status_code, provider.name, resp.text[:500])
                resp.raise_for_status()
                return resp.json()
        except (httpx.TimeoutException, httpx.TransportError) as e:
            last_error = e

        if attempt < MAX_RETRIES:
            delay = _backoff(attempt, retry_after)
            logger.warning(
                "LLM %s failed (attempt %d/%d): %s; retrying in %.1fs",
                provider.name, attempt + 1, MAX_RETRIES + 1, last_error, delay,
            )
            await asyncio.sleep(delay)

    raise last_error or RuntimeError("LLM request failed after retries")


# ── Chat ─────────────────────────────────────────────────────────────

async def chat(
    messages: list[dict],
    model: Optional[str] = None,
    temperature: Optional[float] = None,
    max_tokens: Optional[int] = None,
) -> dict:
    """
    Chat completion; returns the response body with "model" and "provider"
    set to whoever answered.
    Raises ValueError when the configured provider has no API key.
    """
    settings = get_settings()
    chain = provider_chain()
    if not chain[0].api_key:
        raise ValueError(
            f"No API key for LLM provider '{chain[0].name}'. "
            "Set OPENAI_API_KEY, ANTHROPIC_API_KEY, or GEMINI_API_KEY."
        )

    for i, provider in enumerate(chain):
        payload: dict[str, Any] = {
            # An explicit model only makes sense for the primary provider
            "model": model if (model and i == 0) else provider.model,
            "messages": messages,
            "temperature": temperature if temperature is not None else settings.default_llm_temperature,
            "max_tokens": max_tokens or settings.default_llm_max_tokens,
        }
        start = time.monotonic()
        try:
            data = await _post_with_retry(provider, payload)
        except httpx.HTTPError as e:
            logger.error("LLM %s failed after %.1fs: %s", provider.name, time.monotonic() - start, e)
            if i == len(chain) - 1:
                raise
            logger.info("Falling back to %s", chain[i + 1].name)
            continue

        # Some gateways omit the model; fall back to the one we asked for
        data["model"] = data.get("model") or payload["model"]
        data["provider"] = provider.name
        usage = data.get("usage") or {}
        logger.info(
            "LLM analysis: %dms | in=%d out=%d tokens | %s/%s",
            int((time.monotonic() - start) * 1000),
            usage.get("prompt_tokens", 0),
            usage.get("completion_tokens", 0),
            provider.name,
            data["model"],
        )
        return data

    raise RuntimeError("No LLM provider available")


@dataclass
class Completion:
    text: str
    model: str
    provider: str = ""


async def complete(
    prompt: str,
    system: str = "",
    model: Optional[str] = None,
    temperature: float = 0.3,
    max_tokens: int = 2048,
) -> Completion:
    """Send a prompt, get the answer text and the model that wrote it."""
    messages = [{"role": "system", "content": system}] if system else []
    messages.append({"role": "user", "content": prompt})

    response = await chat(messages, model=model, temperature=temperature, max_tokens=max_tokens)
    return Completion(
        text=response["choices"][0]["message"]["content"] or "",
        model=response["model"],
        provider=response["provider"],
    )


def extract_json(text: str) -> Optional[dict]:
    """
    First JSON object in model output. Code fences and surrounding prose are
    ignored. Returns None when no object parses.
    """
    if not text:
        return None
    decoder = json.JSONDecoder()
    start = text.find("{")
    while start != -1:
        try:
            parsed, _ = decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            start = text.find("{", start + 1)
            continue
        if isinstance(parsed, dict):
            return parsed
        start = text.find("{", start + 1)
    return None


# ── Token estimation ─────────────────────────────────────────────────

def estimate_tokens(text: str) -> int:
    """~4 characters per token, rounded up. Empty text is 0 tokens."""
    if not text:
        return 0
    return -(-len(text) // 4)


def estimate_messages_tokens(messages: list[dict]) -> int:
    """Message contents plus a small per-message overhead."""
    total = 2
    for msg in messages:
        total += 4
        content = msg.get("content", "")
        if isinstance(content, str):
            total += estimate_tokens(content)
        if msg.get("name"):
            total += estimate_tokens(msg["name"])
    return total
