"""
Central feature flags. One file controls every optional dependency and pipeline stage.

Set via environment variables (prefix FF_) or .env file.
When a flag is OFF, the system skips that stage or uses a local fallback. Nothing crashes.
"""

from functools import lru_cache
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class FeatureFlags(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Auth ─────────────────────────────────────────────────────────
    use_auth0: bool = Field(default=True, alias="FF_USE_AUTH0")
    # ON  → JWT validated via Auth0 JWKS. Needs AUTH0_DOMAIN, AUTH0_AUDIENCE.
    # OFF → Dev user injected (tenant_id="dev-org"). No token needed.

    # ── Realtime ─────────────────────────────────────────────────────
    use_redis: bool = Field(default=False, alias="FF_USE_REDIS")
    # ON  → memory.updated / summary.created published on tenant channels. Needs REDIS_URL.
    # OFF → Notifications silently skipped.

    # ── LLM Provider ─────────────────────────────────────────────────
    llm_provider: str = Field(default="openai", alias="FF_LLM_PROVIDER")
    # "openai"    → Direct OpenAI. Needs OPENAI_API_KEY.
    # "anthropic" → Anthropic OpenAI-compatible endpoint. Needs ANTHROPIC_API_KEY.
    # "gemini"    → Google Gemini OpenAI-compatible endpoint. Needs GEMINI_API_KEY.

    # ── Pipeline stages ──────────────────────────────────────────────
    enable_summarization: bool = Field(default=True, alias="FF_ENABLE_SUMMARIZATION")
    # OFF → conversations are never compressed; full history goes to the model.

    enable_memory: bool = Field(default=True, alias="FF_ENABLE_MEMORY")
    # OFF → no preference/memory extraction after conversations.

    enable_project_memory: bool = Field(default=True, alias="FF_ENABLE_PROJECT_MEMORY")
    # OFF → extracted project facts are dropped and project memory is not injected.


@lru_cache
def get_flags() -> FeatureFlags:
    return FeatureFlags()
