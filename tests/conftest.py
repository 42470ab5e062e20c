"""
Shared fixtures: isolated settings per test and a throwaway SQLite database.
"""

import asyncio

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import grooshub.models  # noqa: F401  (registers tables on Base.metadata)
from grooshub.core import database
from grooshub.core.config import get_settings
from grooshub.core.database import Base
from grooshub.core.flags import get_flags
from grooshub.services.llm import Completion

TEST_MASTER_KEY = "0f" * 32
CRON_SECRET = "cron-test-secret"


@pytest.fixture(autouse=True)
def test_env(monkeypatch, tmp_path):
    """Dev auth, no Redis, no LLM keys, no encryption unless a test turns it on."""
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path}/app.db")
    monkeypatch.setenv("FF_USE_AUTH0", "false")
    monkeypatch.setenv("FF_USE_REDIS", "false")
    monkeypatch.setenv("ENCRYPTION_MASTER_KEY", "")
    monkeypatch.setenv("CRON_SECRET", CRON_SECRET)
    for key in ("OPENAI_API_KEY", "ANTHROPIC_API_KEY", "GEMINI_API_KEY"):
        monkeypatch.setenv(key, "")
    for key in ("OPENAI_BASE_URL", "ANTHROPIC_BASE_URL", "GEMINI_BASE_URL"):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setattr(database, "_engine", None)
    monkeypatch.setattr(database, "_session_factory", None)
    get_settings.cache_clear()
    get_flags.cache_clear()
    yield
    get_settings.cache_clear()
    get_flags.cache_clear()


@pytest.fixture
def encryption_on(monkeypatch):
    monkeypatch.setenv("ENCRYPTION_MASTER_KEY", TEST_MASTER_KEY)
    get_settings.cache_clear()


@pytest.fixture
def encryption_off(monkeypatch):
    monkeypatch.setenv("ENCRYPTION_MASTER_KEY", "")
    get_settings.cache_clear()


@pytest.fixture
def run_db(tmp_path):
    """
    run_db(fn) runs `await fn(db)` in a fresh session and commits.
    Calls within one test share the same database file.
    """
    url = f"sqlite+aiosqlite:///{tmp_path}/services.db"

    def _run(fn):
        async def main():
            engine = create_async_engine(url)
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            factory = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
            try:
                async with factory() as db:
                    result = await fn(db)
                    await db.commit()
                    return result
            finally:
                await engine.dispose()

        return asyncio.run(main())

    return _run


class FakeLLM:
    """Stands in for llm.complete. Returns queued answers, records prompts."""

    model = "fake-analysis-model"

    def __init__(self, *answers: str, delay: float = 0):
        self.answers = list(answers)
        self.prompts: list[str] = []
        self.delay = delay

    async def __call__(self, prompt: str, system: str = "", **kwargs):
        self.prompts.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        if not self.answers:
            raise AssertionError("Unexpected LLM call")
        return Completion(text=self.answers.pop(0), model=self.model, provider="fake")


@pytest.fixture
def fake_llm(monkeypatch):
    """fake_llm(*answers, delay=0) installs a FakeLLM and returns it."""
    from grooshub.services import llm

    def _install(*answers: str, delay: float = 0) -> FakeLLM:
        fake = FakeLLM(*answers, delay=delay)
        monkeypatch.setattr(llm, "complete", fake)
        return fake

    return _install
