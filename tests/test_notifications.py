"""
Tests for realtime notifications.
"""

import asyncio
import json

import pytest

from grooshub.core import redis as notifications
from grooshub.core.flags import get_flags


class FakeRedis:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.published = []

    async def publish(self, channel, message):
        if self.fail:
            raise ConnectionError("redis down")
        self.published.append((channel, json.loads(message)))


@pytest.fixture
def redis_on(monkeypatch):
    monkeypatch.setenv("FF_USE_REDIS", "true")
    get_flags.cache_clear()

    def _install(fake: FakeRedis) -> FakeRedis:
        monkeypatch.setattr(notifications, "_redis_client", fake)
        return fake

    return _install


class TestNotifications:

    def test_disabled_is_noop(self):
        assert asyncio.run(notifications.notify_tenant("org-1", "summary.created", {})) is False

    def test_channels_and_envelope(self, redis_on):
        fake = redis_on(FakeRedis())

        assert asyncio.run(notifications.notify_tenant("org-1", "summary.created", {"summary_id": "s1"}))
        assert asyncio.run(notifications.notify_user("org-1", "u1", "memory.updated"))

        (channel, event), (user_channel, user_event) = fake.published
        assert channel == "tenant:org-1"
        assert event["type"] == "summary.created"
        assert event["data"] == {"summary_id": "s1"}
        assert event["at"]
        assert user_channel == "user:org-1:u1"
        assert user_event["data"] is None

    def test_failure_is_swallowed(self, redis_on, caplog):
        redis_on(FakeRedis(fail=True))
        assert asyncio.run(notifications.notify_user("org-1", "u1", "memory.updated")) is False
        assert "Redis publish failed" in caplog.text
