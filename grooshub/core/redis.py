"""
Realtime notifications over Redis pub/sub, or nothing at all when FF_USE_REDIS is off.

Events are small JSON envelopes ({type, data, at}) on two channel families:
  tenant:{tenant_id}            summary.created, project_memory.updated
  user:{tenant_id}:{user_id}    memory.updated (memory panel refresh)

Publishing never raises: a lost notification must not fail the write that caused it.
"""

import json
import logging
from typing import Any

from ..models.base import utcnow
from .config import get_settings
from .flags import get_flags

logger = logging.getLogger(__name__)

_redis_client = None


def tenant_channel(tenant_id: str) -> str:
    return f"tenant:{tenant_id}"


def user_channel(tenant_id: str, user_id: str) -> str:
    return f"user:{tenant_id}:{user_id}"


def _get_redis():
    global _redis_client
    if _redis_client is None:
        import redis.asyncio as aioredis

        _redis_client = aioredis.from_url(
            get_settings().redis_url,
            decode_responses=True,
            socket_connect_timeout=5,
        )
    return _redis_client


async def publish(channel: str, event_type: str, data: Any = None) -> bool:
    """Returns True when the event went out."""
    if not get_flags().use_redis:
        return False

    envelope = {"type": event_type, "data": data, "at": utcnow().isoformat()}
    try:
        await _get_redis().publish(channel, json.dumps(envelope, default=str))
    except Exception as e:
        logger.warning("Redis publish failed (channel=%s, event=%s): %s", channel, event_type, e)
        return False
    return True


async def notify_tenant(tenant_id: str, event_type: str, data: Any = None) -> bool:
    return await publish(tenant_channel(tenant_id), event_type, data)


async def notify_user(tenant_id: str, user_id: str, event_type: str, data: Any = None) -> bool:
    return await publish(user_channel(tenant_id, user_id), event_type, data)


async def close_redis() -> None:
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")
