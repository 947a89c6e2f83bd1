"""
Store lifecycle events.

Every event is appended to the store's in-memory activity log (bounded ring
buffer) and, when REDIS_URL is configured, published to a Redis Stream
(store:events:{store_id}) plus the global store:events pub/sub channel so
dashboards can follow provisioning in real time.

Redis is optional: if it is unconfigured or unreachable, events are kept
in-memory only. A failed connection is not retried for REDIS_RETRY_INTERVAL
seconds so provisioning steps do not each wait on a dead server.
"""

import json
import logging
import time
from datetime import datetime, timezone
from typing import Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from config import settings

logger = logging.getLogger("events")

# Activity log max entries kept per store record
ACTIVITY_LOG_MAX = 15

# Redis stream cap per store
STREAM_MAXLEN = 100

GLOBAL_CHANNEL = "store:events"

REDIS_TIMEOUT = 2.0
REDIS_RETRY_INTERVAL = 30.0

_redis_client: Optional[aioredis.Redis] = None
_retry_at = 0.0


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def stream_key(store_id: str) -> str:
    return f"store:events:{store_id}"


async def get_redis() -> Optional[aioredis.Redis]:
    """Lazy-init Redis client. Returns None if unavailable."""
    global _redis_client, _retry_at
    if _redis_client is not None:
        return _redis_client
    if not settings.REDIS_URL:
        return None
    if time.monotonic() < _retry_at:
        return None
    client = aioredis.Redis.from_url(
        settings.REDIS_URL,
        decode_responses=True,
        socket_connect_timeout=REDIS_TIMEOUT,
        socket_timeout=REDIS_TIMEOUT,
    )
    try:
        await client.ping()
    except RedisError as e:
        logger.warning(f"Redis unavailable (non-fatal): {e}")
        _retry_at = time.monotonic() + REDIS_RETRY_INTERVAL
        await client.aclose()
        return None
    logger.info(f"Redis connected: {settings.REDIS_URL}")
    _redis_client = client
    return _redis_client


async def close_redis():
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None


def add_activity(activity_log: list, event_type: str, message: str) -> dict:
    """Append an event to an activity log ring buffer."""
    entry = {
        "timestamp": _now(),
        "event": event_type,
        "message": message,
    }
    activity_log.append(entry)
    while len(activity_log) > ACTIVITY_LOG_MAX:
        activity_log.pop(0)
    return entry


async def publish_event(store_id: str, event_type: str, message: str, status: str = ""):
    """Publish event to Redis Stream for real-time dashboard consumption."""
    r = await get_redis()
    if not r:
        return
    payload = {
        "store": store_id,
        "type": event_type,
        "message": message,
        "status": status,
        "timestamp": _now(),
    }
    try:
        await r.xadd(stream_key(store_id), payload, maxlen=STREAM_MAXLEN)
        await r.publish(GLOBAL_CHANNEL, json.dumps(payload))
    except RedisError as e:
        logger.debug(f"Redis publish failed (non-fatal): {e}")


async def emit(record, event_type: str, message: str):
    """Record an event on a store record and publish it."""
    add_activity(record.activity_log, event_type, message)
    await publish_event(record.id, event_type, message, record.status.value)


async def read_stream(store_id: str, count: int = 50) -> list[dict]:
    """Read the Redis Stream for a store. Empty when Redis is unavailable."""
    r = await get_redis()
    if not r:
        return []
    try:
        entries = await r.xrange(stream_key(store_id), count=count)
    except RedisError as e:
        logger.debug(f"Redis stream read failed: {e}")
        return []
    return [
        {
            "timestamp": data.get("timestamp", ""),
            "event": data.get("type", ""),
            "message": data.get("message", ""),
            "source": "redis",
        }
        for _, data in entries
    ]


async def drop_stream(store_id: str):
    """Remove the Redis Stream of a deleted store."""
    r = await get_redis()
    if not r:
        return
    try:
        await r.delete(stream_key(store_id))
    except RedisError as e:
        logger.debug(f"Redis stream cleanup failed: {e}")


async def redis_status() -> str:
    """Connectivity summary for the health endpoint."""
    if not settings.REDIS_URL:
        return "disabled"
    r = await get_redis()
    if not r:
        return "disconnected"
    try:
        await r.ping()
    except RedisError:
        return "disconnected"
    return "connected"
