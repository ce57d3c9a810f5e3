"""
Redis access for live tracking.

One pooled ``redis.asyncio`` client per process, plus the tracking layout on
top of it:
- pub/sub channel ``delivery_tracking:{delivery_id}``: every accepted event,
  so API processes can relay what workers publish
- key ``delivery_tracking_snapshot:{delivery_id}``: latest event, read by the
  poll endpoint in any process
"""
import asyncio
import json
from typing import Any, Optional
from urllib.parse import urlparse

import redis.asyncio as aioredis

from lastmile.core.config import settings
from lastmile.core.logging import get_logger

logger = get_logger(__name__)

TRACKING_CHANNEL_PREFIX = "delivery_tracking"
TRACKING_SNAPSHOT_PREFIX = "delivery_tracking_snapshot"
TRACKING_CHANNEL_PATTERN = f"{TRACKING_CHANNEL_PREFIX}:*"

_redis_client: aioredis.Redis | None = None
_init_lock = asyncio.Lock()


def tracking_channel(delivery_id: int) -> str:
    return f"{TRACKING_CHANNEL_PREFIX}:{delivery_id}"


def tracking_snapshot_key(delivery_id: int) -> str:
    return f"{TRACKING_SNAPSHOT_PREFIX}:{delivery_id}"


def _redacted(url: str) -> str:
    try:
        password = urlparse(url).password
    except ValueError:
        return "redis://****"
    return url.replace(f":{password}@", ":****@") if password else url


async def get_redis() -> aioredis.Redis:
    """Process-wide client; the first caller connects and pings."""
    global _redis_client
    if _redis_client is None:
        async with _init_lock:
            if _redis_client is None:
                client = aioredis.from_url(
                    settings.REDIS_URL,
                    decode_responses=True,
                    socket_timeout=settings.REDIS_SOCKET_TIMEOUT_SECONDS,
                    socket_connect_timeout=settings.REDIS_SOCKET_TIMEOUT_SECONDS,
                    health_check_interval=30,
                )
                await client.ping()
                _redis_client = client
                logger.info(
                    "Redis client initialized",
                    extra_data={"url": _redacted(settings.REDIS_URL)},
                )
    return _redis_client


async def publish_tracking_event(delivery_id: int, message: str, snapshot: str) -> None:
    """Broadcast an event and replace the delivery's cached snapshot."""
    client = await get_redis()
    await client.publish(tracking_channel(delivery_id), message)
    await client.set(
        tracking_snapshot_key(delivery_id),
        snapshot,
        ex=settings.TRACKING_SNAPSHOT_TTL_SECONDS,
    )


async def read_tracking_snapshot(delivery_id: int) -> Optional[dict[str, Any]]:
    """Cached snapshot of a delivery, or None when nothing is cached."""
    client = await get_redis()
    raw = await client.get(tracking_snapshot_key(delivery_id))
    return json.loads(raw) if raw else None


async def close_redis() -> None:
    """Called on app shutdown."""
    global _redis_client
    if _redis_client is None:
        return
    client, _redis_client = _redis_client, None
    await client.aclose()
    logger.info("Redis connection closed")
