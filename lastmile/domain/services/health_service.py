"""
Readiness checks for ``/health/ready``.

Database, tracking Redis and the Celery broker are pinged concurrently, each
under its own timeout. A failing dependency reports ``error: <name>_unavailable``;
the underlying error only goes to the log.
"""
import asyncio
from typing import Any, Awaitable, Callable

import redis.asyncio as aioredis
from sqlalchemy import text

from lastmile.core import redis_client
from lastmile.core.config import settings
from lastmile.core.logging import get_logger
from lastmile.db.database import AsyncSessionLocal

logger = get_logger(__name__)

_CHECK_OK = "ok"


async def _probe(name: str, ping: Callable[[], Awaitable[Any]]) -> str:
    try:
        await asyncio.wait_for(ping(), timeout=settings.HEALTH_CHECK_TIMEOUT_SECONDS)
    except Exception as e:
        logger.warning(
            "Readiness dependency unavailable",
            extra_data={"dependency": name, "error": str(e) or type(e).__name__},
        )
        return f"error: {name}_unavailable"
    return _CHECK_OK


async def _ping_db() -> None:
    async with AsyncSessionLocal() as session:
        await session.execute(text("SELECT 1"))


async def _ping_tracking_redis() -> None:
    client = await redis_client.get_redis()
    await client.ping()


async def _ping_broker() -> None:
    # the broker is a separate Redis database; the shared client is not reused
    client = aioredis.from_url(settings.CELERY_BROKER_URL, decode_responses=True)
    try:
        await client.ping()
    finally:
        await client.aclose()


async def _check_db() -> str:
    return await _probe("db", _ping_db)


async def _check_redis() -> str:
    return await _probe("redis", _ping_tracking_redis)


async def _check_celery() -> str:
    return await _probe("celery", _ping_broker)


async def check_readiness() -> dict[str, Any]:
    """``{"status": "healthy" | "degraded", "db": ..., "redis": ..., "celery": ...}``"""
    db, redis, celery = await asyncio.gather(_check_db(), _check_redis(), _check_celery())
    checks = {"db": db, "redis": redis, "celery": celery}
    healthy = all(result == _CHECK_OK for result in checks.values())
    if not healthy:
        logger.warning("Readiness check degraded", extra_data=checks)
    return {"status": "healthy" if healthy else "degraded", **checks}
