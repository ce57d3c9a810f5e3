"""
Lastmile Dispatch API.

    uvicorn lastmile.main:app

On startup the tables are created and, unless TRACKING_RELAY_ENABLED is off,
a background task relays tracking events published by the Celery workers to
this process's SSE subscribers.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse

from lastmile.api.routes import router as api_router
from lastmile.core import redis_client
from lastmile.core.config import settings
from lastmile.core.logging import get_logger, setup_logging
from lastmile.core.middleware import CORRELATION_HEADER, setup_exception_handlers, setup_middleware
from lastmile.db.database import Base, engine
from lastmile.domain.services.tracking_hub import get_tracking_hub

setup_logging(
    level="DEBUG" if settings.DEBUG else "INFO",
    json_format=not settings.DEBUG,
    app_name=settings.APP_NAME,
)

logger = get_logger(__name__)

RELAY_RESTART_DELAY_SECONDS = 5.0

_DEV_ORIGINS = ["http://localhost", "http://localhost:3000", "http://127.0.0.1:3000"]

_OPENAPI_TAGS = [
    {
        "name": "Deliveries",
        "description": "Delivery lifecycle: order-ready trigger, dispatch, accept, status updates, rating.",
    },
    {"name": "Orders", "description": "Order mirror: registration, status changes, payment stub."},
    {"name": "Couriers", "description": "Courier registry: profiles, availability, location pings."},
    {"name": "Tracking", "description": "Live tracking over SSE plus snapshot polling."},
    {"name": "Earnings", "description": "Courier earnings per day, summaries and payouts."},
    {"name": "Health", "description": "Liveness and readiness probes."},
]


def cors_origins(raw: str, debug: bool) -> list[str]:
    """Comma-separated ALLOWED_ORIGINS; localhost only when unset in debug."""
    origins = [origin.strip() for origin in raw.split(",") if origin.strip()]
    return origins or (list(_DEV_ORIGINS) if debug else [])


async def run_tracking_relay() -> None:
    """Restart the Redis relay after failures; an outage only pauses cross-process events."""
    hub = get_tracking_hub()
    while True:
        try:
            await hub.run_redis_relay()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                "Tracking relay stopped, restarting",
                extra_data={"error": str(e), "delay": RELAY_RESTART_DELAY_SECONDS},
            )
            await asyncio.sleep(RELAY_RESTART_DELAY_SECONDS)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    logger.info("Starting application", extra_data={"app_name": settings.APP_NAME})
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    relay = asyncio.create_task(run_tracking_relay()) if settings.TRACKING_RELAY_ENABLED else None
    try:
        yield
    finally:
        logger.info("Shutting down application")
        if relay is not None:
            relay.cancel()
            try:
                await relay
            except asyncio.CancelledError:
                pass
        await redis_client.close_redis()
        await engine.dispose()


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description=(
        "Last-mile delivery dispatch: courier assignment, delivery state "
        "management, live tracking and courier earnings."
    ),
    openapi_tags=_OPENAPI_TAGS,
    lifespan=lifespan,
)

setup_middleware(app)
setup_exception_handlers(app)

_origins = cors_origins(settings.ALLOWED_ORIGINS, settings.DEBUG)
if _origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
        allow_headers=["Content-Type", CORRELATION_HEADER],
        expose_headers=[CORRELATION_HEADER],
    )

app.include_router(api_router, prefix="/api")


@app.get(
    "/health",
    summary="Liveness probe",
    description="No dependency checks, so a database or Redis outage does not restart the process.",
    tags=["Health"],
)
async def health_check() -> dict[str, str]:
    return {"status": "healthy"}


@app.get(
    "/health/ready",
    summary="Readiness probe",
    description="Database, Redis and the Celery broker; 503 when any is unreachable.",
    responses={
        200: {"description": "All dependencies reachable"},
        503: {
            "description": "At least one dependency unavailable",
            "content": {
                "application/json": {
                    "example": {
                        "status": "degraded",
                        "db": "ok",
                        "redis": "error: redis_unavailable",
                        "celery": "ok",
                    }
                }
            },
        },
    },
    tags=["Health"],
)
async def readiness_check() -> JSONResponse:
    from lastmile.domain.services.health_service import check_readiness

    result = await check_readiness()
    return JSONResponse(content=result, status_code=200 if result["status"] == "healthy" else 503)
