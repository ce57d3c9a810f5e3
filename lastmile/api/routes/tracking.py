"""
Tracking API Routes - live delivery tracking

Push: SSE stream fed by the in-process TrackingHub (events published by
workers arrive through the Redis relay started in main.py).
Pull: snapshot endpoint for clients that poll instead.
"""
import asyncio
import json
from datetime import datetime
from typing import AsyncGenerator, Dict, Any, List, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from lastmile.core.config import settings
from lastmile.core.logging import get_logger
from lastmile.db.database import get_db
from lastmile.domain.services.tracking_hub import (
    Subscription,
    TERMINAL_STATUSES,
    get_tracking_hub,
)
from lastmile.domain.services.tracking_service import TrackingService

logger = get_logger(__name__)

router = APIRouter()


class TrailPoint(BaseModel):
    latitude: float
    longitude: float
    timestamp: datetime
    courier_id: int
    applied: bool

    model_config = {"from_attributes": True}


class TrailResponse(BaseModel):
    delivery_id: int
    points: List[TrailPoint]
    count: int


def _sse_data(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(payload)}\n\n"


async def _sse_event_generator(
    delivery_id: int,
    subscription: Subscription,
    initial: Dict[str, Any],
    request: Request,
) -> AsyncGenerator[str, None]:
    """Snapshot first, then hub events; heartbeat while idle.

    Ends when the client disconnects or the delivery reaches a final state.
    """
    heartbeat = settings.TRACKING_SSE_HEARTBEAT_SECONDS
    try:
        # reconnect delay hint for EventSource clients
        yield f"retry: {settings.TRACKING_POLL_INTERVAL_SECONDS * 1000}\n\n"
        yield _sse_data(initial)
        if initial.get("status") in TERMINAL_STATUSES:
            return

        while True:
            if await request.is_disconnected():
                logger.info("SSE client disconnected", extra_data={"delivery_id": delivery_id})
                break

            event = await subscription.get(timeout=heartbeat)
            if event is not None:
                yield _sse_data(event.to_dict())
            elif subscription.closed:
                break
            else:
                yield ": heartbeat\n\n"

    except asyncio.CancelledError:
        logger.info("SSE connection cancelled", extra_data={"delivery_id": delivery_id})
    except Exception as e:
        logger.error(
            "SSE streaming error",
            extra_data={"delivery_id": delivery_id, "error": str(e)},
            exc_info=True,
        )
    finally:
        subscription.unsubscribe()
        logger.info(
            "SSE subscriber released",
            extra_data={"delivery_id": delivery_id, "dropped": subscription.dropped},
        )


@router.get(
    "/deliveries/{delivery_id}",
    summary="Delivery tracking snapshot",
    description=(
        "Last known location, ETA and status. Poll every "
        f"{settings.TRACKING_POLL_INTERVAL_SECONDS} seconds when SSE is unavailable."
    ),
    responses={404: {"description": "Delivery not found"}},
    tags=["Tracking"]
)
async def get_tracking_snapshot(
    delivery_id: int,
    db: AsyncSession = Depends(get_db)
) -> Dict[str, Any]:
    return await TrackingService(db).get_snapshot(delivery_id)


@router.get(
    "/deliveries/{delivery_id}/stream",
    summary="Live delivery tracking (SSE)",
    description=(
        "Server-Sent Events stream. The first message is the current snapshot; "
        "each following message is `{deliveryId, location, status, eta}`. "
        "The stream closes after `delivered` or `cancelled`.\n\n"
        "```js\n"
        "const es = new EventSource('/api/tracking/deliveries/42/stream');\n"
        "es.onmessage = (e) => console.log(JSON.parse(e.data));\n"
        "```"
    ),
    responses={
        200: {"description": "SSE stream opened", "content": {"text/event-stream": {}}},
        404: {"description": "Delivery not found"},
    },
    tags=["Tracking"]
)
async def stream_tracking(
    delivery_id: int,
    request: Request,
    db: AsyncSession = Depends(get_db)
) -> StreamingResponse:
    # subscribe before reading the snapshot so nothing published in between is lost
    subscription = get_tracking_hub().subscribe(delivery_id)
    try:
        initial = await TrackingService(db).get_snapshot(delivery_id)
    except Exception:
        subscription.unsubscribe()
        raise

    logger.info("SSE client connected", extra_data={"delivery_id": delivery_id})
    return StreamingResponse(
        _sse_event_generator(delivery_id, subscription, initial, request),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.get(
    "/deliveries/{delivery_id}/trail",
    response_model=TrailResponse,
    summary="Delivery location history",
    responses={404: {"description": "Delivery not found"}},
    tags=["Tracking"]
)
async def get_trail(
    delivery_id: int,
    limit: Optional[int] = Query(None, ge=1, le=settings.TRACKING_TRAIL_LIMIT),
    include_stale: bool = False,
    db: AsyncSession = Depends(get_db)
) -> TrailResponse:
    pings = await TrackingService(db).get_trail(delivery_id, limit, include_stale)
    return TrailResponse(
        delivery_id=delivery_id,
        points=[TrailPoint.model_validate(p) for p in pings],
        count=len(pings),
    )
