"""
Tracking Service - location ping ingestion, ETA recomputation and snapshots.

A ping is always appended to the location history. It only moves the
courier (and the delivery's ETA) when it is newer than what is stored;
older pings are kept with ``applied=False`` and otherwise ignored.
"""
import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update, or_
from sqlalchemy.ext.asyncio import AsyncSession

from lastmile.core import redis_client
from lastmile.core.config import settings
from lastmile.core.exceptions import DeliveryNotFoundError
from lastmile.core.logging import get_logger
from lastmile.core.timeutil import utcnow, to_naive_utc, isoformat_z
from lastmile.db.models.delivery import Delivery, DeliveryStatus, ACTIVE_DELIVERY_STATUSES
from lastmile.db.models.location_ping import LocationPing
from lastmile.domain.geo import GeoPoint, distance_km, estimate_minutes
from lastmile.domain.services.courier_registry import CourierRegistry
from lastmile.domain.services.tracking_hub import (
    EVENT_KIND_LOCATION,
    TrackingEvent,
    TrackingHub,
    get_tracking_hub,
)

logger = get_logger(__name__)


class IngestOutcome(str, enum.Enum):
    APPLIED = "applied"
    STALE = "stale"


@dataclass
class IngestResult:
    outcome: IngestOutcome
    courier_id: int
    delivery_id: Optional[int] = None
    eta_minutes: Optional[int] = None
    published: bool = False

    @property
    def applied(self) -> bool:
        return self.outcome == IngestOutcome.APPLIED


def eta_destination(delivery: Delivery) -> GeoPoint:
    """Restaurant while the courier is heading to pickup, customer afterwards."""
    if delivery.status == DeliveryStatus.ASSIGNED:
        return GeoPoint(delivery.restaurant_latitude, delivery.restaurant_longitude)
    return GeoPoint(delivery.customer_latitude, delivery.customer_longitude)


class TrackingService:
    """Courier ping ingestion and delivery tracking reads"""

    def __init__(self, db: AsyncSession, hub: Optional[TrackingHub] = None):
        self.db = db
        self.hub = hub or get_tracking_hub()
        self.registry = CourierRegistry(db)

    async def ingest(
        self,
        courier_id: int,
        point: GeoPoint,
        timestamp: Optional[datetime] = None,
        delivery_id: Optional[int] = None,
    ) -> IngestResult:
        """
        Record a courier ping and, for an active delivery of that courier,
        recompute and publish the ETA.

        ``point`` is already validated by GeoPoint. A stale ping is not an
        error: the result has outcome STALE and nothing but the history row
        changes.

        A ping that moves the courier but is older than the delivery's last
        recorded location is APPLIED without an ETA or a publish; only the
        delivery's tracking view stays unchanged.
        """
        ts = to_naive_utc(timestamp) if timestamp is not None else utcnow()
        event: Optional[TrackingEvent] = None
        eta: Optional[int] = None

        try:
            applied = await self.registry.update_location(courier_id, point, ts, auto_commit=False)

            delivery = None
            if applied and delivery_id is not None:
                delivery = await self._active_delivery_for(delivery_id, courier_id)

            if delivery is not None:
                eta = estimate_minutes(
                    distance_km(point, eta_destination(delivery)),
                    settings.AVG_SPEED_KMH,
                    settings.ROUTE_BUFFER_MINUTES,
                )
                # last write wins per delivery as well
                result = await self.db.execute(
                    update(Delivery)
                    .where(
                        Delivery.id == delivery.id,
                        or_(Delivery.last_location_at.is_(None), Delivery.last_location_at <= ts),
                    )
                    .values(
                        current_eta_min=eta,
                        last_location_latitude=point.latitude,
                        last_location_longitude=point.longitude,
                        last_location_at=ts,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    event = TrackingEvent(
                        delivery_id=delivery.id,
                        status=delivery.status.value,
                        location=point,
                        eta_minutes=eta,
                        timestamp=ts,
                        kind=EVENT_KIND_LOCATION,
                    )
                else:
                    logger.info(
                        "Ping older than delivery location, delivery tracking unchanged",
                        extra_data={
                            "courier_id": courier_id,
                            "delivery_id": delivery.id,
                            "timestamp": isoformat_z(ts),
                        },
                    )
                    eta = None

            self.db.add(LocationPing(
                courier_id=courier_id,
                delivery_id=delivery_id,
                latitude=point.latitude,
                longitude=point.longitude,
                timestamp=ts,
                applied=applied,
            ))
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        if not applied:
            logger.info(
                "Stale location ping ignored",
                extra_data={
                    "courier_id": courier_id,
                    "delivery_id": delivery_id,
                    "timestamp": isoformat_z(ts),
                },
            )
            return IngestResult(IngestOutcome.STALE, courier_id, delivery_id)

        published = False
        if event is not None:
            published = await self.hub.publish(event)

        return IngestResult(
            IngestOutcome.APPLIED,
            courier_id,
            delivery_id,
            eta_minutes=eta,
            published=published,
        )

    async def _active_delivery_for(self, delivery_id: int, courier_id: int) -> Optional[Delivery]:
        result = await self.db.execute(
            select(Delivery)
            .where(Delivery.id == delivery_id)
            .execution_options(populate_existing=True)
        )
        delivery = result.scalar_one_or_none()
        if delivery is None:
            raise DeliveryNotFoundError(delivery_id)

        if delivery.status not in ACTIVE_DELIVERY_STATUSES or delivery.delivery_personnel_id != courier_id:
            logger.debug(
                "Ping not tied to an active delivery of this courier",
                extra_data={
                    "delivery_id": delivery_id,
                    "courier_id": courier_id,
                    "status": delivery.status.value,
                },
            )
            return None
        return delivery

    async def get_snapshot(self, delivery_id: int) -> Dict[str, Any]:
        """
        Last known location/ETA/status of a delivery for polling clients.

        Status always comes from the database; location and ETA from the
        latest applied ping.
        """
        result = await self.db.execute(
            select(Delivery)
            .where(Delivery.id == delivery_id)
            .execution_options(populate_existing=True)
        )
        delivery = result.scalar_one_or_none()
        if delivery is None:
            raise DeliveryNotFoundError(delivery_id)

        snapshot = self.hub.snapshot(delivery_id)
        if snapshot is not None and snapshot.status == delivery.status.value:
            return snapshot.to_snapshot()

        cached = await self._cached_snapshot(delivery_id)
        if cached is not None and cached.get("status") == delivery.status.value:
            return cached

        eta = delivery.current_eta_min
        if eta is None and delivery.status == DeliveryStatus.PENDING:
            eta = delivery.estimated_delivery_time_min
        event = TrackingEvent(
            delivery_id=delivery.id,
            status=delivery.status.value,
            location=GeoPoint.from_optional(
                delivery.last_location_latitude, delivery.last_location_longitude
            ),
            eta_minutes=eta,
            timestamp=delivery.last_location_at,
            published_at=delivery.updated_at or utcnow(),
        )
        return event.to_snapshot()

    async def _cached_snapshot(self, delivery_id: int) -> Optional[Dict[str, Any]]:
        try:
            return await redis_client.read_tracking_snapshot(delivery_id)
        except Exception as e:
            logger.warning(
                "Tracking snapshot cache unavailable",
                extra_data={"delivery_id": delivery_id, "error": str(e)},
            )
            return None

    async def get_trail(
        self,
        delivery_id: int,
        limit: Optional[int] = None,
        include_stale: bool = False,
    ) -> List[LocationPing]:
        """Ping history of a delivery, oldest first."""
        result = await self.db.execute(select(Delivery.id).where(Delivery.id == delivery_id))
        if result.scalar_one_or_none() is None:
            raise DeliveryNotFoundError(delivery_id)

        limit = limit or settings.TRACKING_TRAIL_LIMIT
        stmt = select(LocationPing).where(LocationPing.delivery_id == delivery_id)
        if not include_stale:
            stmt = stmt.where(LocationPing.applied.is_(True))
        stmt = stmt.order_by(LocationPing.timestamp.asc(), LocationPing.id.asc()).limit(limit)

        pings = await self.db.execute(stmt)
        return list(pings.scalars().all())
