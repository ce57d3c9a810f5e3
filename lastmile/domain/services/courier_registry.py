"""
Courier Registry - single source of truth for courier availability and location.

All mutations are conditional UPDATE statements evaluated by the database, so
concurrent dispatchers and pings for the same courier are linearized there:

- claim():            UPDATE ... WHERE is_available AND is_active   (compare-and-set)
- set_availability(): UPDATE ... SET version = version + 1
- update_location():  UPDATE ... WHERE last_location_update_time <= :ts (last write wins)

Methods that take part in a larger transaction (dispatch, state transitions)
accept ``auto_commit=False`` and leave commit/rollback to the caller.
"""
import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import select, update, or_
from sqlalchemy.ext.asyncio import AsyncSession

from lastmile.core.config import settings
from lastmile.core.exceptions import (
    AlreadyExistsException,
    CourierNotFoundError,
    ValidationException,
)
from lastmile.core.logging import get_logger
from lastmile.core.timeutil import utcnow, to_naive_utc
from lastmile.db.models.courier import Courier, VehicleType
from lastmile.domain.geo import GeoPoint, bounding_box, distance_km

logger = get_logger(__name__)


@dataclass(frozen=True)
class Candidate:
    """A courier inside the search radius and its distance from the origin"""

    courier: Courier
    distance_km: float


class CourierRegistry:
    """Courier state: availability, location and rating"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def register_courier(
        self,
        user_id: str,
        name: str,
        vehicle_type: VehicleType,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        license_number: Optional[str] = None,
        location: Optional[GeoPoint] = None,
        is_available: bool = False,
    ) -> Courier:
        """Create a courier profile. ``user_id`` is the external account id."""
        existing = await self.db.execute(select(Courier.id).where(Courier.user_id == user_id))
        if existing.scalar_one_or_none() is not None:
            raise AlreadyExistsException("Courier", user_id)

        now = utcnow()
        courier = Courier(
            user_id=user_id,
            name=name,
            vehicle_type=VehicleType(vehicle_type),
            email=email,
            phone=phone,
            license_number=license_number,
            is_available=is_available,
            is_active=True,
            rating=0.0,
            total_ratings=0,
            version=0,
        )
        if location is not None:
            courier.current_latitude = location.latitude
            courier.current_longitude = location.longitude
            courier.last_location_update_time = now

        self.db.add(courier)
        await self.db.commit()
        await self.db.refresh(courier)

        logger.info(
            "Courier registered",
            extra_data={"courier_id": courier.id, "vehicle_type": courier.vehicle_type.value},
        )
        return courier

    async def get_courier(self, courier_id: int) -> Courier:
        result = await self.db.execute(
            select(Courier).where(Courier.id == courier_id).execution_options(populate_existing=True)
        )
        courier = result.scalar_one_or_none()
        if courier is None:
            raise CourierNotFoundError(courier_id)
        return courier

    async def find_candidates(
        self,
        origin: GeoPoint,
        radius_km: Optional[float] = None,
        *,
        is_available: Optional[bool] = True,
        is_active: Optional[bool] = True,
        exclude: Iterable[int] = (),
        timeout: Optional[float] = None,
    ) -> List[Candidate]:
        """
        Couriers within ``radius_km`` of ``origin`` matching the filter.

        Sorted by most recent location update first, then by id so the order
        is stable across calls. Passing ``None`` for a filter flag disables it.

        Raises:
            asyncio.TimeoutError: the store did not answer within ``timeout``
        """
        radius = settings.DISPATCH_RADIUS_KM if radius_km is None else radius_km
        query = self._query_candidates(origin, radius, is_available, is_active, frozenset(exclude))
        if timeout is None:
            return await query
        return await asyncio.wait_for(query, timeout=timeout)

    async def _query_candidates(
        self,
        origin: GeoPoint,
        radius_km: float,
        is_available: Optional[bool],
        is_active: Optional[bool],
        exclude: frozenset,
    ) -> List[Candidate]:
        min_lat, max_lat, min_lng, max_lng = bounding_box(origin, radius_km)

        stmt = select(Courier).where(
            Courier.current_latitude.is_not(None),
            Courier.current_longitude.is_not(None),
            Courier.current_latitude.between(min_lat, max_lat),
            Courier.current_longitude.between(min_lng, max_lng),
        )
        if is_available is not None:
            stmt = stmt.where(Courier.is_available == is_available)
        if is_active is not None:
            stmt = stmt.where(Courier.is_active == is_active)
        if exclude:
            stmt = stmt.where(Courier.id.not_in(exclude))

        # rows may have changed through bulk UPDATEs since they were loaded
        result = await self.db.execute(stmt.execution_options(populate_existing=True))

        candidates = []
        for courier in result.scalars().all():
            d = distance_km(origin, GeoPoint(courier.current_latitude, courier.current_longitude))
            if d <= radius_km:
                candidates.append(Candidate(courier=courier, distance_km=d))

        # id ascending first, then a stable sort on recency (None last)
        candidates.sort(key=lambda c: c.courier.id)
        candidates.sort(
            key=lambda c: c.courier.last_location_update_time or datetime.min,
            reverse=True,
        )
        return candidates

    async def list_nearby(
        self,
        origin: GeoPoint,
        radius_km: Optional[float] = None,
        available_only: bool = True,
    ) -> List[Candidate]:
        """Read-only proximity listing for the API (no timeout, no exclusions)."""
        return await self.find_candidates(
            origin,
            radius_km,
            is_available=True if available_only else None,
            is_active=True,
        )

    async def claim(self, courier_id: int) -> bool:
        """
        Compare-and-set the courier from available to busy.

        Returns False when the courier is no longer available or not active
        (another dispatch won the race). Never commits: the claim becomes
        visible together with the delivery assignment or is rolled back.
        """
        result = await self.db.execute(
            update(Courier)
            .where(
                Courier.id == courier_id,
                Courier.is_available.is_(True),
                Courier.is_active.is_(True),
            )
            .values(is_available=False, version=Courier.version + 1)
            .execution_options(synchronize_session=False)
        )
        claimed = result.rowcount == 1
        if not claimed:
            logger.info("Courier claim lost", extra_data={"courier_id": courier_id})
        return claimed

    async def release(self, courier_id: int) -> None:
        """Make a courier available again after their delivery ended (no commit)."""
        await self.db.execute(
            update(Courier)
            .where(Courier.id == courier_id)
            .values(is_available=True, version=Courier.version + 1)
            .execution_options(synchronize_session=False)
        )

    async def set_availability(
        self,
        courier_id: int,
        available: bool,
        auto_commit: bool = True,
    ) -> Courier:
        """Courier-driven availability toggle; bumps ``version``."""
        result = await self.db.execute(
            update(Courier)
            .where(Courier.id == courier_id)
            .values(is_available=available, version=Courier.version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            await self.db.rollback()
            raise CourierNotFoundError(courier_id)

        if auto_commit:
            await self.db.commit()

        logger.info(
            "Courier availability changed",
            extra_data={"courier_id": courier_id, "is_available": available},
        )
        return await self.get_courier(courier_id)

    async def update_location(
        self,
        courier_id: int,
        point: GeoPoint,
        timestamp: Optional[datetime] = None,
        auto_commit: bool = True,
    ) -> bool:
        """
        Last-write-wins location update.

        Returns False (no-op, not an error) when ``timestamp`` is older than
        the stored ``last_location_update_time``.
        """
        ts = to_naive_utc(timestamp) if timestamp is not None else utcnow()

        result = await self.db.execute(
            update(Courier)
            .where(
                Courier.id == courier_id,
                or_(
                    Courier.last_location_update_time.is_(None),
                    Courier.last_location_update_time <= ts,
                ),
            )
            .values(
                current_latitude=point.latitude,
                current_longitude=point.longitude,
                last_location_update_time=ts,
            )
            .execution_options(synchronize_session=False)
        )
        applied = result.rowcount == 1

        if not applied:
            # distinguish "unknown courier" from "stale ping"
            await self.get_courier(courier_id)
        elif auto_commit:
            await self.db.commit()
        return applied

    async def apply_rating(self, courier_id: int, rating: int) -> Courier:
        """Fold one customer rating (1-5) into the running average (no commit)."""
        if rating < 1 or rating > 5:
            raise ValidationException("rating must be between 1 and 5", field="rating")

        result = await self.db.execute(
            select(Courier)
            .where(Courier.id == courier_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        courier = result.scalar_one_or_none()
        if courier is None:
            raise CourierNotFoundError(courier_id)
        total = courier.total_ratings or 0
        courier.rating = round(((courier.rating or 0.0) * total + rating) / (total + 1), 2)
        courier.total_ratings = total + 1
        await self.db.flush()
        return courier
