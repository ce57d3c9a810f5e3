"""
Delivery Service - order-ready trigger, delivery queries, rating and statistics
"""
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, func, case
from sqlalchemy.ext.asyncio import AsyncSession

from lastmile.core.config import settings
from lastmile.core.exceptions import (
    AlreadyExistsException,
    DeliveryNotFoundError,
    DeliveryNotRateableError,
    InvalidTransitionError,
    OrderNotFoundError,
    ValidationException,
)
from lastmile.core.logging import get_logger
from lastmile.core.timeutil import utcnow
from lastmile.db.models.delivery import Delivery, DeliveryStatus
from lastmile.db.models.order import Order, OrderStatus
from lastmile.domain.geo import GeoPoint, distance_km, estimate_minutes, delivery_pricing
from lastmile.domain.services.courier_registry import CourierRegistry
from lastmile.domain.services.dispatcher import Dispatcher, DispatchResult
from lastmile.domain.services.state_machine import allowed_order_transitions

logger = get_logger(__name__)


class DeliveryService:
    """Service for creating and reading deliveries"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_for_ready_order(
        self,
        order_id: int,
        restaurant_name: str,
        restaurant_location: GeoPoint,
        restaurant_address: str,
        customer_name: str,
        customer_location: GeoPoint,
        customer_address: str,
        customer_phone: Optional[str] = None,
        dispatch: bool = True,
    ) -> Tuple[Delivery, Optional[DispatchResult]]:
        """
        Handle "order ready for pickup": create the delivery and dispatch it.

        An order still in ``preparing`` is moved to ``ready_for_pickup``.
        Returns the delivery and the dispatch result (None when ``dispatch``
        is False). NO_COURIER_AVAILABLE leaves the delivery pending for a
        later retry.
        """
        try:
            result = await self.db.execute(
                select(Order).where(Order.id == order_id).with_for_update()
            )
            order = result.scalar_one_or_none()
            if order is None:
                raise OrderNotFoundError(order_id)

            existing = await self.db.execute(select(Delivery.id).where(Delivery.order_id == order_id))
            if existing.scalar_one_or_none() is not None:
                raise AlreadyExistsException("Delivery for order", order_id)

            if order.status == OrderStatus.PREPARING:
                order.status = OrderStatus.READY_FOR_PICKUP
            elif order.status != OrderStatus.READY_FOR_PICKUP:
                raise InvalidTransitionError(
                    "order",
                    order_id,
                    order.status.value,
                    OrderStatus.READY_FOR_PICKUP.value,
                    [s.value for s in allowed_order_transitions(order.status)],
                )

            distance = round(distance_km(restaurant_location, customer_location), 3)
            fee, earnings = delivery_pricing(distance)

            delivery = Delivery(
                order_id=order.id,
                restaurant_id=order.restaurant_id,
                restaurant_name=restaurant_name,
                restaurant_address=restaurant_address,
                restaurant_latitude=restaurant_location.latitude,
                restaurant_longitude=restaurant_location.longitude,
                customer_id=order.customer_id,
                customer_name=customer_name,
                customer_address=customer_address,
                customer_phone=customer_phone,
                customer_latitude=customer_location.latitude,
                customer_longitude=customer_location.longitude,
                status=DeliveryStatus.PENDING,
                distance_km=distance,
                estimated_delivery_time_min=estimate_minutes(
                    distance, settings.AVG_SPEED_KMH, settings.DISPATCH_BUFFER_MINUTES
                ),
                delivery_fee=fee,
                driver_earnings=earnings,
            )
            self.db.add(delivery)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        await self.db.refresh(delivery)
        logger.info(
            "Delivery created",
            extra_data={
                "delivery_id": delivery.id,
                "order_id": order_id,
                "distance_km": distance,
                "delivery_fee": str(fee),
            },
        )

        dispatch_result = None
        if dispatch:
            dispatch_result = await Dispatcher(self.db).assign(delivery.id)
            await self.db.refresh(delivery)
        return delivery, dispatch_result

    async def get_delivery(self, delivery_id: int) -> Delivery:
        result = await self.db.execute(
            select(Delivery)
            .where(Delivery.id == delivery_id)
            .execution_options(populate_existing=True)
        )
        delivery = result.scalar_one_or_none()
        if delivery is None:
            raise DeliveryNotFoundError(delivery_id)
        return delivery

    async def list_deliveries(
        self,
        status: Optional[DeliveryStatus] = None,
        restaurant_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        courier_id: Optional[int] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Tuple[List[Delivery], int]:
        """Filtered, newest-first page of deliveries and the total match count"""
        conditions = []
        if status is not None:
            conditions.append(Delivery.status == status)
        if restaurant_id is not None:
            conditions.append(Delivery.restaurant_id == restaurant_id)
        if customer_id is not None:
            conditions.append(Delivery.customer_id == customer_id)
        if courier_id is not None:
            conditions.append(Delivery.delivery_personnel_id == courier_id)

        total_result = await self.db.execute(
            select(func.count(Delivery.id)).where(*conditions)
        )
        total = total_result.scalar_one()

        result = await self.db.execute(
            select(Delivery)
            .where(*conditions)
            .order_by(Delivery.created_at.desc(), Delivery.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all()), total

    async def get_pending_delivery_ids(self, limit: int = 100) -> List[int]:
        """Oldest pending deliveries first (dispatch sweep)"""
        result = await self.db.execute(
            select(Delivery.id)
            .where(Delivery.status == DeliveryStatus.PENDING)
            .order_by(Delivery.created_at.asc(), Delivery.id.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def rate_delivery(
        self,
        delivery_id: int,
        rating: int,
        feedback: Optional[str] = None,
    ) -> Tuple[Delivery, float]:
        """
        Store the customer's rating and fold it into the courier's average.

        Returns the delivery and the courier's new average rating.
        """
        if rating < 1 or rating > 5:
            raise ValidationException("rating must be between 1 and 5", field="rating")

        try:
            result = await self.db.execute(
                select(Delivery)
                .where(Delivery.id == delivery_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            delivery = result.scalar_one_or_none()
            if delivery is None:
                raise DeliveryNotFoundError(delivery_id)
            if delivery.status != DeliveryStatus.DELIVERED or delivery.delivery_personnel_id is None:
                raise DeliveryNotRateableError(delivery_id, delivery.status.value)
            if delivery.rating is not None:
                raise AlreadyExistsException("Rating for delivery", delivery_id)

            delivery.rating = rating
            if feedback:
                delivery.feedback = feedback
            courier = await CourierRegistry(self.db).apply_rating(delivery.delivery_personnel_id, rating)
            new_average = courier.rating
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Delivery rated",
            extra_data={
                "delivery_id": delivery_id,
                "courier_id": delivery.delivery_personnel_id,
                "rating": rating,
                "courier_rating": new_average,
            },
        )
        return delivery, new_average

    async def get_statistics(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        restaurant_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        courier_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Counts, completion rate and averages over deliveries created in [start, end]"""
        end = end or utcnow()
        start = start or end - timedelta(days=30)

        conditions = [Delivery.created_at >= start, Delivery.created_at <= end]
        if restaurant_id is not None:
            conditions.append(Delivery.restaurant_id == restaurant_id)
        if customer_id is not None:
            conditions.append(Delivery.customer_id == customer_id)
        if courier_id is not None:
            conditions.append(Delivery.delivery_personnel_id == courier_id)

        result = await self.db.execute(
            select(
                func.count(Delivery.id),
                func.sum(case((Delivery.status == DeliveryStatus.DELIVERED, 1), else_=0)),
                func.sum(case((Delivery.status == DeliveryStatus.CANCELLED, 1), else_=0)),
                func.sum(Delivery.distance_km),
                func.sum(Delivery.delivery_fee),
                func.sum(Delivery.driver_earnings),
                func.avg(Delivery.actual_delivery_time_min),
            ).where(*conditions)
        )
        total, completed, cancelled, distance, fees, earnings, avg_time = result.one()
        total = total or 0
        completed = completed or 0

        return {
            "start": start,
            "end": end,
            "total_deliveries": total,
            "completed_deliveries": completed,
            "cancelled_deliveries": cancelled or 0,
            "total_distance": round(distance or 0.0, 3),
            "total_delivery_fees": Decimal(str(fees or 0)).quantize(Decimal("0.01")),
            "total_driver_earnings": Decimal(str(earnings or 0)).quantize(Decimal("0.01")),
            "avg_delivery_time_min": round(float(avg_time), 1) if avg_time is not None else 0.0,
            "completion_rate": round(completed / total * 100, 2) if total else 0.0,
        }
