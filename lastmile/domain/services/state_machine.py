"""
Delivery State Machine - status transitions for deliveries and their orders.

Delivery and order status are coupled here and only here: every delivery
transition applies its order-side effect in the same database transaction,
and cancelling an order with a live delivery goes through the delivery path.

Delivery:
    pending    -> assigned, cancelled
    assigned   -> picked_up, cancelled
    picked_up  -> in_transit, delivered, cancelled
    in_transit -> delivered, cancelled
    delivered, cancelled: terminal

Order:
    pending          -> confirmed, cancelled
    confirmed        -> preparing, cancelled
    preparing        -> ready_for_pickup, cancelled
    ready_for_pickup -> out_for_delivery, cancelled
    out_for_delivery -> delivered, cancelled
    delivered, cancelled: terminal

Who may request a transition is decided by the caller.
"""
from datetime import datetime
from decimal import Decimal
from typing import Dict, FrozenSet, Optional, Union

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from lastmile.core.exceptions import (
    AlreadyAssignedError,
    DeliveryNotFoundError,
    InvalidTransitionError,
    OrderNotFoundError,
    ValidationException,
)
from lastmile.core.logging import get_logger
from lastmile.core.timeutil import utcnow
from lastmile.db.models.delivery import Delivery, DeliveryStatus
from lastmile.db.models.order import Order, OrderStatus, PaymentStatus
from lastmile.domain.geo import GeoPoint
from lastmile.domain.services.courier_registry import CourierRegistry
from lastmile.domain.services.earnings_ledger import EarningsLedger
from lastmile.domain.services.tracking_hub import (
    EVENT_KIND_STATUS,
    TrackingEvent,
    TrackingHub,
    get_tracking_hub,
)

logger = get_logger(__name__)

DEFAULT_CANCELLATION_REASON = "No reason provided"
REFUND_REASON = "Order cancelled"

DELIVERY_TRANSITIONS: Dict[DeliveryStatus, FrozenSet[DeliveryStatus]] = {
    DeliveryStatus.PENDING: frozenset({DeliveryStatus.ASSIGNED, DeliveryStatus.CANCELLED}),
    DeliveryStatus.ASSIGNED: frozenset({DeliveryStatus.PICKED_UP, DeliveryStatus.CANCELLED}),
    DeliveryStatus.PICKED_UP: frozenset({
        DeliveryStatus.IN_TRANSIT,
        DeliveryStatus.DELIVERED,
        DeliveryStatus.CANCELLED,
    }),
    DeliveryStatus.IN_TRANSIT: frozenset({DeliveryStatus.DELIVERED, DeliveryStatus.CANCELLED}),
    DeliveryStatus.DELIVERED: frozenset(),
    DeliveryStatus.CANCELLED: frozenset(),
}

ORDER_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PREPARING, OrderStatus.CANCELLED}),
    OrderStatus.PREPARING: frozenset({OrderStatus.READY_FOR_PICKUP, OrderStatus.CANCELLED}),
    OrderStatus.READY_FOR_PICKUP: frozenset({OrderStatus.OUT_FOR_DELIVERY, OrderStatus.CANCELLED}),
    OrderStatus.OUT_FOR_DELIVERY: frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

# Order states driven by the delivery once one exists
_DELIVERY_DRIVEN_ORDER_STATES = frozenset({OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED})


def allowed_delivery_transitions(status: Union[DeliveryStatus, str]) -> FrozenSet[DeliveryStatus]:
    return DELIVERY_TRANSITIONS[DeliveryStatus(status)]


def allowed_order_transitions(status: Union[OrderStatus, str]) -> FrozenSet[OrderStatus]:
    return ORDER_TRANSITIONS[OrderStatus(status)]


def _parse_status(enum_cls, value, field: str):
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationException(
            f"Unknown {field} '{value}'",
            field=field,
            details={"valid": [s.value for s in enum_cls]},
        )


def _values(statuses) -> list:
    return [s.value for s in statuses]


class DeliveryStateMachine:
    """Validates and applies delivery/order transitions with their side effects"""

    def __init__(self, db: AsyncSession, hub: Optional[TrackingHub] = None):
        self.db = db
        self.hub = hub or get_tracking_hub()
        self.registry = CourierRegistry(db)
        self.ledger = EarningsLedger(db)

    async def _lock_delivery(self, delivery_id: int) -> Delivery:
        result = await self.db.execute(
            select(Delivery)
            .where(Delivery.id == delivery_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        delivery = result.scalar_one_or_none()
        if delivery is None:
            raise DeliveryNotFoundError(delivery_id)
        return delivery

    async def _lock_order(self, order_id: int) -> Order:
        result = await self.db.execute(
            select(Order)
            .where(Order.id == order_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        order = result.scalar_one_or_none()
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    def _move_order(self, order: Order, target: OrderStatus) -> None:
        allowed = ORDER_TRANSITIONS[order.status]
        if target not in allowed:
            raise InvalidTransitionError(
                "order", order.id, order.status.value, target.value, _values(allowed)
            )
        order.status = target

    async def transition_delivery(
        self,
        delivery_id: int,
        target: Union[DeliveryStatus, str],
        *,
        courier_id: Optional[int] = None,
        reason: Optional[str] = None,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Delivery:
        """
        Apply a delivery transition and its order-side effect atomically.

        Either the status change and all of its side effects (order status,
        courier availability, earnings, refund) are committed, or nothing is.

        Raises:
            DeliveryNotFoundError / OrderNotFoundError
            AlreadyAssignedError: target is ``assigned`` but the delivery is no longer pending
            InvalidTransitionError: target not allowed from the current state
        """
        target = _parse_status(DeliveryStatus, target, "status")
        now = now or utcnow()

        try:
            delivery = await self._lock_delivery(delivery_id)
            current = delivery.status

            if target == DeliveryStatus.ASSIGNED and current != DeliveryStatus.PENDING:
                raise AlreadyAssignedError(delivery_id, current.value, delivery.delivery_personnel_id)

            allowed = DELIVERY_TRANSITIONS[current]
            if target not in allowed:
                raise InvalidTransitionError(
                    "delivery", delivery_id, current.value, target.value, _values(allowed)
                )

            order = await self._lock_order(delivery.order_id)

            if target == DeliveryStatus.ASSIGNED:
                await self._apply_assigned(delivery, order, courier_id, now)
            elif target == DeliveryStatus.PICKED_UP:
                delivery.status = target
                delivery.picked_up_at = now
            elif target == DeliveryStatus.IN_TRANSIT:
                delivery.status = target
            elif target == DeliveryStatus.DELIVERED:
                await self._apply_delivered(delivery, order, now)
            elif target == DeliveryStatus.CANCELLED:
                await self._apply_cancelled(delivery, order, reason, now)

            if notes:
                delivery.notes = f"{delivery.notes}\n{notes}" if delivery.notes else notes

            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        await self.db.refresh(delivery)
        logger.info(
            "Delivery status changed",
            extra_data={
                "delivery_id": delivery.id,
                "from_status": current.value,
                "to_status": target.value,
                "courier_id": delivery.delivery_personnel_id,
            },
        )
        await self.publish_status(delivery)
        return delivery

    async def _apply_assigned(
        self,
        delivery: Delivery,
        order: Order,
        courier_id: Optional[int],
        now: datetime,
    ) -> None:
        if courier_id is None:
            raise ValidationException("courier_id is required to assign a delivery", field="courier_id")

        # compare-and-set on status so a concurrent cancel cannot be overwritten
        result = await self.db.execute(
            update(Delivery)
            .where(Delivery.id == delivery.id, Delivery.status == DeliveryStatus.PENDING)
            .values(
                status=DeliveryStatus.ASSIGNED,
                delivery_personnel_id=courier_id,
                assigned_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.refresh(delivery)
            raise AlreadyAssignedError(delivery.id, delivery.status.value, delivery.delivery_personnel_id)

        self._move_order(order, OrderStatus.OUT_FOR_DELIVERY)
        order.delivery_person_id = courier_id

    async def _apply_delivered(self, delivery: Delivery, order: Order, now: datetime) -> None:
        delivery.status = DeliveryStatus.DELIVERED
        delivery.delivered_at = now
        delivery.current_eta_min = 0
        if delivery.assigned_at is not None:
            delivery.actual_delivery_time_min = round(
                (now - delivery.assigned_at).total_seconds() / 60
            )
        await self.db.flush()

        await self.ledger.record_completion(delivery)
        if delivery.delivery_personnel_id is not None:
            await self.registry.release(delivery.delivery_personnel_id)

        self._move_order(order, OrderStatus.DELIVERED)
        order.actual_delivery_time = now

    async def _apply_cancelled(
        self,
        delivery: Delivery,
        order: Order,
        reason: Optional[str],
        now: datetime,
    ) -> None:
        was_active = delivery.is_active
        delivery.status = DeliveryStatus.CANCELLED
        delivery.cancelled_at = now
        delivery.cancellation_reason = reason or DEFAULT_CANCELLATION_REASON

        if was_active and delivery.delivery_personnel_id is not None:
            await self.registry.release(delivery.delivery_personnel_id)

        if order.status != OrderStatus.CANCELLED:
            self._cancel_order(order)

    def _cancel_order(self, order: Order) -> None:
        self._move_order(order, OrderStatus.CANCELLED)
        if order.payment_status == PaymentStatus.COMPLETED:
            order.payment_status = PaymentStatus.REFUNDED
            order.refund_amount = Decimal(order.total)
            order.refund_reason = REFUND_REASON
            logger.info(
                "Order refund triggered",
                extra_data={"order_id": order.id, "refund_amount": str(order.refund_amount)},
            )

    async def transition_order(
        self,
        order_id: int,
        target: Union[OrderStatus, str],
        *,
        reason: Optional[str] = None,
    ) -> Order:
        """
        Order-side transition requested by order management.

        Cancelling an order that has a live delivery cancels the delivery
        through the same path as a courier-side cancel. Once a delivery
        exists, ``out_for_delivery`` and ``delivered`` can only be reached
        through delivery transitions.
        """
        target = _parse_status(OrderStatus, target, "status")
        now = utcnow()
        cascaded: Optional[Delivery] = None

        try:
            order = await self._lock_order(order_id)
            allowed = ORDER_TRANSITIONS[order.status]
            if target not in allowed:
                raise InvalidTransitionError(
                    "order", order_id, order.status.value, target.value, _values(allowed)
                )

            result = await self.db.execute(
                select(Delivery.id).where(Delivery.order_id == order_id)
            )
            delivery_id = result.scalar_one_or_none()

            if delivery_id is not None and target in _DELIVERY_DRIVEN_ORDER_STATES:
                raise InvalidTransitionError(
                    "order",
                    order_id,
                    order.status.value,
                    target.value,
                    _values(allowed - _DELIVERY_DRIVEN_ORDER_STATES),
                )

            previous = order.status
            if target == OrderStatus.CANCELLED and delivery_id is not None:
                delivery = await self._lock_delivery(delivery_id)
                if delivery.is_terminal:
                    self._cancel_order(order)
                else:
                    await self._apply_cancelled(delivery, order, reason, now)
                    cascaded = delivery
            elif target == OrderStatus.CANCELLED:
                self._cancel_order(order)
            else:
                order.status = target

            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        await self.db.refresh(order)
        logger.info(
            "Order status changed",
            extra_data={
                "order_id": order_id,
                "from_status": previous.value,
                "to_status": target.value,
                "cascaded_delivery_id": cascaded.id if cascaded else None,
            },
        )
        if cascaded is not None:
            await self.db.refresh(cascaded)
            await self.publish_status(cascaded)
        return order

    async def publish_status(self, delivery: Delivery) -> None:
        """Publish a status event for a committed delivery; failures are logged."""
        try:
            event = TrackingEvent(
                delivery_id=delivery.id,
                status=delivery.status.value,
                location=GeoPoint.from_optional(
                    delivery.last_location_latitude, delivery.last_location_longitude
                ),
                eta_minutes=delivery.current_eta_min,
                kind=EVENT_KIND_STATUS,
            )
            await self.hub.publish(event)
            if delivery.is_terminal:
                self.hub.close_topic(delivery.id)
        except Exception as e:
            logger.error(
                "Failed to publish delivery status",
                extra_data={"delivery_id": delivery.id, "error": str(e)},
            )
