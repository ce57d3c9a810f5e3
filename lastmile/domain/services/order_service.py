"""
Order Service - local mirror of orders owned by order management.

Status changes go through DeliveryStateMachine.transition_order; this
service only registers orders, reads them and flips the payment stub.
"""
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from lastmile.core.exceptions import OrderNotFoundError, ValidationException
from lastmile.core.logging import get_logger
from lastmile.db.models.order import Order, OrderStatus, PaymentStatus
from lastmile.domain.geo import GeoPoint

logger = get_logger(__name__)


class OrderService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def register_order(
        self,
        customer_id: str,
        restaurant_id: str,
        delivery_street: str,
        delivery_location: GeoPoint,
        total: Decimal,
        status: OrderStatus = OrderStatus.PENDING,
    ) -> Order:
        if Decimal(total) < 0:
            raise ValidationException("total must not be negative", field="total")

        order = Order(
            customer_id=customer_id,
            restaurant_id=restaurant_id,
            delivery_street=delivery_street,
            delivery_latitude=delivery_location.latitude,
            delivery_longitude=delivery_location.longitude,
            total=Decimal(total),
            status=OrderStatus(status),
            payment_status=PaymentStatus.PENDING,
            refund_amount=Decimal("0.00"),
        )
        self.db.add(order)
        await self.db.commit()
        await self.db.refresh(order)

        logger.info("Order registered", extra_data={"order_id": order.id, "status": order.status.value})
        return order

    async def get_order(self, order_id: int) -> Order:
        result = await self.db.execute(
            select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
        )
        order = result.scalar_one_or_none()
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    async def record_payment(self, order_id: int, succeeded: bool = True) -> Order:
        """Payment gateway stub: marks the payment completed (or failed)."""
        result = await self.db.execute(
            select(Order).where(Order.id == order_id).with_for_update()
        )
        order = result.scalar_one_or_none()
        if order is None:
            raise OrderNotFoundError(order_id)

        if order.payment_status == PaymentStatus.REFUNDED or order.status == OrderStatus.CANCELLED:
            await self.db.rollback()
            raise ValidationException(
                "Cannot record a payment for a cancelled or refunded order",
                details={"order_id": order_id, "payment_status": order.payment_status.value},
            )

        if order.payment_status != PaymentStatus.COMPLETED:
            order.payment_status = PaymentStatus.COMPLETED if succeeded else PaymentStatus.FAILED
        await self.db.commit()
        await self.db.refresh(order)

        logger.info(
            "Order payment recorded",
            extra_data={"order_id": order_id, "payment_status": order.payment_status.value},
        )
        return order
