"""
Order API Routes - order management side of the lifecycle
"""
from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from lastmile.db.database import get_db
from lastmile.db.models.order import OrderStatus, PaymentStatus
from lastmile.domain.geo import GeoPoint
from lastmile.domain.services.order_service import OrderService
from lastmile.domain.services.state_machine import DeliveryStateMachine
from lastmile.core.validation import AddressValidator, TextSanitizer

router = APIRouter()


class OrderCreate(BaseModel):
    customer_id: str = Field(min_length=1, max_length=64)
    restaurant_id: str = Field(min_length=1, max_length=64)
    delivery_street: str
    delivery_latitude: float
    delivery_longitude: float
    total: Decimal = Field(ge=0, decimal_places=2)
    status: OrderStatus = OrderStatus.PENDING

    @field_validator("delivery_street")
    @classmethod
    def validate_street(cls, v: str) -> str:
        is_valid, error = AddressValidator.validate(v)
        if not is_valid:
            raise ValueError(error)
        return AddressValidator.normalize(v)


class OrderResponse(BaseModel):
    id: int
    customer_id: str
    restaurant_id: str
    status: OrderStatus
    delivery_street: str
    delivery_latitude: float
    delivery_longitude: float
    total: float
    payment_status: PaymentStatus
    refund_amount: float
    refund_reason: str | None
    delivery_person_id: int | None
    actual_delivery_time: datetime | None
    created_at: datetime | None

    model_config = {"from_attributes": True}


class OrderStatusUpdate(BaseModel):
    status: OrderStatus
    reason: str | None = Field(default=None, max_length=500)

    @field_validator("reason")
    @classmethod
    def sanitize_reason(cls, v: str | None) -> str | None:
        return TextSanitizer.sanitize(v) if v else None


class PaymentRequest(BaseModel):
    succeeded: bool = True


@router.post(
    "/",
    response_model=OrderResponse,
    status_code=201,
    summary="Register an order",
    tags=["Orders"]
)
async def create_order(
    payload: OrderCreate,
    db: AsyncSession = Depends(get_db)
) -> OrderResponse:
    order = await OrderService(db).register_order(
        customer_id=payload.customer_id,
        restaurant_id=payload.restaurant_id,
        delivery_street=payload.delivery_street,
        delivery_location=GeoPoint(payload.delivery_latitude, payload.delivery_longitude),
        total=payload.total,
        status=payload.status,
    )
    return OrderResponse.model_validate(order)


@router.get(
    "/{order_id}",
    response_model=OrderResponse,
    summary="Get order by ID",
    responses={404: {"description": "Order not found"}},
    tags=["Orders"]
)
async def get_order(
    order_id: int,
    db: AsyncSession = Depends(get_db)
) -> OrderResponse:
    order = await OrderService(db).get_order(order_id)
    return OrderResponse.model_validate(order)


@router.patch(
    "/{order_id}/status",
    response_model=OrderResponse,
    summary="Update order status",
    description=(
        "Cancelling an order with a live delivery cancels the delivery too and "
        "refunds a completed payment."
    ),
    responses={
        400: {"description": "Invalid transition"},
        404: {"description": "Order not found"},
    },
    tags=["Orders"]
)
async def update_order_status(
    order_id: int,
    payload: OrderStatusUpdate,
    db: AsyncSession = Depends(get_db)
) -> OrderResponse:
    order = await DeliveryStateMachine(db).transition_order(
        order_id, payload.status, reason=payload.reason
    )
    return OrderResponse.model_validate(order)


@router.post(
    "/{order_id}/payment",
    response_model=OrderResponse,
    summary="Record payment result",
    tags=["Orders"]
)
async def record_payment(
    order_id: int,
    payload: PaymentRequest,
    db: AsyncSession = Depends(get_db)
) -> OrderResponse:
    order = await OrderService(db).record_payment(order_id, succeeded=payload.succeeded)
    return OrderResponse.model_validate(order)
