"""
Delivery API Routes
"""
from datetime import datetime
from math import ceil
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from lastmile.db.database import get_db
from lastmile.db.models.delivery import DeliveryStatus
from lastmile.domain.geo import GeoPoint
from lastmile.domain.services.delivery_service import DeliveryService
from lastmile.domain.services.dispatcher import Dispatcher, DispatchOutcome, DispatchResult
from lastmile.domain.services.state_machine import DeliveryStateMachine
from lastmile.workers.tasks import enqueue_dispatch
from lastmile.core.logging import get_logger
from lastmile.core.validation import (
    AddressValidator,
    NameValidator,
    PhoneNumberValidator,
    TextSanitizer,
)

logger = get_logger(__name__)

router = APIRouter()


class LocationIn(BaseModel):
    """Coordinates in decimal degrees; range checks happen in GeoPoint"""
    latitude: float
    longitude: float

    def to_point(self) -> GeoPoint:
        return GeoPoint(self.latitude, self.longitude)


class DeliveryCreate(BaseModel):
    """Order-ready trigger payload"""
    order_id: int
    restaurant_name: str
    restaurant_address: str
    restaurant_location: LocationIn
    customer_name: str
    customer_address: str
    customer_location: LocationIn
    customer_phone: str | None = None
    dispatch: bool = True

    @field_validator("restaurant_address", "customer_address")
    @classmethod
    def validate_address(cls, v: str) -> str:
        is_valid, error = AddressValidator.validate(v)
        if not is_valid:
            raise ValueError(error)
        return AddressValidator.normalize(v)

    @field_validator("restaurant_name", "customer_name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        is_valid, error = NameValidator.validate(v)
        if not is_valid:
            raise ValueError(error)
        return TextSanitizer.sanitize(v, max_length=200)

    @field_validator("customer_phone")
    @classmethod
    def validate_phone(cls, v: str | None) -> str | None:
        if v is None:
            return None
        if not PhoneNumberValidator.validate(v):
            raise ValueError("Invalid phone number format")
        return PhoneNumberValidator.normalize(v)


class DeliveryResponse(BaseModel):
    """Response schema for delivery data"""
    id: int
    order_id: int
    status: DeliveryStatus
    restaurant_id: str
    restaurant_name: str
    restaurant_address: str
    restaurant_latitude: float
    restaurant_longitude: float
    customer_id: str
    customer_name: str
    customer_address: str
    customer_latitude: float
    customer_longitude: float
    delivery_personnel_id: int | None
    distance_km: float
    estimated_delivery_time_min: int
    current_eta_min: int | None
    actual_delivery_time_min: int | None
    delivery_fee: float
    driver_earnings: float
    assigned_at: datetime | None
    picked_up_at: datetime | None
    delivered_at: datetime | None
    cancelled_at: datetime | None
    cancellation_reason: str | None
    notes: str | None
    rating: int | None
    feedback: str | None
    created_at: datetime | None

    model_config = {"from_attributes": True}


class DispatchResultResponse(BaseModel):
    outcome: DispatchOutcome
    delivery_id: int
    courier_id: int | None = None
    score: float | None = None
    attempts: int = 0
    reason: str | None = None
    retry_scheduled: bool = False

    @classmethod
    def from_result(cls, result: DispatchResult, retry_scheduled: bool = False) -> "DispatchResultResponse":
        return cls(
            outcome=result.outcome,
            delivery_id=result.delivery_id,
            courier_id=result.courier_id,
            score=round(result.score, 2) if result.score is not None else None,
            attempts=result.attempts,
            reason=result.reason,
            retry_scheduled=retry_scheduled,
        )


class DeliveryCreateResponse(BaseModel):
    delivery: DeliveryResponse
    dispatch: DispatchResultResponse | None = None


class DeliveryListResponse(BaseModel):
    deliveries: List[DeliveryResponse]
    total: int
    page: int
    pages: int


class AcceptRequest(BaseModel):
    courier_id: int


# courier/customer side; "assigned" only happens through dispatch or accept
_REQUESTABLE_STATUSES = {
    DeliveryStatus.PICKED_UP,
    DeliveryStatus.IN_TRANSIT,
    DeliveryStatus.DELIVERED,
    DeliveryStatus.CANCELLED,
}


class StatusUpdateRequest(BaseModel):
    status: DeliveryStatus
    reason: str | None = Field(default=None, max_length=500)
    notes: str | None = Field(default=None, max_length=1000)

    @field_validator("status")
    @classmethod
    def validate_requestable(cls, v: DeliveryStatus) -> DeliveryStatus:
        if v not in _REQUESTABLE_STATUSES:
            raise ValueError(
                "status must be one of: " + ", ".join(sorted(s.value for s in _REQUESTABLE_STATUSES))
            )
        return v

    @field_validator("reason", "notes")
    @classmethod
    def sanitize_text(cls, v: str | None) -> str | None:
        if v is None:
            return None
        is_safe, pattern = TextSanitizer.check_for_injection(v)
        if not is_safe:
            raise ValueError("Invalid characters in text")
        return TextSanitizer.sanitize(v)


class RateRequest(BaseModel):
    rating: int = Field(ge=1, le=5)
    feedback: str | None = Field(default=None, max_length=1000)


class RateResponse(BaseModel):
    delivery_id: int
    rating: int
    courier_rating: float


class StatisticsResponse(BaseModel):
    start: datetime
    end: datetime
    total_deliveries: int
    completed_deliveries: int
    cancelled_deliveries: int
    total_distance: float
    total_delivery_fees: float
    total_driver_earnings: float
    avg_delivery_time_min: float
    completion_rate: float


def _with_retry(result: DispatchResult) -> DispatchResultResponse:
    retry_scheduled = False
    if result.outcome == DispatchOutcome.NO_COURIER_AVAILABLE:
        retry_scheduled = enqueue_dispatch(result.delivery_id)
    return DispatchResultResponse.from_result(result, retry_scheduled)


@router.post(
    "/",
    response_model=DeliveryCreateResponse,
    status_code=201,
    summary="Order ready for pickup",
    description=(
        "Creates the delivery for an order that is ready for pickup and runs the "
        "dispatcher. When no courier is available the delivery stays pending and a "
        "background retry is scheduled."
    ),
    responses={
        404: {"description": "Order not found"},
        409: {"description": "A delivery already exists for this order"},
    },
    tags=["Deliveries"]
)
async def create_delivery(
    payload: DeliveryCreate,
    db: AsyncSession = Depends(get_db)
) -> DeliveryCreateResponse:
    logger.info("Order ready for pickup", extra_data={"order_id": payload.order_id})
    delivery, result = await DeliveryService(db).create_for_ready_order(
        order_id=payload.order_id,
        restaurant_name=payload.restaurant_name,
        restaurant_location=payload.restaurant_location.to_point(),
        restaurant_address=payload.restaurant_address,
        customer_name=payload.customer_name,
        customer_location=payload.customer_location.to_point(),
        customer_address=payload.customer_address,
        customer_phone=payload.customer_phone,
        dispatch=payload.dispatch,
    )
    return DeliveryCreateResponse(
        delivery=DeliveryResponse.model_validate(delivery),
        dispatch=_with_retry(result) if result is not None else None,
    )


@router.get(
    "/",
    response_model=DeliveryListResponse,
    summary="List deliveries",
    tags=["Deliveries"]
)
async def list_deliveries(
    status: Optional[DeliveryStatus] = None,
    restaurant_id: Optional[str] = None,
    customer_id: Optional[str] = None,
    courier_id: Optional[int] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: AsyncSession = Depends(get_db)
) -> DeliveryListResponse:
    deliveries, total = await DeliveryService(db).list_deliveries(
        status=status,
        restaurant_id=restaurant_id,
        customer_id=customer_id,
        courier_id=courier_id,
        page=page,
        limit=limit,
    )
    return DeliveryListResponse(
        deliveries=[DeliveryResponse.model_validate(d) for d in deliveries],
        total=total,
        page=page,
        pages=ceil(total / limit) if total else 0,
    )


@router.get(
    "/statistics",
    response_model=StatisticsResponse,
    summary="Delivery statistics",
    description="Counts, completion rate and averages; defaults to the last 30 days.",
    tags=["Deliveries"]
)
async def get_statistics(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    restaurant_id: Optional[str] = None,
    customer_id: Optional[str] = None,
    courier_id: Optional[int] = None,
    db: AsyncSession = Depends(get_db)
) -> StatisticsResponse:
    stats = await DeliveryService(db).get_statistics(
        start=start,
        end=end,
        restaurant_id=restaurant_id,
        customer_id=customer_id,
        courier_id=courier_id,
    )
    return StatisticsResponse(**stats)


@router.get(
    "/{delivery_id}",
    response_model=DeliveryResponse,
    summary="Get delivery by ID",
    responses={404: {"description": "Delivery not found"}},
    tags=["Deliveries"]
)
async def get_delivery(
    delivery_id: int,
    db: AsyncSession = Depends(get_db)
) -> DeliveryResponse:
    delivery = await DeliveryService(db).get_delivery(delivery_id)
    return DeliveryResponse.model_validate(delivery)


@router.post(
    "/{delivery_id}/assign",
    response_model=DispatchResultResponse,
    summary="Run the dispatcher",
    description=(
        "Scores nearby available couriers and claims the best one. "
        "`no_courier_available` is a normal outcome; a retry is scheduled."
    ),
    responses={
        404: {"description": "Delivery not found"},
        409: {"description": "Delivery is no longer pending"},
    },
    tags=["Deliveries"]
)
async def assign_delivery(
    delivery_id: int,
    db: AsyncSession = Depends(get_db)
) -> DispatchResultResponse:
    result = await Dispatcher(db).assign(delivery_id)
    return _with_retry(result)


@router.post(
    "/{delivery_id}/accept",
    response_model=DeliveryResponse,
    summary="Courier accepts a delivery",
    responses={
        404: {"description": "Delivery or courier not found"},
        409: {"description": "Delivery already assigned, or courier busy"},
    },
    tags=["Deliveries"]
)
async def accept_delivery(
    delivery_id: int,
    payload: AcceptRequest,
    db: AsyncSession = Depends(get_db)
) -> DeliveryResponse:
    logger.info(
        "Accept delivery request",
        extra_data={"delivery_id": delivery_id, "courier_id": payload.courier_id}
    )
    delivery = await Dispatcher(db).accept(delivery_id, payload.courier_id)
    return DeliveryResponse.model_validate(delivery)


@router.patch(
    "/{delivery_id}/status",
    response_model=DeliveryResponse,
    summary="Update delivery status",
    description=(
        "Courier or customer transition request. Illegal transitions return "
        "`InvalidTransition` with the allowed next states in `details.allowed`."
    ),
    responses={
        400: {"description": "Invalid transition"},
        404: {"description": "Delivery not found"},
    },
    tags=["Deliveries"]
)
async def update_delivery_status(
    delivery_id: int,
    payload: StatusUpdateRequest,
    db: AsyncSession = Depends(get_db)
) -> DeliveryResponse:
    delivery = await DeliveryStateMachine(db).transition_delivery(
        delivery_id,
        payload.status,
        reason=payload.reason,
        notes=payload.notes,
    )
    return DeliveryResponse.model_validate(delivery)


@router.post(
    "/{delivery_id}/rate",
    response_model=RateResponse,
    summary="Rate a completed delivery",
    responses={
        400: {"description": "Delivery not delivered yet"},
        404: {"description": "Delivery not found"},
        409: {"description": "Delivery already rated"},
    },
    tags=["Deliveries"]
)
async def rate_delivery(
    delivery_id: int,
    payload: RateRequest,
    db: AsyncSession = Depends(get_db)
) -> RateResponse:
    feedback = TextSanitizer.sanitize(payload.feedback) if payload.feedback else None
    delivery, courier_rating = await DeliveryService(db).rate_delivery(
        delivery_id, payload.rating, feedback
    )
    return RateResponse(
        delivery_id=delivery.id,
        rating=delivery.rating,
        courier_rating=courier_rating,
    )
