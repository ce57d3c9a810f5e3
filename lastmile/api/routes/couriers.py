"""
Courier API Routes - registration, availability and location pings
"""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from lastmile.db.database import get_db
from lastmile.db.models.courier import VehicleType
from lastmile.domain.geo import GeoPoint
from lastmile.domain.services.courier_registry import CourierRegistry
from lastmile.domain.services.tracking_service import IngestOutcome, TrackingService
from lastmile.core.validation import NameValidator, PhoneNumberValidator, TextSanitizer

router = APIRouter()


class CourierCreate(BaseModel):
    user_id: str = Field(min_length=1, max_length=64)
    name: str
    vehicle_type: VehicleType
    email: str | None = Field(default=None, max_length=255, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    phone: str | None = None
    license_number: str | None = Field(default=None, max_length=64)
    latitude: float | None = None
    longitude: float | None = None
    is_available: bool = False

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        is_valid, error = NameValidator.validate(v)
        if not is_valid:
            raise ValueError(error)
        return TextSanitizer.sanitize(v, max_length=150)

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v: str | None) -> str | None:
        if v is None:
            return None
        if not PhoneNumberValidator.validate(v):
            raise ValueError("Invalid phone number format")
        return PhoneNumberValidator.normalize(v)


class CourierResponse(BaseModel):
    id: int
    user_id: str
    name: str
    vehicle_type: VehicleType
    email: str | None
    phone: str | None
    current_latitude: float | None
    current_longitude: float | None
    last_location_update_time: datetime | None
    is_available: bool
    is_active: bool
    rating: float
    total_ratings: int
    created_at: datetime | None

    model_config = {"from_attributes": True}


class NearbyCourier(BaseModel):
    courier: CourierResponse
    distance_km: float


class AvailabilityUpdate(BaseModel):
    is_available: bool


class LocationPingRequest(BaseModel):
    latitude: float
    longitude: float
    timestamp: datetime | None = None
    delivery_id: int | None = None


class LocationPingResponse(BaseModel):
    outcome: IngestOutcome
    courier_id: int
    delivery_id: int | None = None
    eta_minutes: int | None = None
    published: bool = False


@router.post(
    "/",
    response_model=CourierResponse,
    status_code=201,
    summary="Register a courier",
    responses={409: {"description": "Courier already registered for this user"}},
    tags=["Couriers"]
)
async def register_courier(
    payload: CourierCreate,
    db: AsyncSession = Depends(get_db)
) -> CourierResponse:
    location = GeoPoint.from_optional(payload.latitude, payload.longitude)
    courier = await CourierRegistry(db).register_courier(
        user_id=payload.user_id,
        name=payload.name,
        vehicle_type=payload.vehicle_type,
        email=payload.email,
        phone=payload.phone,
        license_number=payload.license_number,
        location=location,
        is_available=payload.is_available,
    )
    return CourierResponse.model_validate(courier)


@router.get(
    "/nearby",
    response_model=List[NearbyCourier],
    summary="Couriers near a point",
    description="Nearest first by last update recency; read-only, no claim.",
    tags=["Couriers"]
)
async def nearby_couriers(
    latitude: float,
    longitude: float,
    radius_km: Optional[float] = Query(None, gt=0, le=100),
    available_only: bool = True,
    db: AsyncSession = Depends(get_db)
) -> List[NearbyCourier]:
    candidates = await CourierRegistry(db).list_nearby(
        GeoPoint(latitude, longitude), radius_km, available_only
    )
    return [
        NearbyCourier(
            courier=CourierResponse.model_validate(c.courier),
            distance_km=round(c.distance_km, 3),
        )
        for c in candidates
    ]


@router.get(
    "/{courier_id}",
    response_model=CourierResponse,
    summary="Get courier by ID",
    responses={404: {"description": "Courier not found"}},
    tags=["Couriers"]
)
async def get_courier(
    courier_id: int,
    db: AsyncSession = Depends(get_db)
) -> CourierResponse:
    courier = await CourierRegistry(db).get_courier(courier_id)
    return CourierResponse.model_validate(courier)


@router.patch(
    "/{courier_id}/availability",
    response_model=CourierResponse,
    summary="Toggle courier availability",
    responses={404: {"description": "Courier not found"}},
    tags=["Couriers"]
)
async def update_availability(
    courier_id: int,
    payload: AvailabilityUpdate,
    db: AsyncSession = Depends(get_db)
) -> CourierResponse:
    courier = await CourierRegistry(db).set_availability(courier_id, payload.is_available)
    return CourierResponse.model_validate(courier)


@router.post(
    "/{courier_id}/location",
    response_model=LocationPingResponse,
    summary="Report courier location",
    description=(
        "Last write wins by ping timestamp: a ping older than the stored one is "
        "recorded with outcome `stale` and changes nothing else. With an active "
        "`delivery_id` the ETA is recomputed and pushed to tracking subscribers."
    ),
    responses={
        400: {"description": "Coordinates out of range"},
        404: {"description": "Courier or delivery not found"},
    },
    tags=["Couriers"]
)
async def report_location(
    courier_id: int,
    payload: LocationPingRequest,
    db: AsyncSession = Depends(get_db)
) -> LocationPingResponse:
    point = GeoPoint(payload.latitude, payload.longitude)
    result = await TrackingService(db).ingest(
        courier_id,
        point,
        timestamp=payload.timestamp,
        delivery_id=payload.delivery_id,
    )
    return LocationPingResponse(
        outcome=result.outcome,
        courier_id=result.courier_id,
        delivery_id=result.delivery_id,
        eta_minutes=result.eta_minutes,
        published=result.published,
    )
