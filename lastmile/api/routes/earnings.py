"""
Earnings API Routes - courier settlement reads and payouts
"""
from datetime import date as Date, datetime
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from lastmile.db.database import get_db
from lastmile.domain.services.courier_registry import CourierRegistry
from lastmile.domain.services.earnings_ledger import EarningsLedger

router = APIRouter()


class Totals(BaseModel):
    total_amount: float
    total_deliveries: int
    total_distance: float


class LineItemResponse(BaseModel):
    delivery_id: int
    order_id: int
    amount: float
    distance: float
    completed_at: datetime

    model_config = {"from_attributes": True}


class EarningsRecordResponse(BaseModel):
    id: int
    courier_id: int
    date: Date
    total_amount: float
    total_deliveries: int
    total_distance: float
    is_paid: bool
    paid_at: datetime | None
    line_items: List[LineItemResponse] = []

    model_config = {"from_attributes": True}


class EarningsResponse(BaseModel):
    courier_id: int
    start: Date
    end: Date
    records: List[EarningsRecordResponse]
    totals: Totals


class SummaryBucket(Totals):
    period: str
    date: Date


class SummaryResponse(BaseModel):
    courier_id: int
    period_type: str
    start: Date
    end: Date
    summary: List[SummaryBucket]
    totals: Totals


class UnpaidCourier(Totals):
    courier_id: int
    record_ids: List[int]
    start_date: Date
    end_date: Date


class UnpaidResponse(BaseModel):
    couriers: List[UnpaidCourier]
    total_unpaid_amount: float
    count: int


class MarkPaidRequest(BaseModel):
    record_ids: List[int] = Field(min_length=1)


class MarkPaidResponse(BaseModel):
    requested: int
    modified: int


@router.get(
    "/unpaid",
    response_model=UnpaidResponse,
    summary="Unpaid earnings per courier",
    tags=["Earnings"]
)
async def get_unpaid(
    start: Optional[Date] = None,
    end: Optional[Date] = None,
    db: AsyncSession = Depends(get_db)
) -> UnpaidResponse:
    return UnpaidResponse(**await EarningsLedger(db).get_unpaid(start, end))


@router.post(
    "/mark-paid",
    response_model=MarkPaidResponse,
    summary="Mark earnings records as paid",
    tags=["Earnings"]
)
async def mark_paid(
    payload: MarkPaidRequest,
    db: AsyncSession = Depends(get_db)
) -> MarkPaidResponse:
    modified = await EarningsLedger(db).mark_paid(payload.record_ids)
    return MarkPaidResponse(requested=len(set(payload.record_ids)), modified=modified)


@router.get(
    "/{courier_id}",
    response_model=EarningsResponse,
    summary="Courier earnings",
    description="Day records with line items; defaults to the current month.",
    responses={404: {"description": "Courier not found"}},
    tags=["Earnings"]
)
async def get_earnings(
    courier_id: int,
    start: Optional[Date] = None,
    end: Optional[Date] = None,
    db: AsyncSession = Depends(get_db)
) -> EarningsResponse:
    await CourierRegistry(db).get_courier(courier_id)
    earnings = await EarningsLedger(db).get_earnings(courier_id, start, end)
    return EarningsResponse(
        courier_id=courier_id,
        start=earnings["start"],
        end=earnings["end"],
        records=[EarningsRecordResponse.model_validate(r) for r in earnings["records"]],
        totals=Totals(**earnings["totals"]),
    )


@router.get(
    "/{courier_id}/summary",
    response_model=SummaryResponse,
    summary="Courier earnings summary",
    description="Totals per day, ISO week or month; defaults to the last 30 days.",
    responses={404: {"description": "Courier not found"}},
    tags=["Earnings"]
)
async def get_summary(
    courier_id: int,
    period: Literal["day", "week", "month"] = "day",
    start: Optional[Date] = None,
    end: Optional[Date] = None,
    db: AsyncSession = Depends(get_db)
) -> SummaryResponse:
    await CourierRegistry(db).get_courier(courier_id)
    summary = await EarningsLedger(db).get_summary(courier_id, period, start, end)
    return SummaryResponse(courier_id=courier_id, **summary)
