"""
Earnings Ledger - per courier per day accumulation of completed deliveries.

Write side (record_completion) runs inside the delivered transition and is
idempotent per delivery. Read side is a simple fold over the day records.
"""
from collections import OrderedDict
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from lastmile.core.exceptions import ValidationException
from lastmile.core.logging import get_logger
from lastmile.core.timeutil import utcnow
from lastmile.db.models.delivery import Delivery
from lastmile.db.models.earnings import EarningsRecord, EarningsLineItem

logger = get_logger(__name__)

SUMMARY_PERIODS = ("day", "week", "month")


def _period_key(day: date, period: str) -> str:
    if period == "week":
        iso_year, iso_week, _ = day.isocalendar()
        return f"{iso_year}-W{iso_week:02d}"
    if period == "month":
        return day.strftime("%Y-%m")
    return day.isoformat()


def _empty_totals() -> Dict[str, Any]:
    return {"total_amount": Decimal("0.00"), "total_deliveries": 0, "total_distance": 0.0}


def _add_to_totals(totals: Dict[str, Any], record: EarningsRecord) -> None:
    totals["total_amount"] += Decimal(record.total_amount)
    totals["total_deliveries"] += record.total_deliveries
    totals["total_distance"] = round(totals["total_distance"] + record.total_distance, 3)


class EarningsLedger:
    """Courier earnings records"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def record_completion(self, delivery: Delivery, auto_commit: bool = False) -> bool:
        """
        Add a delivered delivery to its courier's record for the delivery day.

        Returns False without changing anything when the delivery is already
        recorded. The line item's unique delivery_id backs the lookup guard.
        """
        if delivery.delivery_personnel_id is None or delivery.delivered_at is None:
            raise ValidationException(
                "Only delivered deliveries with a courier can be recorded",
                details={"delivery_id": delivery.id},
            )

        existing = await self.db.execute(
            select(EarningsLineItem.id).where(EarningsLineItem.delivery_id == delivery.id)
        )
        if existing.scalar_one_or_none() is not None:
            logger.info(
                "Earnings already recorded for delivery",
                extra_data={"delivery_id": delivery.id},
            )
            return False

        day = delivery.delivered_at.date()
        result = await self.db.execute(
            select(EarningsRecord)
            .where(
                EarningsRecord.courier_id == delivery.delivery_personnel_id,
                EarningsRecord.date == day,
            )
            .with_for_update()
        )
        record = result.scalar_one_or_none()
        if record is None:
            record = EarningsRecord(
                courier_id=delivery.delivery_personnel_id,
                date=day,
                total_amount=Decimal("0.00"),
                total_deliveries=0,
                total_distance=0.0,
                is_paid=False,
            )
            self.db.add(record)
            await self.db.flush()

        amount = Decimal(delivery.driver_earnings)
        self.db.add(EarningsLineItem(
            record_id=record.id,
            delivery_id=delivery.id,
            order_id=delivery.order_id,
            amount=amount,
            distance=delivery.distance_km,
            completed_at=delivery.delivered_at,
        ))
        record.total_amount = Decimal(record.total_amount) + amount
        record.total_deliveries = record.total_deliveries + 1
        record.total_distance = round(record.total_distance + delivery.distance_km, 3)
        await self.db.flush()

        if auto_commit:
            await self.db.commit()

        logger.info(
            "Delivery earnings recorded",
            extra_data={
                "delivery_id": delivery.id,
                "courier_id": delivery.delivery_personnel_id,
                "date": day.isoformat(),
                "amount": str(amount),
            },
        )
        return True

    async def _records(
        self,
        courier_id: Optional[int],
        start: Optional[date],
        end: Optional[date],
        unpaid_only: bool = False,
    ) -> List[EarningsRecord]:
        stmt = select(EarningsRecord)
        if courier_id is not None:
            stmt = stmt.where(EarningsRecord.courier_id == courier_id)
        if start is not None:
            stmt = stmt.where(EarningsRecord.date >= start)
        if end is not None:
            stmt = stmt.where(EarningsRecord.date <= end)
        if unpaid_only:
            stmt = stmt.where(EarningsRecord.is_paid.is_(False))
        stmt = stmt.order_by(EarningsRecord.date.asc(), EarningsRecord.id.asc()).execution_options(
            populate_existing=True
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def get_earnings(
        self,
        courier_id: int,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> Dict[str, Any]:
        """Day records and totals for a courier; defaults to the current month."""
        end = end or utcnow().date()
        start = start or end.replace(day=1)
        if start > end:
            raise ValidationException("start date must not be after end date", field="start")

        records = await self._records(courier_id, start, end)
        totals = _empty_totals()
        for record in records:
            _add_to_totals(totals, record)

        return {"records": records, "totals": totals, "start": start, "end": end}

    async def get_summary(
        self,
        courier_id: int,
        period: str = "day",
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> Dict[str, Any]:
        """Totals bucketed by day, ISO week or month; defaults to the last 30 days."""
        if period not in SUMMARY_PERIODS:
            raise ValidationException(
                f"period must be one of {', '.join(SUMMARY_PERIODS)}", field="period"
            )
        end = end or utcnow().date()
        start = start or end - timedelta(days=30)

        buckets: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
        totals = _empty_totals()
        for record in await self._records(courier_id, start, end):
            key = _period_key(record.date, period)
            if key not in buckets:
                buckets[key] = {"period": key, "date": record.date, **_empty_totals()}
            _add_to_totals(buckets[key], record)
            _add_to_totals(totals, record)

        return {
            "period_type": period,
            "start": start,
            "end": end,
            "summary": list(buckets.values()),
            "totals": totals,
        }

    async def get_unpaid(
        self,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> Dict[str, Any]:
        """Unpaid records grouped per courier with their date range and record ids."""
        grouped: "OrderedDict[int, Dict[str, Any]]" = OrderedDict()
        for record in await self._records(None, start, end, unpaid_only=True):
            entry = grouped.get(record.courier_id)
            if entry is None:
                entry = {
                    "courier_id": record.courier_id,
                    "record_ids": [],
                    "start_date": record.date,
                    "end_date": record.date,
                    **_empty_totals(),
                }
                grouped[record.courier_id] = entry
            entry["record_ids"].append(record.id)
            entry["start_date"] = min(entry["start_date"], record.date)
            entry["end_date"] = max(entry["end_date"], record.date)
            _add_to_totals(entry, record)

        couriers = sorted(grouped.values(), key=lambda e: e["courier_id"])
        return {
            "couriers": couriers,
            "total_unpaid_amount": sum((e["total_amount"] for e in couriers), Decimal("0.00")),
            "count": len(couriers),
        }

    async def mark_paid(self, record_ids: Iterable[int]) -> int:
        """Mark records as paid. Already-paid records are left untouched."""
        ids = sorted(set(record_ids))
        if not ids:
            return 0

        result = await self.db.execute(
            update(EarningsRecord)
            .where(EarningsRecord.id.in_(ids), EarningsRecord.is_paid.is_(False))
            .values(is_paid=True, paid_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        logger.info(
            "Earnings marked as paid",
            extra_data={"requested": len(ids), "modified": result.rowcount},
        )
        return result.rowcount
