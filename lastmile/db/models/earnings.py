"""
Earnings Models - per courier per day settlement records
"""
from decimal import Decimal
from datetime import datetime
from sqlalchemy import (
    Column,
    Integer,
    Numeric,
    Float,
    Date,
    DateTime,
    Boolean,
    ForeignKey,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from lastmile.db.database import Base


class EarningsRecord(Base):
    """Totals of one courier's completed deliveries for one calendar day"""

    __tablename__ = "earnings_records"

    id = Column(Integer, primary_key=True, index=True)
    courier_id = Column(Integer, ForeignKey("couriers.id"), nullable=False, index=True)
    date = Column(Date, nullable=False)

    total_amount = Column(Numeric(10, 2), nullable=False, default=Decimal("0.00"))
    total_deliveries = Column(Integer, nullable=False, default=0)
    total_distance = Column(Float, nullable=False, default=0.0)

    is_paid = Column(Boolean, nullable=False, default=False)
    paid_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    line_items = relationship(
        "EarningsLineItem",
        back_populates="record",
        order_by="EarningsLineItem.completed_at",
        lazy="selectin",
    )

    __table_args__ = (
        UniqueConstraint("courier_id", "date", name="uq_earnings_courier_date"),
    )


class EarningsLineItem(Base):
    """One completed delivery inside a day's earnings record"""

    __tablename__ = "earnings_line_items"

    id = Column(Integer, primary_key=True, index=True)
    record_id = Column(Integer, ForeignKey("earnings_records.id"), nullable=False, index=True)
    # A delivery is settled at most once
    delivery_id = Column(Integer, ForeignKey("deliveries.id"), nullable=False, unique=True)
    order_id = Column(Integer, nullable=False)

    amount = Column(Numeric(10, 2), nullable=False)
    distance = Column(Float, nullable=False)
    completed_at = Column(DateTime, nullable=False)

    record = relationship("EarningsRecord", back_populates="line_items")
