"""
Delivery Model - fulfillment record for a single order
"""
import enum
from datetime import datetime
from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    Enum as SQLEnum,
    Numeric,
    Float,
    ForeignKey,
    Text,
    SmallInteger,
)
from sqlalchemy.orm import relationship

from lastmile.db.database import Base


class DeliveryStatus(str, enum.Enum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    PICKED_UP = "picked_up"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


ACTIVE_DELIVERY_STATUSES = frozenset({
    DeliveryStatus.ASSIGNED,
    DeliveryStatus.PICKED_UP,
    DeliveryStatus.IN_TRANSIT,
})

TERMINAL_DELIVERY_STATUSES = frozenset({
    DeliveryStatus.DELIVERED,
    DeliveryStatus.CANCELLED,
})


class Delivery(Base):
    """Delivery record: courier assignment and physical transit of one order"""

    __tablename__ = "deliveries"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), unique=True, nullable=False)

    # Pickup (restaurant)
    restaurant_id = Column(String(64), nullable=False, index=True)
    restaurant_name = Column(String(200), nullable=False)
    restaurant_address = Column(String(500), nullable=False)
    restaurant_latitude = Column(Float, nullable=False)
    restaurant_longitude = Column(Float, nullable=False)

    # Dropoff (customer)
    customer_id = Column(String(64), nullable=False, index=True)
    customer_name = Column(String(200), nullable=False)
    customer_address = Column(String(500), nullable=False)
    customer_phone = Column(String(32), nullable=True)
    customer_latitude = Column(Float, nullable=False)
    customer_longitude = Column(Float, nullable=False)

    delivery_personnel_id = Column(Integer, ForeignKey("couriers.id"), nullable=True, index=True)
    status = Column(
        SQLEnum(DeliveryStatus, name="delivery_status", values_callable=lambda x: [e.value for e in x]),
        default=DeliveryStatus.PENDING,
        nullable=False,
        index=True,
    )

    distance_km = Column(Float, nullable=False)
    estimated_delivery_time_min = Column(Integer, nullable=False)
    current_eta_min = Column(Integer, nullable=True)
    actual_delivery_time_min = Column(Integer, nullable=True)

    delivery_fee = Column(Numeric(10, 2), nullable=False)
    driver_earnings = Column(Numeric(10, 2), nullable=False)

    # Latest applied ping for this delivery (stale pings never overwrite it)
    last_location_latitude = Column(Float, nullable=True)
    last_location_longitude = Column(Float, nullable=True)
    last_location_at = Column(DateTime, nullable=True)

    assigned_at = Column(DateTime, nullable=True)
    picked_up_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancellation_reason = Column(String(500), nullable=True)
    notes = Column(Text, nullable=True)

    # Post-completion only
    rating = Column(SmallInteger, nullable=True)
    feedback = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    order = relationship("Order", foreign_keys=[order_id])
    courier = relationship("Courier", foreign_keys=[delivery_personnel_id])

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_DELIVERY_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_DELIVERY_STATUSES
