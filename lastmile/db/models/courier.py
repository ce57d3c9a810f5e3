"""
Courier Model - delivery personnel availability, location and reputation
"""
import enum
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, Boolean, Float, Index

from lastmile.db.database import Base


class VehicleType(str, enum.Enum):
    BICYCLE = "bicycle"
    MOTORCYCLE = "motorcycle"
    CAR = "car"
    SCOOTER = "scooter"
    VAN = "van"


class Courier(Base):
    """Courier state owned by the courier registry"""

    __tablename__ = "couriers"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), unique=True, nullable=False, index=True)
    name = Column(String(150), nullable=False)
    email = Column(String(255), nullable=True)
    phone = Column(String(32), nullable=True)
    vehicle_type = Column(
        SQLEnum(VehicleType, name="vehicle_type", values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    license_number = Column(String(64), nullable=True)

    current_latitude = Column(Float, nullable=True)
    current_longitude = Column(Float, nullable=True)
    last_location_update_time = Column(DateTime, nullable=True)

    is_available = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    rating = Column(Float, default=0.0, nullable=False)
    total_ratings = Column(Integer, default=0, nullable=False)

    # Bumped on every availability change; compare-and-set token for claims
    version = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_couriers_available_location", "is_available", "is_active", "current_latitude", "current_longitude"),
    )

    @property
    def has_location(self) -> bool:
        return self.current_latitude is not None and self.current_longitude is not None
