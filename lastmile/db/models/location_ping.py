"""
Location Ping Model - append-only courier position history
"""
from datetime import datetime
from sqlalchemy import Column, Integer, DateTime, Float, ForeignKey, Boolean, Index

from lastmile.db.database import Base


class LocationPing(Base):
    """One courier position report.

    Every ping is stored, including stale ones (``applied=False``), so trails
    can be reconstructed and late arrivals audited.
    """

    __tablename__ = "location_pings"

    id = Column(Integer, primary_key=True, index=True)
    courier_id = Column(Integer, ForeignKey("couriers.id"), nullable=False)
    delivery_id = Column(Integer, ForeignKey("deliveries.id"), nullable=True)

    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    timestamp = Column(DateTime, nullable=False)
    applied = Column(Boolean, default=True, nullable=False)

    received_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_location_pings_courier_ts", "courier_id", "timestamp"),
        Index("ix_location_pings_delivery_ts", "delivery_id", "timestamp"),
    )
