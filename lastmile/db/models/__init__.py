"""
Database Models
"""
from lastmile.db.models.order import Order
from lastmile.db.models.courier import Courier
from lastmile.db.models.delivery import Delivery
from lastmile.db.models.location_ping import LocationPing
from lastmile.db.models.earnings import EarningsRecord, EarningsLineItem

__all__ = [
    "Order",
    "Courier",
    "Delivery",
    "LocationPing",
    "EarningsRecord",
    "EarningsLineItem",
]
