"""
Domain Services
"""
from lastmile.domain.services.courier_registry import CourierRegistry
from lastmile.domain.services.dispatcher import Dispatcher
from lastmile.domain.services.state_machine import DeliveryStateMachine
from lastmile.domain.services.earnings_ledger import EarningsLedger
from lastmile.domain.services.tracking_hub import TrackingHub
from lastmile.domain.services.tracking_service import TrackingService
from lastmile.domain.services.delivery_service import DeliveryService
from lastmile.domain.services.order_service import OrderService

__all__ = [
    "CourierRegistry",
    "Dispatcher",
    "DeliveryStateMachine",
    "EarningsLedger",
    "TrackingHub",
    "TrackingService",
    "DeliveryService",
    "OrderService",
]
