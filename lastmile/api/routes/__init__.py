"""
API Routes
"""
from fastapi import APIRouter

from lastmile.api.routes.deliveries import router as deliveries_router
from lastmile.api.routes.orders import router as orders_router
from lastmile.api.routes.couriers import router as couriers_router
from lastmile.api.routes.tracking import router as tracking_router
from lastmile.api.routes.earnings import router as earnings_router

router = APIRouter()

router.include_router(deliveries_router, prefix="/deliveries", tags=["deliveries"])
router.include_router(orders_router, prefix="/orders", tags=["orders"])
router.include_router(couriers_router, prefix="/couriers", tags=["couriers"])
router.include_router(tracking_router, prefix="/tracking", tags=["tracking"])
router.include_router(earnings_router, prefix="/earnings", tags=["earnings"])
