"""
Fixtures and helpers for end-to-end scenario tests.

Provides:
- payload builders for orders, couriers and deliveries
- concise API helpers for the steps of a delivery's life
- DB assertions (delivery/order status, courier availability)
"""
import itertools
from typing import Optional

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from lastmile.db.models.courier import Courier
from lastmile.db.models.delivery import Delivery
from lastmile.db.models.order import Order

RESTAURANT = {"latitude": 6.9271, "longitude": 79.8612}
CUSTOMER = {"latitude": 6.9500, "longitude": 79.8800}

_user_ids = itertools.count(1)


# ============================================================================
# API helpers
# ============================================================================

async def register_courier(client, *, location: Optional[dict] = None, available: bool = True) -> dict:
    location = location or RESTAURANT
    response = await client.post("/api/couriers/", json={
        "user_id": f"scenario-courier-{next(_user_ids)}",
        "name": "Scenario Courier",
        "vehicle_type": "motorcycle",
        "latitude": location["latitude"],
        "longitude": location["longitude"],
        "is_available": available,
    })
    assert response.status_code == 201, response.text
    return response.json()


async def place_order(client, *, total: str = "30.00", paid: bool = True) -> dict:
    """Register an order and walk it to ``preparing`` like order management would."""
    response = await client.post("/api/orders/", json={
        "customer_id": f"scenario-customer-{next(_user_ids)}",
        "restaurant_id": "scenario-restaurant",
        "delivery_street": "12 Galle Road, Colombo",
        "delivery_latitude": CUSTOMER["latitude"],
        "delivery_longitude": CUSTOMER["longitude"],
        "total": total,
    })
    assert response.status_code == 201, response.text
    order = response.json()

    for status in ("confirmed", "preparing"):
        response = await client.patch(f"/api/orders/{order['id']}/status", json={"status": status})
        assert response.status_code == 200, response.text

    if paid:
        response = await client.post(f"/api/orders/{order['id']}/payment", json={"succeeded": True})
        assert response.json()["payment_status"] == "completed"
    return response.json()


async def order_ready(client, order_id: int) -> dict:
    """Fire the order-ready trigger; returns {delivery, dispatch}."""
    response = await client.post("/api/deliveries/", json={
        "order_id": order_id,
        "restaurant_name": "Spice Garden",
        "restaurant_address": "1 Main Street, Colombo",
        "restaurant_location": RESTAURANT,
        "customer_name": "Nimal Perera",
        "customer_address": "12 Galle Road, Colombo",
        "customer_location": CUSTOMER,
    })
    assert response.status_code == 201, response.text
    return response.json()


async def move_delivery(client, delivery_id: int, status: str, **extra) -> dict:
    response = await client.patch(
        f"/api/deliveries/{delivery_id}/status", json={"status": status, **extra}
    )
    assert response.status_code == 200, response.text
    return response.json()


# ============================================================================
# DB assertions
# ============================================================================

async def _fresh(db_session: AsyncSession, model, row_id: int):
    result = await db_session.execute(
        select(model).where(model.id == row_id).execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def assert_delivery_status(db_session: AsyncSession, delivery_id: int, expected) -> Delivery:
    """Fresh read of a delivery; returns it"""
    delivery = await _fresh(db_session, Delivery, delivery_id)
    assert delivery.status == expected, f"expected {expected}, got {delivery.status}"
    return delivery


async def assert_order_status(db_session: AsyncSession, order_id: int, expected) -> Order:
    order = await _fresh(db_session, Order, order_id)
    assert order.status == expected, f"expected {expected}, got {order.status}"
    return order


async def assert_courier_available(db_session: AsyncSession, courier_id: int, expected: bool) -> Courier:
    courier = await _fresh(db_session, Courier, courier_id)
    assert courier.is_available is expected
    return courier


@pytest.fixture(autouse=True)
def _reset_user_ids():
    global _user_ids
    _user_ids = itertools.count(1)
    yield
