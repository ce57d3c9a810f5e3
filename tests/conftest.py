"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, SQLite in memory)
- In-memory Redis replacement
- Test data factories (orders, couriers, deliveries)
"""
import itertools
from datetime import datetime, timedelta
from decimal import Decimal
from typing import AsyncGenerator
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.pool import StaticPool

from lastmile.db.database import Base, get_db, session_factory
from lastmile.db.models.order import Order, OrderStatus, PaymentStatus
from lastmile.db.models.courier import Courier, VehicleType
from lastmile.db.models.delivery import Delivery, DeliveryStatus
from lastmile.core.timeutil import utcnow
from lastmile.domain.geo import GeoPoint, distance_km, delivery_pricing, estimate_minutes
from lastmile.domain.services.tracking_hub import reset_tracking_hub
from lastmile.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Colombo: restaurant and a customer ~3.3 km north-east
RESTAURANT = GeoPoint(6.9271, 79.8612)
CUSTOMER = GeoPoint(6.9500, 79.8800)


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async with session_factory(async_engine)() as session:
        yield session
        await session.rollback()


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession):
    """Create test client with database override"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ============================================================================
# Redis / tracking / broker isolation
# ============================================================================

class FakeRedis:
    """In-memory Redis replacement with TTL tracking and a publish log."""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}
        self._ttls: dict[str, int] = {}
        self.published: list[tuple[str, str]] = []

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> str | None:
        return self._store.get(key)

    async def set(self, key: str, value: str, nx: bool = False, ex: int | None = None) -> bool | None:
        if nx and key in self._store:
            return None
        self._store[key] = value
        if ex is not None:
            self._ttls[key] = ex
        return True

    async def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, message))
        return 0

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self._store.pop(key, None)
            self._ttls.pop(key, None)

    async def aclose(self) -> None:
        self._store.clear()
        self._ttls.clear()


@pytest.fixture(autouse=True)
def fake_redis():
    """Replace get_redis with FakeRedis for every test."""
    _fake = FakeRedis()

    async def _get_fake_redis():
        return _fake

    with patch("lastmile.core.redis_client.get_redis", _get_fake_redis):
        yield _fake


@pytest.fixture(autouse=True)
def fresh_tracking_hub():
    """Each test gets its own process-wide tracking hub."""
    reset_tracking_hub()
    yield
    reset_tracking_hub()


@pytest.fixture(autouse=True)
def mock_enqueue_dispatch():
    """No broker in tests: background dispatch scheduling is recorded only."""
    mock = MagicMock(return_value=True)
    with patch("lastmile.api.routes.deliveries.enqueue_dispatch", mock):
        yield mock


# ============================================================================
# Test Data Factories
# ============================================================================

_ids = itertools.count(1)


@pytest.fixture
def order_factory(db_session: AsyncSession):
    """Factory for creating test orders"""
    async def _create_order(
        status: OrderStatus = OrderStatus.READY_FOR_PICKUP,
        payment_status: PaymentStatus = PaymentStatus.PENDING,
        total: Decimal = Decimal("25.00"),
        customer_id: str | None = None,
        restaurant_id: str = "rest-1",
        location: GeoPoint = CUSTOMER,
    ) -> Order:
        order = Order(
            customer_id=customer_id or f"cust-{next(_ids)}",
            restaurant_id=restaurant_id,
            status=status,
            delivery_street="12 Galle Road, Colombo",
            delivery_latitude=location.latitude,
            delivery_longitude=location.longitude,
            total=total,
            payment_status=payment_status,
            refund_amount=Decimal("0.00"),
        )
        db_session.add(order)
        await db_session.commit()
        await db_session.refresh(order)
        return order

    return _create_order


@pytest.fixture
def courier_factory(db_session: AsyncSession):
    """Factory for creating test couriers"""
    async def _create_courier(
        location: GeoPoint | None = RESTAURANT,
        is_available: bool = True,
        is_active: bool = True,
        rating: float = 4.5,
        total_ratings: int = 10,
        last_update: datetime | None = None,
        vehicle_type: VehicleType = VehicleType.MOTORCYCLE,
        name: str = "Test Courier",
    ) -> Courier:
        courier = Courier(
            user_id=f"user-{next(_ids)}",
            name=name,
            vehicle_type=vehicle_type,
            is_available=is_available,
            is_active=is_active,
            rating=rating,
            total_ratings=total_ratings,
            version=0,
        )
        if location is not None:
            courier.current_latitude = location.latitude
            courier.current_longitude = location.longitude
            courier.last_location_update_time = last_update or utcnow() - timedelta(minutes=1)
        db_session.add(courier)
        await db_session.commit()
        await db_session.refresh(courier)
        return courier

    return _create_courier


@pytest.fixture
def delivery_factory(db_session: AsyncSession):
    """Factory for creating test deliveries for an existing order"""
    async def _create_delivery(
        order: Order,
        status: DeliveryStatus = DeliveryStatus.PENDING,
        courier_id: int | None = None,
        restaurant: GeoPoint = RESTAURANT,
        customer: GeoPoint = CUSTOMER,
    ) -> Delivery:
        distance = round(distance_km(restaurant, customer), 3)
        fee, earnings = delivery_pricing(distance)
        now = utcnow()
        delivery = Delivery(
            order_id=order.id,
            restaurant_id=order.restaurant_id,
            restaurant_name="Spice Garden",
            restaurant_address="1 Main Street, Colombo",
            restaurant_latitude=restaurant.latitude,
            restaurant_longitude=restaurant.longitude,
            customer_id=order.customer_id,
            customer_name="Nimal Perera",
            customer_address=order.delivery_street,
            customer_latitude=customer.latitude,
            customer_longitude=customer.longitude,
            status=status,
            delivery_personnel_id=courier_id,
            distance_km=distance,
            estimated_delivery_time_min=estimate_minutes(distance, 20.0, 10),
            delivery_fee=fee,
            driver_earnings=earnings,
        )
        if status != DeliveryStatus.PENDING:
            delivery.assigned_at = now
        if status in (DeliveryStatus.PICKED_UP, DeliveryStatus.IN_TRANSIT):
            delivery.picked_up_at = now
        db_session.add(delivery)
        await db_session.commit()
        await db_session.refresh(delivery)
        return delivery

    return _create_delivery


@pytest.fixture
async def ready_order(order_factory) -> Order:
    return await order_factory()


@pytest.fixture
async def pending_delivery(delivery_factory, ready_order) -> Delivery:
    return await delivery_factory(ready_order)
