"""
API tests for tracking: snapshot polling, location trail and the SSE stream.
"""
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from lastmile.api.routes.tracking import _sse_event_generator
from lastmile.core.config import settings
from lastmile.db.models.delivery import DeliveryStatus
from lastmile.domain.geo import GeoPoint
from lastmile.domain.services.tracking_hub import TrackingEvent, get_tracking_hub

BASE = "/api/tracking/deliveries"


def _data_lines(body: str) -> list[dict]:
    return [json.loads(line[len("data: "):]) for line in body.splitlines() if line.startswith("data: ")]


def _connected_request() -> MagicMock:
    request = MagicMock()
    request.is_disconnected = AsyncMock(return_value=False)
    return request


class TestSnapshotAndTrail:

    @pytest.mark.unit
    async def test_snapshot(self, test_client, pending_delivery) -> None:
        response = await test_client.get(f"{BASE}/{pending_delivery.id}")

        assert response.status_code == 200
        body = response.json()
        assert body["deliveryId"] == pending_delivery.id
        assert body["status"] == "pending"
        assert set(body) >= {"location", "eta", "lastUpdate"}

    @pytest.mark.unit
    async def test_snapshot_unknown(self, test_client) -> None:
        response = await test_client.get(f"{BASE}/999")
        assert response.status_code == 404

    @pytest.mark.unit
    async def test_trail_after_pings(self, test_client, courier_factory, ready_order, delivery_factory) -> None:
        courier = await courier_factory(is_available=False)
        delivery = await delivery_factory(ready_order, status=DeliveryStatus.PICKED_UP, courier_id=courier.id)
        for lat in (6.930, 6.935):
            await test_client.post(
                f"/api/couriers/{courier.id}/location",
                json={"latitude": lat, "longitude": 79.87, "delivery_id": delivery.id},
            )

        response = await test_client.get(f"{BASE}/{delivery.id}/trail")

        body = response.json()
        assert body["count"] == 2
        assert [p["latitude"] for p in body["points"]] == [6.930, 6.935]
        assert all(p["applied"] for p in body["points"])


class TestStream:

    @pytest.mark.unit
    async def test_stream_of_finished_delivery_closes_after_snapshot(
        self, test_client, order_factory, delivery_factory
    ) -> None:
        delivery = await delivery_factory(await order_factory(), status=DeliveryStatus.CANCELLED)

        response = await test_client.get(f"{BASE}/{delivery.id}/stream")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert f"retry: {settings.TRACKING_POLL_INTERVAL_SECONDS * 1000}" in response.text
        assert [e["status"] for e in _data_lines(response.text)] == ["cancelled"]
        assert get_tracking_hub().subscriber_count(delivery.id) == 0

    @pytest.mark.unit
    async def test_stream_unknown_delivery_releases_subscription(self, test_client) -> None:
        response = await test_client.get(f"{BASE}/999/stream")
        assert response.status_code == 404
        assert get_tracking_hub().subscriber_count(999) == 0

    @pytest.mark.unit
    async def test_generator_forwards_events_until_topic_closes(self) -> None:
        hub = get_tracking_hub()
        subscription = hub.subscribe(5)
        hub.fan_out(TrackingEvent(delivery_id=5, status="in_transit", location=GeoPoint(6.93, 79.87), eta_minutes=9))
        hub.close_topic(5)

        chunks = [
            chunk async for chunk in _sse_event_generator(
                5, subscription, {"deliveryId": 5, "status": "picked_up"}, _connected_request()
            )
        ]

        events = _data_lines("".join(chunks))
        assert [e["status"] for e in events] == ["picked_up", "in_transit"]
        assert events[1]["eta"]["minutes"] == 9

    @pytest.mark.unit
    async def test_generator_sends_heartbeat_when_idle(self) -> None:
        subscription = get_tracking_hub().subscribe(6)

        with patch.object(settings, "TRACKING_SSE_HEARTBEAT_SECONDS", 0.01):
            stream = _sse_event_generator(6, subscription, {"deliveryId": 6, "status": "assigned"}, _connected_request())
            chunks = [await stream.__anext__() for _ in range(3)]
            await stream.aclose()

        assert chunks[0].startswith("retry: ")
        assert chunks[2] == ": heartbeat\n\n"
        assert subscription.closed

    @pytest.mark.unit
    async def test_generator_stops_on_disconnect(self) -> None:
        subscription = get_tracking_hub().subscribe(7)
        request = MagicMock()
        request.is_disconnected = AsyncMock(return_value=True)

        chunks = [
            chunk async for chunk in _sse_event_generator(
                7, subscription, {"deliveryId": 7, "status": "assigned"}, request
            )
        ]

        assert len(chunks) == 2
        assert subscription.closed
