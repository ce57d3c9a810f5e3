"""
Tests for the in-process tracking pub/sub and its Redis mirror/relay.
"""
import json
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest

from lastmile.core.redis_client import tracking_channel, tracking_snapshot_key
from lastmile.domain.geo import GeoPoint
from lastmile.domain.services.tracking_hub import (
    EVENT_KIND_STATUS,
    TrackingEvent,
    TrackingHub,
    get_tracking_hub,
    reset_tracking_hub,
)

T0 = datetime(2026, 3, 2, 12, 0, 0)


def _event(seconds: int | None = 0, delivery_id: int = 1, **kwargs) -> TrackingEvent:
    kwargs.setdefault("status", "in_transit")
    kwargs.setdefault("location", GeoPoint(6.93, 79.86))
    timestamp = None if seconds is None else T0 + timedelta(seconds=seconds)
    return TrackingEvent(delivery_id=delivery_id, timestamp=timestamp, **kwargs)


class TestFanOut:

    @pytest.mark.unit
    async def test_subscriber_receives_events_in_order(self) -> None:
        hub = TrackingHub(mirror_to_redis=False)
        subscription = hub.subscribe(1)

        hub.fan_out(_event(0))
        hub.fan_out(_event(5))

        first = await subscription.get(timeout=0.1)
        second = await subscription.get(timeout=0.1)
        assert (first.timestamp, second.timestamp) == (T0, T0 + timedelta(seconds=5))

    @pytest.mark.unit
    async def test_other_deliveries_not_delivered(self) -> None:
        hub = TrackingHub(mirror_to_redis=False)
        subscription = hub.subscribe(1)
        hub.fan_out(_event(0, delivery_id=2))
        assert await subscription.get(timeout=0.01) is None

    @pytest.mark.unit
    async def test_slow_subscriber_drops_oldest(self) -> None:
        hub = TrackingHub(queue_size=2, mirror_to_redis=False)
        subscription = hub.subscribe(1)

        for seconds in (0, 1, 2):
            hub.fan_out(_event(seconds))

        assert subscription.dropped == 1
        assert subscription.pending() == 2
        assert (await subscription.get()).timestamp == T0 + timedelta(seconds=1)
        assert (await subscription.get()).timestamp == T0 + timedelta(seconds=2)

    @pytest.mark.unit
    def test_out_of_order_event_dropped(self) -> None:
        hub = TrackingHub(mirror_to_redis=False)
        assert hub.fan_out(_event(10)) is True
        assert hub.fan_out(_event(5)) is False
        assert hub.fan_out(_event(10)) is True
        assert hub.snapshot(1).timestamp == T0 + timedelta(seconds=10)

    @pytest.mark.unit
    def test_status_events_always_accepted(self) -> None:
        hub = TrackingHub(mirror_to_redis=False)
        hub.fan_out(_event(10))
        status = _event(None, status="delivered", location=None, kind=EVENT_KIND_STATUS)
        assert hub.fan_out(status) is True
        assert hub.snapshot(1).status == "delivered"


class TestSubscription:

    @pytest.mark.unit
    async def test_unsubscribe_is_idempotent(self) -> None:
        hub = TrackingHub(mirror_to_redis=False)
        subscription = hub.subscribe(1)
        assert hub.subscriber_count(1) == 1

        subscription.unsubscribe()
        subscription.unsubscribe()

        assert subscription.closed
        assert hub.subscriber_count(1) == 0
        assert await subscription.get(timeout=0.01) is None

    @pytest.mark.unit
    async def test_iteration_ends_when_topic_closes(self) -> None:
        hub = TrackingHub(mirror_to_redis=False)
        subscription = hub.subscribe(1)
        hub.fan_out(_event(0))
        hub.fan_out(_event(1))
        hub.close_topic(1)

        received = [event async for event in subscription]

        assert len(received) == 2
        assert hub.subscriber_count(1) == 0

    @pytest.mark.unit
    def test_closed_topics_release_their_snapshots(self) -> None:
        hub = TrackingHub(mirror_to_redis=False)
        for delivery_id in range(1, 51):
            hub.fan_out(_event(None, delivery_id=delivery_id, status="delivered", kind=EVENT_KIND_STATUS))
            assert hub.snapshot(delivery_id) is not None
            hub.close_topic(delivery_id)

        assert all(hub.snapshot(delivery_id) is None for delivery_id in range(1, 51))

    @pytest.mark.unit
    async def test_unsubscribe_with_full_queue_counts_dropped_event(self) -> None:
        hub = TrackingHub(queue_size=2, mirror_to_redis=False)
        subscription = hub.subscribe(1)
        hub.fan_out(_event(0))
        hub.fan_out(_event(1))

        subscription.unsubscribe()

        assert subscription.dropped == 1
        remaining = [event async for event in subscription]
        assert [e.timestamp for e in remaining] == [T0 + timedelta(seconds=1)]

    @pytest.mark.unit
    def test_closed_subscription_ignores_events(self) -> None:
        hub = TrackingHub(mirror_to_redis=False)
        subscription = hub.subscribe(1)
        subscription.unsubscribe()
        subscription.offer(_event(0))
        assert subscription.dropped == 0


class TestWireShape:

    @pytest.mark.unit
    def test_to_dict(self) -> None:
        event = _event(0, eta_minutes=12, delivery_id=7)
        payload = event.to_dict()

        assert payload["deliveryId"] == 7
        assert payload["location"] == {"lat": 6.93, "lng": 79.86}
        assert payload["status"] == "in_transit"
        assert payload["eta"] == {"minutes": 12, "arrivalTime": "2026-03-02T12:12:00Z"}
        assert payload["timestamp"] == "2026-03-02T12:00:00Z"

    @pytest.mark.unit
    def test_snapshot_has_last_update(self) -> None:
        snapshot = _event(0).to_snapshot()
        assert snapshot["lastUpdate"] == "2026-03-02T12:00:00Z"

    @pytest.mark.unit
    def test_from_dict_inverts_to_dict(self) -> None:
        event = _event(30, eta_minutes=4)
        restored = TrackingEvent.from_dict(event.to_dict())
        assert restored.location == event.location
        assert restored.timestamp == event.timestamp
        assert restored.eta_minutes == 4


class TestRedis:

    @pytest.mark.unit
    async def test_publish_mirrors_to_redis(self, fake_redis) -> None:
        hub = TrackingHub()
        assert await hub.publish(_event(0, delivery_id=3)) is True

        channel, message = fake_redis.published[0]
        assert channel == tracking_channel(3)
        envelope = json.loads(message)
        assert envelope["origin"] == hub.instance_id
        assert envelope["event"]["deliveryId"] == 3

        cached = json.loads(await fake_redis.get(tracking_snapshot_key(3)))
        assert cached["lastUpdate"] == "2026-03-02T12:00:00Z"

    @pytest.mark.unit
    async def test_stale_event_not_mirrored(self, fake_redis) -> None:
        hub = TrackingHub()
        await hub.publish(_event(10))
        assert await hub.publish(_event(0)) is False
        assert len(fake_redis.published) == 1

    @pytest.mark.unit
    async def test_redis_failure_does_not_block_fan_out(self) -> None:
        hub = TrackingHub()
        subscription = hub.subscribe(1)
        failing = AsyncMock(side_effect=ConnectionError("redis down"))

        with patch("lastmile.core.redis_client.get_redis", failing):
            assert await hub.publish(_event(0)) is True

        assert await subscription.get(timeout=0.1) is not None


class TestRelay:

    @staticmethod
    def _envelope(event: TrackingEvent, origin: str = "other-process") -> str:
        return json.dumps({"origin": origin, "event": event.to_dict()})

    @pytest.mark.unit
    async def test_relays_foreign_events(self) -> None:
        hub = TrackingHub(mirror_to_redis=False)
        subscription = hub.subscribe(1)

        assert hub.relay(self._envelope(_event(0)).encode("utf-8")) is True

        relayed = await subscription.get(timeout=0.1)
        assert relayed.location == GeoPoint(6.93, 79.86)

    @pytest.mark.unit
    def test_skips_own_events(self) -> None:
        hub = TrackingHub(mirror_to_redis=False)
        assert hub.relay(self._envelope(_event(0), origin=hub.instance_id)) is False
        assert hub.snapshot(1) is None

    @pytest.mark.unit
    @pytest.mark.parametrize("raw", [
        "not json",
        json.dumps({"origin": "x"}),
        json.dumps({"origin": "x", "event": {"deliveryId": 1}}),
        json.dumps({"origin": "x", "event": {
            "deliveryId": 1, "status": "in_transit", "location": {"lat": 95, "lng": 0},
        }}),
    ])
    def test_malformed_messages_rejected(self, raw) -> None:
        assert TrackingHub(mirror_to_redis=False).relay(raw) is False

    @pytest.mark.unit
    def test_terminal_status_closes_topic(self) -> None:
        hub = TrackingHub(mirror_to_redis=False)
        subscription = hub.subscribe(1)
        terminal = _event(None, status="cancelled", location=None, kind=EVENT_KIND_STATUS)

        assert hub.relay(self._envelope(terminal)) is True

        assert subscription.closed
        assert hub.subscriber_count(1) == 0
        assert hub.snapshot(1) is None


@pytest.mark.unit
def test_process_wide_hub_is_shared_until_reset() -> None:
    hub = get_tracking_hub()
    assert get_tracking_hub() is hub
    subscription = hub.subscribe(1)

    reset_tracking_hub()

    assert subscription.closed
    assert get_tracking_hub() is not hub
