"""
Tracking Hub - per-delivery publish/subscribe for location and status events.

Each delivery has a topic. Subscribers get their own bounded asyncio.Queue;
when a subscriber falls behind, the oldest queued event is dropped so a slow
consumer never blocks the publisher.

Events are ordered by ping timestamp per topic: an event older than the last
one published for the same delivery is dropped. Status-only events carry no
timestamp and are always published.

Every accepted event is also mirrored to Redis (see ``redis_client``).
Redis failures are logged and never affect the in-process fan-out. The API
process runs ``run_redis_relay`` so events published by workers reach its
local subscribers too.
"""
import asyncio
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from lastmile.core import redis_client
from lastmile.core.config import settings
from lastmile.core.exceptions import GeoInputInvalidError
from lastmile.core.logging import get_logger
from lastmile.core.timeutil import utcnow, isoformat_z
from lastmile.domain.geo import GeoPoint

logger = get_logger(__name__)

EVENT_KIND_LOCATION = "location"
EVENT_KIND_STATUS = "status"

TERMINAL_STATUSES = frozenset({"delivered", "cancelled"})


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.rstrip("Z"))


@dataclass(frozen=True)
class TrackingEvent:
    """A location or status update for one delivery"""

    delivery_id: int
    status: str
    location: Optional[GeoPoint] = None
    eta_minutes: Optional[int] = None
    timestamp: Optional[datetime] = None
    kind: str = EVENT_KIND_LOCATION
    published_at: datetime = field(default_factory=utcnow)

    @property
    def arrival_time(self) -> Optional[datetime]:
        if self.eta_minutes is None:
            return None
        base = self.timestamp or self.published_at
        return base + timedelta(minutes=self.eta_minutes)

    @property
    def last_update(self) -> datetime:
        return self.timestamp or self.published_at

    def to_dict(self) -> Dict[str, Any]:
        """Push wire shape: {deliveryId, location, status, eta}"""
        return {
            "deliveryId": self.delivery_id,
            "kind": self.kind,
            "location": self.location.to_dict() if self.location else None,
            "status": self.status,
            "eta": {
                "minutes": self.eta_minutes,
                "arrivalTime": isoformat_z(self.arrival_time),
            },
            "timestamp": isoformat_z(self.timestamp),
            "publishedAt": isoformat_z(self.published_at),
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "TrackingEvent":
        """Inverse of to_dict (used by the Redis relay)."""
        location = payload.get("location")
        eta = payload.get("eta") or {}
        return cls(
            delivery_id=int(payload["deliveryId"]),
            status=payload["status"],
            location=GeoPoint(location["lat"], location["lng"]) if location else None,
            eta_minutes=eta.get("minutes"),
            timestamp=_parse_iso(payload.get("timestamp")),
            kind=payload.get("kind", EVENT_KIND_LOCATION),
            published_at=_parse_iso(payload.get("publishedAt")) or utcnow(),
        )

    def to_snapshot(self) -> Dict[str, Any]:
        """Pull shape: the push shape plus lastUpdate"""
        payload = self.to_dict()
        payload["lastUpdate"] = isoformat_z(self.last_update)
        return payload


class Subscription:
    """One subscriber's bounded view of a delivery topic.

    Iterate with ``async for``; iteration ends after ``unsubscribe()``.
    """

    _CLOSED = object()

    def __init__(self, hub: "TrackingHub", delivery_id: int, maxsize: int):
        self.delivery_id = delivery_id
        self.dropped = 0
        self._hub = hub
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def pending(self) -> int:
        return self._queue.qsize()

    def _put_dropping_oldest(self, item: Any) -> bool:
        dropped = False
        if self._queue.full():
            try:
                self._queue.get_nowait()
                dropped = True
            except asyncio.QueueEmpty:
                pass
        self._queue.put_nowait(item)
        return dropped

    def offer(self, event: TrackingEvent) -> None:
        """Enqueue without blocking; overflow drops the oldest queued event."""
        if self._closed:
            return
        if self._put_dropping_oldest(event):
            self.dropped += 1
            logger.warning(
                "Slow tracking subscriber, dropped oldest event",
                extra_data={"delivery_id": self.delivery_id, "dropped_total": self.dropped},
            )

    async def get(self, timeout: Optional[float] = None) -> Optional[TrackingEvent]:
        """Next event, or None on timeout or after unsubscribe."""
        if self._closed and self._queue.empty():
            return None
        try:
            if timeout is None:
                item = await self._queue.get()
            else:
                item = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        if item is self._CLOSED:
            return None
        return item

    def unsubscribe(self) -> None:
        """Detach from the topic. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._hub._detach(self)
        # wake a consumer blocked in get()
        if self._put_dropping_oldest(self._CLOSED):
            self.dropped += 1
            logger.warning(
                "Tracking subscriber closed with a full queue, dropped oldest event",
                extra_data={"delivery_id": self.delivery_id, "dropped_total": self.dropped},
            )

    def __aiter__(self):
        return self

    async def __anext__(self) -> TrackingEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


class TrackingHub:
    """In-process topic registry keyed by delivery id"""

    def __init__(self, queue_size: Optional[int] = None, mirror_to_redis: bool = True):
        self.queue_size = queue_size or settings.TRACKING_SUBSCRIBER_QUEUE_SIZE
        self.mirror_to_redis = mirror_to_redis
        # tags mirrored messages so the relay can skip this process's own events
        self.instance_id = uuid.uuid4().hex
        self._topics: Dict[int, List[Subscription]] = {}
        self._last_timestamp: Dict[int, datetime] = {}
        self._snapshots: Dict[int, TrackingEvent] = {}

    def subscribe(self, delivery_id: int) -> Subscription:
        subscription = Subscription(self, delivery_id, self.queue_size)
        self._topics.setdefault(delivery_id, []).append(subscription)
        logger.debug(
            "Tracking subscriber attached",
            extra_data={"delivery_id": delivery_id, "subscribers": len(self._topics[delivery_id])},
        )
        return subscription

    def _detach(self, subscription: Subscription) -> None:
        subscribers = self._topics.get(subscription.delivery_id)
        if not subscribers:
            return
        if subscription in subscribers:
            subscribers.remove(subscription)
        if not subscribers:
            del self._topics[subscription.delivery_id]

    def subscriber_count(self, delivery_id: int) -> int:
        return len(self._topics.get(delivery_id, ()))

    def snapshot(self, delivery_id: int) -> Optional[TrackingEvent]:
        """Latest accepted event for a delivery in this process"""
        return self._snapshots.get(delivery_id)

    def fan_out(self, event: TrackingEvent) -> bool:
        """
        Deliver an event to local subscribers without blocking.

        Returns False when the event is older than the last one published for
        the delivery and was dropped.
        """
        if event.timestamp is not None:
            last = self._last_timestamp.get(event.delivery_id)
            if last is not None and event.timestamp < last:
                logger.info(
                    "Out-of-order tracking event dropped",
                    extra_data={
                        "delivery_id": event.delivery_id,
                        "event_timestamp": isoformat_z(event.timestamp),
                        "last_timestamp": isoformat_z(last),
                    },
                )
                return False
            self._last_timestamp[event.delivery_id] = event.timestamp

        self._snapshots[event.delivery_id] = event
        for subscription in list(self._topics.get(event.delivery_id, ())):
            subscription.offer(event)
        return True

    async def publish(self, event: TrackingEvent) -> bool:
        """Fan out locally, then mirror to Redis."""
        accepted = self.fan_out(event)
        if accepted and self.mirror_to_redis:
            await self._mirror(event)
        return accepted

    async def _mirror(self, event: TrackingEvent) -> None:
        try:
            await redis_client.publish_tracking_event(
                event.delivery_id,
                json.dumps({"origin": self.instance_id, "event": event.to_dict()}),
                json.dumps(event.to_snapshot()),
            )
        except Exception as e:
            logger.error(
                "Failed to mirror tracking event to Redis",
                extra_data={"delivery_id": event.delivery_id, "error": str(e)},
            )

    def relay(self, raw: Any) -> bool:
        """
        Fan out an event mirrored to Redis by another process (e.g. a dispatch
        worker). Returns False for own, malformed or out-of-order messages.
        """
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        try:
            envelope = json.loads(raw)
            if envelope.get("origin") == self.instance_id:
                return False
            event = TrackingEvent.from_dict(envelope["event"])
        except (ValueError, KeyError, TypeError, AttributeError, GeoInputInvalidError) as e:
            logger.warning("Malformed tracking relay message", extra_data={"error": str(e)})
            return False
        accepted = self.fan_out(event)
        if accepted and event.kind == EVENT_KIND_STATUS and event.status in TERMINAL_STATUSES:
            self.close_topic(event.delivery_id)
        return accepted

    async def run_redis_relay(self, poll_timeout: float = 1.0) -> None:
        """Forward events published by other processes until cancelled."""
        client = await redis_client.get_redis()
        pubsub = client.pubsub()
        pattern = redis_client.TRACKING_CHANNEL_PATTERN
        try:
            await pubsub.psubscribe(pattern)
            logger.info("Tracking relay subscribed", extra_data={"pattern": pattern})
            while True:
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=poll_timeout)
                if message and message["type"] == "pmessage":
                    self.relay(message["data"])
        finally:
            try:
                await pubsub.punsubscribe(pattern)
                await pubsub.aclose()
            except Exception as e:
                logger.warning("Tracking relay cleanup failed", extra_data={"error": str(e)})

    def close_topic(self, delivery_id: int) -> None:
        """Unsubscribe everyone from a finished delivery's topic."""
        for subscription in list(self._topics.get(delivery_id, ())):
            subscription.unsubscribe()
        self._last_timestamp.pop(delivery_id, None)
        self._snapshots.pop(delivery_id, None)


_hub: Optional[TrackingHub] = None


def get_tracking_hub() -> TrackingHub:
    """Process-wide hub"""
    global _hub
    if _hub is None:
        _hub = TrackingHub()
    return _hub


def reset_tracking_hub() -> None:
    """Drop the process-wide hub (tests and shutdown)."""
    global _hub
    if _hub is not None:
        for delivery_id in list(_hub._topics):
            _hub.close_topic(delivery_id)
    _hub = None
