"""In-process fan-out bus between the broker connector and viewers.

Owns:
- the set of subscribers and their bounded delivery queues
- broadcast of canonical records to every subscriber
- viewer requests (publish to broker, test updates) and their replies
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from collections.abc import AsyncIterator, Mapping
from typing import Any, Protocol

from pydantic import ValidationError

from georelay._constants import SUBSCRIBER_QUEUE_SIZE
from georelay._redact import redact_for_log
from georelay.exceptions import NotConnectedError, PublishFailureError
from georelay.ingestion.normalize import safe_float, safe_str, utc_now_iso
from georelay.models.badge import TIMESTAMP_ALIASES, BadgeUpdate
from georelay.state.events import BusEvent, BusMessage, ViewerRequest

_logger = logging.getLogger(__name__)

_subscription_ids = itertools.count(1)


class BrokerLink(Protocol):
    """Structural interface of the broker side used by the bus.

    Having a protocol here keeps the bus decoupled from the MQTT transport
    and makes it easy to pass test doubles.
    """

    @property
    def is_connected(self) -> bool: ...

    def publish(self, topic: str, payload: bytes) -> None: ...


class Subscription:
    """Handle of one bus subscriber.

    Messages are buffered in a bounded queue; when it is full the oldest
    buffered message is dropped so the broadcaster never waits.
    """

    def __init__(self, maxsize: int = SUBSCRIBER_QUEUE_SIZE) -> None:
        self.id = f"sub-{next(_subscription_ids)}"
        self._queue: asyncio.Queue[BusMessage | None] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def deliver(self, message: BusMessage) -> bool:
        """Queue *message* without blocking. Returns ``False`` if closed."""
        if self._closed:
            return False
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            self._queue.get_nowait()
            self._queue.put_nowait(message)
            self.dropped += 1
            if self.dropped == 1 or self.dropped % 100 == 0:
                _logger.warning("Subscriber %s is slow; dropped %d message(s)", self.id, self.dropped)
        return True

    async def get(self) -> BusMessage | None:
        """Next message, or ``None`` once the subscription is closed and drained."""
        if self._closed and self._queue.empty():
            return None
        return await self._queue.get()

    def get_nowait(self) -> BusMessage | None:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # Wake a pending reader; drop the oldest item if needed to make room.
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            self._queue.get_nowait()
            self._queue.put_nowait(None)

    async def __aiter__(self) -> AsyncIterator[BusMessage]:
        while True:
            message = await self.get()
            if message is None:
                return
            yield message


def _validate_publish_request(data: Mapping[str, Any]) -> tuple[str, float, float, float | None] | None:
    mac = safe_str(data.get("mac"))
    latitude = safe_float(data.get("latitude"))
    longitude = safe_float(data.get("longitude"))
    if mac is None or latitude is None or longitude is None:
        return None
    return mac, latitude, longitude, safe_float(data.get("radius"))


class FanoutBus:
    """Broadcasts canonical records to every subscriber."""

    def __init__(
        self,
        *,
        broker: BrokerLink,
        publish_prefix: str = "old",
        queue_size: int = SUBSCRIBER_QUEUE_SIZE,
    ) -> None:
        self._broker = broker
        self._publish_prefix = publish_prefix
        self._queue_size = queue_size
        self._subscribers: dict[str, Subscription] = {}

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> Subscription:
        """Register a subscriber receiving every subsequent broadcast."""
        subscription = Subscription(self._queue_size)
        self._subscribers[subscription.id] = subscription
        _logger.info("Client connected: %s", subscription.id)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.close()
        if self._subscribers.pop(subscription.id, None) is not None:
            _logger.info("Client disconnected: %s", subscription.id)

    def close(self) -> None:
        """Close every subscription; readers drain and then stop."""
        for subscription in list(self._subscribers.values()):
            self.unsubscribe(subscription)

    def broadcast(self, message: BusMessage) -> int:
        """Deliver *message* to every open subscriber; returns the delivery count."""
        delivered = 0
        for subscription in list(self._subscribers.values()):
            if subscription.deliver(message):
                delivered += 1
            else:
                self._subscribers.pop(subscription.id, None)
        _logger.debug("Broadcast %s to %d subscriber(s)", message.event, delivered)
        return delivered

    def emit(self, event: BusEvent, data: Mapping[str, Any]) -> int:
        return self.broadcast(BusMessage(event=event, data=dict(data)))

    # ------------------------------------------------------------------
    # Viewer requests
    # ------------------------------------------------------------------

    def publish_topic(self, mac: str) -> str:
        return f"{self._publish_prefix}/assets/{mac}/location"

    def publish_request(self, subscription: Subscription, data: Mapping[str, Any]) -> BusMessage:
        """Republish a viewer's badge location to the broker.

        The acknowledgement (``publish_success`` or ``publish_error``) is
        delivered to *subscription* only and returned.
        """
        reply = self._publish(data)
        subscription.deliver(reply)
        return reply

    def _publish(self, data: Mapping[str, Any]) -> BusMessage:
        validated = _validate_publish_request(data)
        if validated is None:
            _logger.error("Invalid badge data for MQTT publish: %s", redact_for_log(dict(data)))
            return BusMessage(
                event=BusEvent.PUBLISH_ERROR,
                data={"error": "Invalid badge data: missing mac, latitude, or longitude"},
            )
        if not self._broker.is_connected:
            _logger.error("Cannot publish to MQTT: client not connected")
            return BusMessage(event=BusEvent.PUBLISH_ERROR, data={"error": "MQTT client not connected"})

        mac, latitude, longitude, radius = validated
        topic = self.publish_topic(mac)
        now = utc_now_iso()
        payload: dict[str, Any] = {"mac": mac, "latitude": latitude, "longitude": longitude}
        if radius is not None:
            payload["radius"] = radius
        payload["sent_ts"] = now
        payload["timestamp"] = now

        try:
            self._broker.publish(topic, json.dumps(payload).encode("utf-8"))
        except NotConnectedError as exc:
            _logger.error("Cannot publish to MQTT: %s", exc)
            return BusMessage(event=BusEvent.PUBLISH_ERROR, data={"error": str(exc)})
        except PublishFailureError as exc:
            _logger.error("Error publishing to MQTT topic %s: %s", topic, exc)
            return BusMessage(event=BusEvent.PUBLISH_ERROR, data={"error": str(exc)})

        _logger.info("Published badge location to MQTT topic %s", topic)
        return BusMessage(event=BusEvent.PUBLISH_SUCCESS, data={"topic": topic, "payload": payload})

    def relay_test_update(self, data: Mapping[str, Any]) -> BusMessage | None:
        """Broadcast a viewer's test location to all subscribers, bypassing the broker."""
        fields = {key: value for key, value in data.items() if key not in TIMESTAMP_ALIASES}
        try:
            update = BadgeUpdate.model_validate({**fields, "timestamp": utc_now_iso()})
        except ValidationError:
            _logger.warning("Ignoring invalid test badge update: %s", redact_for_log(dict(data)))
            return None
        message = BusMessage(event=BusEvent.BADGE_UPDATE, data=update.to_payload())
        self.broadcast(message)
        return message

    def handle_inbound(self, subscription: Subscription, event: str, data: Any) -> BusMessage | None:
        """Dispatch one viewer-to-bus message."""
        payload: Mapping[str, Any] = data if isinstance(data, Mapping) else {}
        if event == ViewerRequest.TEST_BADGE_UPDATE:
            return self.relay_test_update(payload)
        if event == ViewerRequest.PUBLISH_BADGE_LOCATION:
            return self.publish_request(subscription, payload)
        if event == ViewerRequest.REQUEST_GEOFENCES:
            # No geofence source yet; viewers add geofences locally.
            _logger.info("Geofence data requested by %s", subscription.id)
            return None
        _logger.debug("Ignoring unknown viewer event %s from %s", event, subscription.id)
        return None
