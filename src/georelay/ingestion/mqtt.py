"""MQTT ingestion helpers.

This module translates raw broker messages into canonical bus messages.
Apart from logging it is side-effect free: the same topic, payload and
arrival time always produce the same record.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from georelay._redact import redact_for_log
from georelay.exceptions import MalformedMessageError
from georelay.ingestion.normalize import is_meaningful, mac_from_topic, utc_now_iso
from georelay.models.badge import LATITUDE_ALIASES, LONGITUDE_ALIASES, MAC_ALIASES, BadgeUpdate
from georelay.models.event import EVENT_ID_ALIASES, HOOK_ALIASES, GeofenceEvent
from georelay.state.events import BusEvent, BusMessage

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RawMessage:
    """A message exactly as delivered by the broker."""

    topic: str
    payload: bytes


def decode_payload(topic: str, payload: bytes | str) -> dict[str, Any]:
    """Parse a broker payload into a JSON object.

    Raises :class:`MalformedMessageError` for undecodable bytes, invalid
    JSON, or JSON that is not an object.
    """
    try:
        text = payload.decode("utf-8") if isinstance(payload, (bytes, bytearray)) else payload
        parsed = json.loads(text)
    except (UnicodeDecodeError, ValueError) as exc:
        raise MalformedMessageError(f"Invalid JSON payload: {exc}", topic=topic) from exc
    if not isinstance(parsed, dict):
        raise MalformedMessageError("Payload is not a JSON object", topic=topic)
    return parsed


def _has_any(payload: dict[str, Any], aliases: tuple[str, ...]) -> bool:
    return any(is_meaningful(payload.get(alias)) for alias in aliases)


def _first(payload: dict[str, Any], aliases: tuple[str, ...]) -> Any:
    for alias in aliases:
        value = payload.get(alias)
        if is_meaningful(value):
            return value
    return None


def build_badge_update(topic: str, payload: dict[str, Any], *, received_at: str) -> BadgeUpdate | None:
    """Build a canonical badge record, or ``None`` when the payload is unusable."""
    data = dict(payload)
    if not _has_any(data, MAC_ALIASES):
        topic_mac = mac_from_topic(topic)
        if topic_mac is not None:
            data["mac"] = topic_mac

    try:
        update = BadgeUpdate.model_validate(data)
    except ValidationError:
        _logger.warning(
            "Invalid badge data on %s - missing mac, latitude, or longitude: mac=%s lat=%s lon=%s",
            topic,
            _first(data, MAC_ALIASES),
            _first(data, LATITUDE_ALIASES),
            _first(data, LONGITUDE_ALIASES),
        )
        return None

    if update.timestamp is None:
        update = update.model_copy(update={"timestamp": received_at})
    return update


def build_geofence_event(topic: str, payload: dict[str, Any], *, received_at: str) -> GeofenceEvent:
    """Build a canonical geofence event; every JSON object is accepted."""
    data = dict(payload)
    if not _has_any(data, EVENT_ID_ALIASES):
        topic_mac = mac_from_topic(topic)
        if topic_mac is not None:
            data["id"] = topic_mac
    if not _has_any(data, HOOK_ALIASES):
        data["hook"] = topic

    event = GeofenceEvent.model_validate(data)
    if event.timestamp is None:
        event = event.model_copy(update={"timestamp": received_at})
    return event


def normalize_message(
    topic: str,
    payload: bytes | str,
    *,
    received_at: str | None = None,
) -> BusMessage | None:
    """Translate one broker message into a bus message.

    Returns ``None`` when the message is dropped: malformed JSON, a location
    update without mac or numeric coordinates, or a topic that is neither a
    location nor a geofence topic.
    """
    arrival = received_at or utc_now_iso()
    _logger.debug("Received MQTT message topic=%s content=%s", topic, redact_for_log(payload))

    try:
        decoded = decode_payload(topic, payload)
    except MalformedMessageError:
        _logger.warning(
            "Error parsing MQTT message topic=%s message=%s",
            topic,
            redact_for_log(payload),
            exc_info=True,
        )
        return None

    if "location" in topic:
        update = build_badge_update(topic, decoded, received_at=arrival)
        if update is None:
            return None
        return BusMessage(event=BusEvent.BADGE_UPDATE, data=update.to_payload())

    if "geofence" in topic:
        try:
            event = build_geofence_event(topic, decoded, received_at=arrival)
        except ValidationError:
            _logger.warning("Invalid geofence event on %s: %s", topic, redact_for_log(decoded), exc_info=True)
            return None
        return BusMessage(event=BusEvent.GEOFENCE_EVENT, data=event.to_payload())

    _logger.debug("Ignoring message on unrecognized topic %s", topic)
    return None
