"""Deterministic in-memory viewer state store.

This is the only component allowed to merge incoming bus messages into a
viewer's badges, geofences, event log and notifications.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta
from typing import Any

from pydantic import ValidationError

from georelay._constants import (
    EXPORT_FORMAT_VERSION,
    FIRST_GEOFENCE_MIN_ZOOM,
    GEOFENCES_STORAGE_KEY,
    IMAGE_OVERLAYS_STORAGE_KEY,
    MAX_BADGE_HISTORY,
    MAX_EVENT_LOG,
    MAX_NOTIFICATION_HISTORY,
    NOTIFICATION_TTL_SECONDS,
)
from georelay.geometry import Viewport, compute_viewport
from georelay.ingestion.normalize import format_timestamp
from georelay.models.badge import Badge, BadgeUpdate, HistoryPoint
from georelay.models.event import GeofenceEvent, Notification
from georelay.models.geofence import Geofence, ImageOverlay
from georelay.state.events import BusEvent, BusMessage
from georelay.state.persistence import BlobStore
from georelay.state.policy import (
    append_bounded,
    display_geofence_name,
    notification_message,
    push_newest_first,
    should_notify,
)

_logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _new_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class ImportResult:
    """Counts of records accepted by :meth:`StateStore.import_config`."""

    image_overlays: int = 0
    geofences: int = 0


def _valid_geofences(items: Iterable[Any]) -> list[Geofence]:
    accepted: list[Geofence] = []
    for item in items:
        try:
            accepted.append(item if isinstance(item, Geofence) else Geofence.model_validate(item))
        except ValidationError:
            _logger.debug("Skipping invalid geofence %r", item, exc_info=True)
    return accepted


def _valid_overlays(items: Iterable[Any]) -> list[ImageOverlay]:
    accepted: list[ImageOverlay] = []
    for item in items:
        try:
            accepted.append(item if isinstance(item, ImageOverlay) else ImageOverlay.model_validate(item))
        except ValidationError:
            _logger.debug("Skipping invalid image overlay %r", item, exc_info=True)
    return accepted


class StateStore:
    """In-memory state of one viewer.

    The store is designed to be deterministic: given the same sequence of
    bus messages (and the same clock), it produces the same state. It has a
    single owner; callers must serialize mutations (see
    :class:`georelay.viewer.ViewerSession`).
    """

    def __init__(
        self,
        *,
        clock: Callable[[], datetime] = _utcnow,
        id_factory: Callable[[], str] = _new_id,
        notification_ttl: timedelta = timedelta(seconds=NOTIFICATION_TTL_SECONDS),
        blob_store: BlobStore | None = None,
    ) -> None:
        self._clock = clock
        self._id_factory = id_factory
        self._notification_ttl = notification_ttl
        self._blob_store = blob_store
        self._badges: dict[str, Badge] = {}
        self._geofences: dict[str, Geofence] = {}
        self._image_overlays: list[ImageOverlay] = []
        self._events: list[dict[str, Any]] = []
        self._notifications: list[Notification] = []
        self._notification_history: list[Notification] = []
        self._viewport: Viewport | None = None
        if blob_store is not None:
            self.load_persisted()

    def _now_iso(self) -> str:
        return format_timestamp(self._clock())

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def badges(self) -> dict[str, Badge]:
        return dict(self._badges)

    def get_badge(self, mac: str) -> Badge | None:
        return self._badges.get(mac)

    @property
    def geofences(self) -> dict[str, Geofence]:
        return dict(self._geofences)

    @property
    def image_overlays(self) -> list[ImageOverlay]:
        return list(self._image_overlays)

    @property
    def events(self) -> list[dict[str, Any]]:
        """Event log, newest first."""
        return list(self._events)

    @property
    def notification_history(self) -> list[Notification]:
        """Enter/exit notifications, newest first."""
        return list(self._notification_history)

    @property
    def viewport(self) -> Viewport | None:
        return self._viewport

    def active_notifications(self) -> list[Notification]:
        """Popup notifications that have not yet expired or been dismissed."""
        self._prune_notifications()
        return list(self._notifications)

    def _prune_notifications(self) -> None:
        cutoff = self._clock() - self._notification_ttl
        self._notifications = [n for n in self._notifications if n.created_at > cutoff]

    # ------------------------------------------------------------------
    # Bus messages
    # ------------------------------------------------------------------

    def apply(self, message: BusMessage) -> bool:
        """Apply one bus message.

        Returns ``False`` when the message was ignored or its mutation failed.
        Failures are logged and leave the state untouched.
        """
        handlers: dict[str, Callable[[Mapping[str, Any]], Any]] = {
            BusEvent.BADGE_UPDATE: self.apply_badge_update,
            BusEvent.GEOFENCE_EVENT: self.apply_geofence_event,
            BusEvent.GEOFENCE_DATA: self.upsert_geofence,
            BusEvent.PUBLISH_SUCCESS: self._apply_publish_success,
            BusEvent.PUBLISH_ERROR: self._apply_publish_error,
        }
        handler = handlers.get(message.event)
        if handler is None:
            _logger.debug("Ignoring unknown bus event %s", message.event)
            return False
        try:
            handler(message.data)
        except Exception:
            _logger.warning("Failed to apply %s; mutation skipped", message.event, exc_info=True)
            return False
        return True

    def apply_badge_update(self, data: BadgeUpdate | Mapping[str, Any]) -> Badge:
        """Merge a location update into the badge it names.

        Unknown badges are created with empty history and status. Only
        non-null incoming fields overwrite; the new position is appended to
        the bounded history.
        """
        update = data if isinstance(data, BadgeUpdate) else BadgeUpdate.model_validate(dict(data))
        existing = self._badges.get(update.mac)

        merged: dict[str, Any] = existing.model_dump() if existing is not None else {"mac": update.mac}
        patch = update.model_dump(exclude_none=True)
        patch.pop("mac", None)
        merged.update(patch)

        timestamp = update.timestamp or self._now_iso()
        merged["timestamp"] = timestamp
        history = existing.history if existing is not None else []
        merged["history"] = append_bounded(
            history,
            HistoryPoint(lat=update.latitude, lon=update.longitude, time=timestamp),
            MAX_BADGE_HISTORY,
        )

        badge = Badge.model_validate(merged)
        self._badges[badge.mac] = badge
        return badge

    def apply_geofence_event(self, data: GeofenceEvent | Mapping[str, Any]) -> dict[str, Any]:
        """Log a boundary event, notify on enter/exit, and update badge status."""
        event = data if isinstance(data, GeofenceEvent) else GeofenceEvent.model_validate(dict(data))
        record = event.to_payload()
        record.setdefault("timestamp", self._now_iso())

        geofence_name = display_geofence_name(event.hook)
        notification: Notification | None = None
        if should_notify(event.detect):
            badge_id = event.id or "unknown"
            notification = Notification(
                id=self._id_factory(),
                message=notification_message(badge_id, geofence_name, str(event.detect)),
                type=str(event.detect),
                timestamp=self._now_iso(),
                badge_id=badge_id,
                geofence_name=geofence_name,
                created_at=self._clock(),
            )

        badge: Badge | None = None
        existing = self._badges.get(event.id) if event.id else None
        if existing is not None:
            status = dict(existing.status)
            if event.hook and event.detect:
                status[event.hook] = event.detect
            badge = existing.model_copy(update={"status": status, "last_event": record})

        self._events = push_newest_first(self._events, record, MAX_EVENT_LOG)
        if notification is not None:
            self._prune_notifications()
            self._notifications = [*self._notifications, notification]
            self._notification_history = push_newest_first(
                self._notification_history, notification, MAX_NOTIFICATION_HISTORY
            )
        if badge is not None:
            self._badges[badge.mac] = badge
        return record

    def _push_popup(self, message: str, kind: str) -> Notification:
        notification = Notification(
            id=self._id_factory(),
            message=message,
            type=kind,
            timestamp=self._now_iso(),
            created_at=self._clock(),
        )
        self._prune_notifications()
        self._notifications = [*self._notifications, notification]
        return notification

    def _apply_publish_success(self, data: Mapping[str, Any]) -> Notification:
        return self._push_popup(
            f"Successfully published badge location to MQTT topic: {data.get('topic')}",
            "success",
        )

    def _apply_publish_error(self, data: Mapping[str, Any]) -> Notification:
        return self._push_popup(f"Failed to publish to MQTT: {data.get('error')}", "error")

    def dismiss_notification(self, notification_id: str) -> None:
        self._notifications = [n for n in self._notifications if n.id != notification_id]

    def clear_notification_history(self) -> None:
        self._notification_history = []

    # ------------------------------------------------------------------
    # Badges
    # ------------------------------------------------------------------

    def add_badge(self, mac: str, latitude: float, longitude: float, radius: float | None = None) -> Badge:
        """Create (or reset) a badge with empty history and status."""
        badge = Badge(
            mac=mac,
            latitude=latitude,
            longitude=longitude,
            radius=radius,
            timestamp=self._now_iso(),
        )
        self._badges[mac] = badge
        return badge

    def delete_badge(self, mac: str) -> bool:
        return self._badges.pop(mac, None) is not None

    # ------------------------------------------------------------------
    # Geofences
    # ------------------------------------------------------------------

    def upsert_geofence(self, data: Geofence | Mapping[str, Any]) -> Geofence:
        """Create or wholesale replace a geofence by name.

        Adding the first geofence fits the viewport around it.
        """
        geofence = data if isinstance(data, Geofence) else Geofence.model_validate(dict(data))
        candidate = {**self._geofences, geofence.name: geofence}
        viewport = compute_viewport(candidate.values()) if not self._geofences else None
        self._geofences = candidate
        if viewport is not None:
            self._viewport = replace(viewport, zoom=max(FIRST_GEOFENCE_MIN_ZOOM, viewport.zoom))
        self._save_geofences()
        return geofence

    def delete_geofence(self, name: str) -> bool:
        removed = self._geofences.pop(name, None) is not None
        if removed:
            self._save_geofences()
        return removed

    def replace_geofences(self, items: Iterable[Geofence | Mapping[str, Any]]) -> list[Geofence]:
        """Bulk replace every geofence and refit the viewport."""
        accepted = _valid_geofences(items)
        self._commit_geofences({geofence.name: geofence for geofence in accepted})
        self._save_geofences()
        return accepted

    def fit_viewport(self) -> Viewport | None:
        """Recompute the viewport around all geofences."""
        viewport = compute_viewport(self._geofences.values())
        if viewport is not None:
            self._viewport = viewport
        return viewport

    def _commit_geofences(self, geofences: dict[str, Geofence]) -> None:
        # Fit first so a geometry error leaves the current map in place.
        viewport = compute_viewport(geofences.values())
        self._geofences = geofences
        if viewport is not None:
            self._viewport = viewport

    # ------------------------------------------------------------------
    # Image overlays
    # ------------------------------------------------------------------

    def add_image_overlay(self, data: ImageOverlay | Mapping[str, Any]) -> ImageOverlay:
        overlay = data if isinstance(data, ImageOverlay) else ImageOverlay.model_validate(dict(data))
        self._image_overlays = [*self._image_overlays, overlay]
        self._save_overlays()
        return overlay

    def update_image_overlay(self, data: ImageOverlay | Mapping[str, Any]) -> bool:
        overlay = data if isinstance(data, ImageOverlay) else ImageOverlay.model_validate(dict(data))
        updated = False
        overlays: list[ImageOverlay] = []
        for current in self._image_overlays:
            if current.id == overlay.id:
                overlays.append(overlay)
                updated = True
            else:
                overlays.append(current)
        if updated:
            self._image_overlays = overlays
            self._save_overlays()
        return updated

    def delete_image_overlay(self, overlay_id: str) -> bool:
        remaining = [o for o in self._image_overlays if o.id != overlay_id]
        removed = len(remaining) != len(self._image_overlays)
        if removed:
            self._image_overlays = remaining
            self._save_overlays()
        return removed

    # ------------------------------------------------------------------
    # Bulk load / import / export
    # ------------------------------------------------------------------

    def load_test_data(self, data: Mapping[str, Any]) -> None:
        """Replace badges and/or geofences from a test-data document.

        Badges are reset to empty history and status.
        """
        badges = data.get("badges")
        if isinstance(badges, list):
            loaded: dict[str, Badge] = {}
            for item in badges:
                try:
                    badge = Badge.model_validate({**item, "history": [], "status": {}})
                except (TypeError, ValidationError):
                    _logger.debug("Skipping invalid test badge %r", item, exc_info=True)
                    continue
                loaded[badge.mac] = badge
            self._badges = loaded

        geofences = data.get("geofences")
        if isinstance(geofences, list):
            self.replace_geofences(geofences)

    def import_config(
        self,
        document: Any,
        *,
        replace_overlays: bool = True,
        replace_geofences: bool = True,
    ) -> ImportResult:
        """Import image overlays and geofences from an exported document.

        Accepts ``{"imageOverlays": [...], "geofences": [...]}`` or a bare list
        of image overlays. Each section either replaces the current entries or
        merges into them (overlays by id, keeping existing ones; geofences by
        name, incoming ones winning).

        Raises :class:`ValueError` for any other document shape.
        """
        if isinstance(document, Mapping) and ("imageOverlays" in document or "geofences" in document):
            overlays_data = document.get("imageOverlays")
            geofences_data = document.get("geofences")
        elif isinstance(document, list):
            overlays_data, geofences_data = document, None
        else:
            raise ValueError("Expected an object with imageOverlays and/or geofences, or an array of image overlays")

        overlay_count = 0
        if isinstance(overlays_data, list):
            overlays = _valid_overlays(overlays_data)
            if overlays:
                if replace_overlays:
                    self._image_overlays = overlays
                else:
                    known = {o.id for o in self._image_overlays}
                    self._image_overlays = [*self._image_overlays, *(o for o in overlays if o.id not in known)]
                overlay_count = len(overlays)
                self._save_overlays()

        geofence_count = 0
        if isinstance(geofences_data, list):
            geofences = _valid_geofences(geofences_data)
            if geofences:
                current = {} if replace_geofences else dict(self._geofences)
                current.update({g.name: g for g in geofences})
                self._commit_geofences(current)
                geofence_count = len(geofences)
                self._save_geofences()

        _logger.info("Imported %d image overlay(s) and %d geofence(s)", overlay_count, geofence_count)
        return ImportResult(image_overlays=overlay_count, geofences=geofence_count)

    def export_config(self) -> dict[str, Any]:
        """Export image overlays and geofences in the import document format."""
        return {
            "imageOverlays": [o.model_dump(mode="json") for o in self._image_overlays],
            "geofences": [g.to_payload() for g in self._geofences.values()],
            "version": EXPORT_FORMAT_VERSION,
            "exportedAt": self._now_iso(),
        }

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load_persisted(self) -> None:
        """Load geofences and image overlays from the attached blob store."""
        store = self._blob_store
        if store is None:
            return
        try:
            geofences_blob = store.load(GEOFENCES_STORAGE_KEY)
            if geofences_blob:
                parsed = json.loads(geofences_blob)
                if isinstance(parsed, list):
                    self._geofences = {g.name: g for g in _valid_geofences(parsed)}
            overlays_blob = store.load(IMAGE_OVERLAYS_STORAGE_KEY)
            if overlays_blob:
                parsed = json.loads(overlays_blob)
                if isinstance(parsed, list):
                    self._image_overlays = _valid_overlays(parsed)
        except Exception:
            _logger.warning("Error loading persisted viewer state", exc_info=True)

    def _save(self, key: str, items: list[dict[str, Any]]) -> None:
        store = self._blob_store
        if store is None:
            return
        try:
            store.save(key, json.dumps(items))
        except Exception:
            _logger.warning("Error saving %s", key, exc_info=True)

    def _save_geofences(self) -> None:
        self._save(GEOFENCES_STORAGE_KEY, [g.to_payload() for g in self._geofences.values()])

    def _save_overlays(self) -> None:
        self._save(IMAGE_OVERLAYS_STORAGE_KEY, [o.model_dump(mode="json") for o in self._image_overlays])
