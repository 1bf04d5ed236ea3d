"""Data models for relay payloads and viewer state."""

from georelay.models._base import RelayBaseModel
from georelay.models.badge import Badge, BadgeUpdate, HistoryPoint
from georelay.models.event import GeofenceEvent, Notification
from georelay.models.geofence import Geofence, ImageOverlay, OverlayBounds, PolygonGeometry, close_line_geometry

__all__ = [
    "Badge",
    "BadgeUpdate",
    "Geofence",
    "GeofenceEvent",
    "HistoryPoint",
    "ImageOverlay",
    "Notification",
    "OverlayBounds",
    "PolygonGeometry",
    "RelayBaseModel",
    "close_line_geometry",
]
