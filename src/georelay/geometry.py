"""Viewport fitting for sets of geofence polygons."""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from georelay._constants import MAX_ZOOM, MIN_ZOOM
from georelay.models.geofence import Geofence, PolygonGeometry

# (max span in degrees, zoom); first matching row wins. Tuned for
# building-scale geofences rather than city-scale maps.
_ZOOM_TABLE: tuple[tuple[float, int], ...] = (
    (0.0001, 21),
    (0.0005, 20),
    (0.001, 19),
    (0.002, 19),
    (0.005, 18),
    (0.01, 17),
    (0.02, 16),
)
_FALLBACK_ZOOM = 15


@dataclass(frozen=True)
class Viewport:
    center_lat: float
    center_lon: float
    zoom: int


def zoom_for_span(span: float) -> int:
    """Discrete zoom level for a bounding-box span, clamped to the indoor range."""
    zoom = _FALLBACK_ZOOM
    for threshold, level in _ZOOM_TABLE:
        if span <= threshold:
            zoom = level
            break
    return min(MAX_ZOOM, max(MIN_ZOOM, zoom))


def _is_position(value: Any) -> bool:
    return isinstance(value, (list, tuple)) and bool(value) and isinstance(value[0], (int, float))


def _iter_rings(polygon: Any) -> Iterable[Any]:
    if isinstance(polygon, Geofence):
        polygon = polygon.polygon
    if isinstance(polygon, PolygonGeometry):
        return polygon.rings()
    if isinstance(polygon, Mapping):
        if "ring" in polygon:
            rings = polygon.get("ring") or []
            # A single flat ring is accepted as well as a list of rings.
            return [rings] if rings and _is_position(rings[0]) else rings
        coords = polygon.get("coordinates") or []
        if polygon.get("type") == "MultiPolygon":
            return [ring for member in coords for ring in member]
        return coords
    return []


def compute_viewport(polygons: Iterable[Any]) -> Viewport | None:
    """Fit a viewport around every coordinate of every polygon ring.

    Accepts :class:`Geofence` / :class:`PolygonGeometry` instances, GeoJSON
    geometry mappings, or ``{"ring": [[[lon, lat], ...], ...]}`` mappings whose
    ``ring`` holds a list of rings (a single ring is also accepted). Polygons
    without coordinates are skipped. Returns ``None`` when no coordinate was
    seen.
    """
    min_lat = min_lon = math.inf
    max_lat = max_lon = -math.inf

    for polygon in polygons:
        for ring in _iter_rings(polygon):
            for coord in ring:
                if len(coord) < 2:
                    continue
                lon, lat = coord[0], coord[1]
                min_lat = min(min_lat, lat)
                max_lat = max(max_lat, lat)
                min_lon = min(min_lon, lon)
                max_lon = max(max_lon, lon)

    if min_lat == math.inf:
        return None

    max_span = max(max_lat - min_lat, max_lon - min_lon)
    return Viewport(
        center_lat=(min_lat + max_lat) / 2,
        center_lon=(min_lon + max_lon) / 2,
        zoom=zoom_for_span(max_span),
    )
