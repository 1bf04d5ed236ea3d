"""Geofence and floor-plan overlay models."""

from __future__ import annotations

from collections.abc import Iterator
from typing import Annotated, Any, Literal

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    ValidationInfo,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from georelay.ingestion.normalize import safe_float, safe_str

GEOFENCE_NAME_ALIASES: tuple[str, ...] = ("name", "hook", "id")
POLYGON_ALIASES: tuple[str, ...] = ("polygon", "object", "boundary")
GEOFENCE_MAC_ALIASES: tuple[str, ...] = ("mac", "device_mac")

Position = Annotated[list[float], Field(min_length=2)]
Ring = list[Position]

_POLYGON_COORDINATES: TypeAdapter[list[Ring]] = TypeAdapter(list[Ring])
_MULTIPOLYGON_COORDINATES: TypeAdapter[list[list[Ring]]] = TypeAdapter(list[list[Ring]])


def _close_ring(line: list[Any]) -> list[Any]:
    closed = list(line)
    if closed and list(closed[0][:2]) != list(closed[-1][:2]):
        closed.append(closed[0])
    return closed


def close_line_geometry(geometry: Any) -> Any:
    """Convert a GeoJSON LineString/MultiLineString into a Polygon.

    Each line becomes one ring, closed by repeating its first position when
    the last one differs. Any other input is returned unchanged.
    """
    if not isinstance(geometry, dict):
        return geometry
    kind = geometry.get("type")
    if kind not in {"LineString", "MultiLineString"}:
        return geometry
    coords = geometry.get("coordinates") or []
    lines = [coords] if kind == "LineString" else coords
    return {"type": "Polygon", "coordinates": [_close_ring(line) for line in lines]}


class PolygonGeometry(BaseModel):
    """GeoJSON Polygon or MultiPolygon.

    LineString and MultiLineString inputs are closed into a Polygon during
    validation, so a stored geometry is never a line. Every position is
    checked to be numeric at the right nesting depth.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    type: Literal["Polygon", "MultiPolygon"]
    coordinates: list[Any] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _close_lines(cls, values: Any) -> Any:
        return close_line_geometry(values)

    @field_validator("coordinates")
    @classmethod
    def _check_positions(cls, value: list[Any], info: ValidationInfo) -> list[Any]:
        kind = info.data.get("type")
        adapter = _MULTIPOLYGON_COORDINATES if kind == "MultiPolygon" else _POLYGON_COORDINATES
        try:
            return adapter.validate_python(value)
        except ValidationError as exc:
            raise ValueError(f"{kind} coordinates must be nested [lon, lat] positions") from exc

    def rings(self) -> Iterator[Ring]:
        """Yield every ring, flattening MultiPolygon members."""
        if self.type == "Polygon":
            yield from self.coordinates
            return
        for polygon in self.coordinates:
            yield from polygon


class Geofence(BaseModel):
    """Named polygonal boundary, optionally scoped to one badge."""

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
        alias_generator=to_camel,
    )

    name: str = Field(validation_alias=AliasChoices(*GEOFENCE_NAME_ALIASES))
    polygon: PolygonGeometry = Field(validation_alias=AliasChoices(*POLYGON_ALIASES))
    mac: str | None = Field(default=None, validation_alias=AliasChoices(*GEOFENCE_MAC_ALIASES))
    stroke_color: str | None = None
    stroke_width: float | None = None
    stroke_opacity: float | None = None

    @field_validator("name", "mac", "stroke_color", mode="before")
    @classmethod
    def _coerce_str(cls, value: Any) -> str | None:
        return safe_str(value)

    @field_validator("stroke_width", "stroke_opacity", mode="before")
    @classmethod
    def _coerce_floats(cls, value: Any) -> float | None:
        return safe_float(value)

    def to_payload(self) -> dict[str, Any]:
        """Serialized form, stroke style in camelCase and unset values as ``null``."""
        return self.model_dump(mode="json", by_alias=True)


class OverlayBounds(BaseModel):
    model_config = ConfigDict(frozen=True)

    south: float
    north: float
    west: float
    east: float


class ImageOverlay(BaseModel):
    """Floor-plan image pinned to geographic bounds."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    name: str
    url: str
    bounds: OverlayBounds
    opacity: float = 0.7

    @field_validator("id", "name", "url", mode="before")
    @classmethod
    def _require_text(cls, value: Any) -> str:
        text = safe_str(value)
        if text is None:
            raise ValueError("must be a non-empty string")
        return text
