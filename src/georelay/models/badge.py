"""Badge location models."""

from __future__ import annotations

from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from georelay.ingestion.normalize import normalize_timestamp, safe_float, safe_str
from georelay.models._base import RelayBaseModel

# Ordered alias lists; the first alias carrying a value wins.
MAC_ALIASES: tuple[str, ...] = ("mac", "id", "device_id")
LATITUDE_ALIASES: tuple[str, ...] = ("latitude", "lat")
LONGITUDE_ALIASES: tuple[str, ...] = ("longitude", "lon")
TIMESTAMP_ALIASES: tuple[str, ...] = ("sent_ts", "receive_ts", "timestamp")


class BadgeUpdate(RelayBaseModel):
    """Canonical badge location record.

    Parameters
    ----------
    mac : str
        Device identifier; the badge key.
    latitude : float
        Latitude in degrees.
    longitude : float
        Longitude in degrees.
    radius : float or None
        Location uncertainty radius in feet.
    timestamp : str or None
        ISO-8601 time of the fix. Filled with the arrival time by the
        normalizer when the payload carries none.
    """

    mac: str = Field(validation_alias=AliasChoices(*MAC_ALIASES))
    latitude: float = Field(validation_alias=AliasChoices(*LATITUDE_ALIASES))
    longitude: float = Field(validation_alias=AliasChoices(*LONGITUDE_ALIASES))
    radius: float | None = None
    timestamp: str | None = Field(default=None, validation_alias=AliasChoices(*TIMESTAMP_ALIASES))

    device_id: str | None = None
    location_id: str | None = None
    floor: Any = None
    confidence: float | None = None
    map_view: Any = None
    gateways: list[Any] | None = None

    @field_validator("mac", "device_id", "location_id", mode="before")
    @classmethod
    def _coerce_str(cls, value: Any) -> str | None:
        return safe_str(value)

    @field_validator("latitude", "longitude", "radius", "confidence", mode="before")
    @classmethod
    def _coerce_floats(cls, value: Any) -> float | None:
        return safe_float(value)

    @field_validator("timestamp", mode="before")
    @classmethod
    def _coerce_timestamp(cls, value: Any) -> str | None:
        return normalize_timestamp(value)


class HistoryPoint(BaseModel):
    """One past position of a badge."""

    model_config = ConfigDict(frozen=True)

    lat: float
    lon: float
    time: str | None = None


class Badge(BaseModel):
    """Viewer-side badge entity.

    Mutated only by :class:`georelay.state.store.StateStore`.
    """

    model_config = ConfigDict(extra="forbid")

    mac: str
    latitude: float | None = None
    longitude: float | None = None
    radius: float | None = None
    timestamp: str | None = None
    device_id: str | None = None
    location_id: str | None = None
    floor: Any = None
    confidence: float | None = None
    map_view: Any = None
    gateways: list[Any] | None = None
    history: list[HistoryPoint] = Field(default_factory=list)
    status: dict[str, str] = Field(default_factory=dict)
    last_event: dict[str, Any] | None = None
