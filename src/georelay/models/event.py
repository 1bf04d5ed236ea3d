"""Geofence boundary event and notification models."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from georelay.ingestion.normalize import normalize_timestamp, safe_str
from georelay.models._base import RelayBaseModel

EVENT_ID_ALIASES: tuple[str, ...] = ("id", "mac")
DETECT_ALIASES: tuple[str, ...] = ("detect", "type")
HOOK_ALIASES: tuple[str, ...] = ("hook", "geofence_name")
EVENT_TIME_ALIASES: tuple[str, ...] = ("time", "timestamp")


class GeofenceEvent(RelayBaseModel):
    """Canonical geofence boundary-crossing event.

    Fields not covered below are carried through unchanged from the broker
    payload.

    Parameters
    ----------
    id : str or None
        Identifier of the badge the event concerns.
    detect : str or None
        Crossing direction, usually ``"enter"`` or ``"exit"``.
    hook : str or None
        Identifier of the geofence boundary, e.g. ``geofence_{mac}_{name}``.
    timestamp : str or None
        ISO-8601 event time.
    """

    model_config = ConfigDict(extra="allow")

    id: str | None = Field(default=None, validation_alias=AliasChoices(*EVENT_ID_ALIASES))
    detect: str | None = Field(default=None, validation_alias=AliasChoices(*DETECT_ALIASES))
    hook: str | None = Field(default=None, validation_alias=AliasChoices(*HOOK_ALIASES))
    timestamp: str | None = Field(default=None, validation_alias=AliasChoices(*EVENT_TIME_ALIASES))

    @field_validator("id", "detect", "hook", mode="before")
    @classmethod
    def _coerce_str(cls, value: Any) -> str | None:
        return safe_str(value)

    @field_validator("timestamp", mode="before")
    @classmethod
    def _coerce_timestamp(cls, value: Any) -> str | None:
        return normalize_timestamp(value)


class Notification(BaseModel):
    """Popup / history notification shown to a viewer."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    message: str
    type: str
    timestamp: str
    badge_id: str | None = Field(default=None, alias="badgeId")
    geofence_name: str | None = Field(default=None, alias="geofenceName")
    created_at: datetime = Field(exclude=True)
