"""Bus messages exchanged between the relay and its viewers.

All broker ingestion paths convert their inputs into these messages. Only
the state/store layer is allowed to merge them into viewer state.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class BusEvent(StrEnum):
    """Event names broadcast from the relay to viewers."""

    BADGE_UPDATE = "badge_update"
    GEOFENCE_EVENT = "geofence_event"
    GEOFENCE_DATA = "geofence_data"
    PUBLISH_SUCCESS = "publish_success"
    PUBLISH_ERROR = "publish_error"


class ViewerRequest(StrEnum):
    """Event names sent from a viewer to the relay."""

    TEST_BADGE_UPDATE = "test_badge_update"
    PUBLISH_BADGE_LOCATION = "publish_badge_location"
    REQUEST_GEOFENCES = "request_geofences"


class BusMessage(BaseModel):
    """One frame on the fan-out channel: ``{"event": ..., "data": ...}``."""

    model_config = ConfigDict(frozen=True)

    event: str
    data: dict[str, Any] = Field(default_factory=dict)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json")
