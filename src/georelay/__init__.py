"""georelay - MQTT badge telemetry and geofence event relay."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("georelay")
except PackageNotFoundError:
    __version__ = "0+local"
from georelay.bus import FanoutBus, Subscription
from georelay.config import BrokerCredentials, RelayConfig
from georelay.exceptions import (
    BrokerConnectionError,
    GeoRelayError,
    MalformedMessageError,
    NotConnectedError,
    PublishFailureError,
    RelayConfigError,
)
from georelay.geometry import Viewport, compute_viewport
from georelay.models import (
    Badge,
    BadgeUpdate,
    Geofence,
    GeofenceEvent,
    HistoryPoint,
    ImageOverlay,
    Notification,
)
from georelay.relay import RelayService
from georelay.state.events import BusEvent, BusMessage
from georelay.state.store import StateStore
from georelay.viewer import ViewerClient, ViewerSession

__all__ = [
    "__version__",
    "Badge",
    "BadgeUpdate",
    "BrokerConnectionError",
    "BrokerCredentials",
    "BusEvent",
    "BusMessage",
    "FanoutBus",
    "GeoRelayError",
    "Geofence",
    "GeofenceEvent",
    "HistoryPoint",
    "ImageOverlay",
    "MalformedMessageError",
    "NotConnectedError",
    "Notification",
    "PublishFailureError",
    "RelayConfig",
    "RelayConfigError",
    "RelayService",
    "StateStore",
    "Subscription",
    "Viewport",
    "ViewerClient",
    "ViewerSession",
    "compute_viewport",
]
