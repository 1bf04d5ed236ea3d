"""Internal constants shared across the library."""

DEFAULT_BROKER = "mqtt://iot.mongrov.net:1883"
DEFAULT_TOPIC_BADGES = "old/assets/+/location"
DEFAULT_TOPIC_GEOFENCE = "geofence/+"
DEFAULT_PUBLISH_PREFIX = "old"

MQTT_PORT = 1883
MQTTS_PORT = 8883

# Broker link timings (seconds).
CONNECT_TIMEOUT = 30.0
RECONNECT_PERIOD = 5.0
KEEPALIVE = 60

# ------------------------------------------------------------------
# Viewer state caps
# ------------------------------------------------------------------

MAX_BADGE_HISTORY = 50
MAX_EVENT_LOG = 100
MAX_NOTIFICATION_HISTORY = 1000

NOTIFICATION_TTL_SECONDS = 8.0
SUBSCRIBER_QUEUE_SIZE = 256

# Viewport zoom bounds for building-scale geofences.
MIN_ZOOM = 18
MAX_ZOOM = 21
FIRST_GEOFENCE_MIN_ZOOM = 19

NOTIFY_DETECTS: frozenset[str] = frozenset({"enter", "exit"})

# Blob-store keys used to persist viewer geofences and floor-plan overlays.
GEOFENCES_STORAGE_KEY = "geofence-visualizer-geofences"
IMAGE_OVERLAYS_STORAGE_KEY = "geofence-visualizer-image-overlays"
EXPORT_FORMAT_VERSION = "1.0"
