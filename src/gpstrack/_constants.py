"""Internal constants shared across the package."""

DEVICE_TOKEN_HEADER = "X-Device-Token"
DEVICE_TOKEN_QUERY = "token"

DEFAULT_HISTORY_POINTS = 500
DEFAULT_ONLINE_WINDOW_S = 60
DEFAULT_HISTORY_LIMIT = 100

MQTT_TOPIC = "track/#"
#: Bounds (seconds) for paho's exponential reconnect backoff.
MQTT_RECONNECT_MIN_DELAY = 1
MQTT_RECONNECT_MAX_DELAY = 30

# Outbound messages a single subscriber may have pending before it is dropped.
SUBSCRIBER_QUEUE_SIZE = 256
# Records waiting for the SQLite writer before new ones are dropped.
PERSIST_QUEUE_SIZE = 10_000
# MQTT messages waiting for the event loop before new ones are dropped.
MQTT_QUEUE_SIZE = 1_000

MISSING_FIELDS_MESSAGE = "Missing required fields: device_id, lat, lng"
INVALID_TOKEN_MESSAGE = "Invalid device token"
