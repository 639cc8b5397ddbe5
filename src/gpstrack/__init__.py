"""gpstrack - Real-time GPS position ingestion, history and fan-out server."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("gpstrack")
except PackageNotFoundError:
    __version__ = "0+local"
from gpstrack.broadcast import Broadcaster, Subscriber, SubscriberState
from gpstrack.config import TrackerConfig
from gpstrack.exceptions import (
    TrackerAuthError,
    TrackerConfigError,
    TrackerError,
    TrackerPersistenceError,
    TrackerTransportError,
    TrackerValidationError,
)
from gpstrack.ingestion.normalize import normalize_position
from gpstrack.models import PositionRecord, SnapshotMessage, TrackerStats, UpdateMessage
from gpstrack.persistence import HistoryWriter
from gpstrack.server import TrackerServer
from gpstrack.state.events import IngestionEvent, IngestionSource
from gpstrack.state.store import DeviceState, DeviceStateStore

__all__ = [
    "__version__",
    "Broadcaster",
    "DeviceState",
    "DeviceStateStore",
    "HistoryWriter",
    "IngestionEvent",
    "IngestionSource",
    "PositionRecord",
    "SnapshotMessage",
    "Subscriber",
    "SubscriberState",
    "TrackerAuthError",
    "TrackerConfig",
    "TrackerConfigError",
    "TrackerError",
    "TrackerPersistenceError",
    "TrackerServer",
    "TrackerStats",
    "TrackerTransportError",
    "TrackerValidationError",
    "UpdateMessage",
    "normalize_position",
]
