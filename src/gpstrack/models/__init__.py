"""Data models for gpstrack."""

from gpstrack.models.messages import SnapshotMessage, TrackerStats, UpdateMessage
from gpstrack.models.position import PositionRecord

__all__ = [
    "PositionRecord",
    "SnapshotMessage",
    "TrackerStats",
    "UpdateMessage",
]
