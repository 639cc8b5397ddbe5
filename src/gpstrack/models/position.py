"""Canonical position record."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator


class PositionRecord(BaseModel):
    """A single accepted GPS fix for a device.

    Instances are produced by :func:`gpstrack.ingestion.normalize.normalize_position`;
    constructing one directly still enforces the coordinate ranges.

    Parameters
    ----------
    device_id : str
        Stable identifier reported by the tracker.
    lat : float
        Latitude in degrees.
    lng : float
        Longitude in degrees.
    speed : float
        Ground speed in km/h.
    heading : int
        Course over ground in degrees, 0-359.
    sats : int
        Satellites used for the fix.
    timestamp : int
        Fix time as epoch milliseconds.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    device_id: str = Field(..., min_length=1)
    lat: float = Field(..., ge=-90.0, le=90.0)
    lng: float = Field(..., ge=-180.0, le=180.0)
    speed: float = 0.0
    heading: int = Field(default=0, ge=0, le=359)
    sats: int = Field(default=0, ge=0)
    timestamp: int

    @field_validator("device_id")
    @classmethod
    def _normalize_device_id(cls, value: str) -> str:
        device_id = value.strip()
        if not device_id:
            raise ValueError("device_id must be non-empty")
        return device_id

    def is_online(self, now_ms: int, window_s: int) -> bool:
        """Whether this fix is newer than ``window_s`` seconds before ``now_ms``."""
        return self.timestamp > now_ms - window_s * 1000
