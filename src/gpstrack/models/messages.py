"""Push-channel and stats payloads."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from gpstrack.models.position import PositionRecord


class SnapshotMessage(BaseModel):
    """Sent once to a new subscriber: the latest fix of every known device."""

    model_config = ConfigDict(frozen=True)

    type: Literal["snapshot"] = "snapshot"
    devices: list[PositionRecord]


class UpdateMessage(BaseModel):
    """Sent to every subscriber for each accepted record."""

    model_config = ConfigDict(frozen=True)

    type: Literal["update"] = "update"
    device: PositionRecord


class TrackerStats(BaseModel):
    """Aggregate counters served by ``GET /api/stats``.

    Dumped with ``by_alias=True`` so keys are camelCase
    (``totalDevices``, ``onlineWindowS`` ...), matching the dashboard client.
    """

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
    )

    total_devices: int
    total_positions: int
    online_devices: int
    ws_clients: int
    uptime: int
    history_points: int
    online_window_s: int
    http_positions: int = 0
    mqtt_positions: int = 0
