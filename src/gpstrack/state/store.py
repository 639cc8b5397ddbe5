"""In-memory device state store.

This is the only component allowed to mutate per-device state. It keeps the
latest fix and a bounded trail for every device seen since startup.
"""

from __future__ import annotations

import itertools
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field

from gpstrack._constants import DEFAULT_HISTORY_POINTS
from gpstrack.ingestion.normalize import now_ms as _now_ms
from gpstrack.models.position import PositionRecord


@dataclass(slots=True)
class DeviceState:
    """Latest fix and bounded trail for one device.

    Owned by :class:`DeviceStateStore`; callers must treat it as read-only.
    """

    latest: PositionRecord
    history: deque[PositionRecord] = field(default_factory=deque)
    accepted: int = 0


class DeviceStateStore:
    """In-memory store for per-device latest position and trail.

    ``apply`` is last-write-wins: the most recently accepted record becomes
    ``latest`` regardless of its timestamp. The trail is a FIFO bounded to
    ``history_points``. A single lock covers the device map so ``latest`` and
    the trail always change together.
    """

    def __init__(
        self,
        *,
        history_points: int = DEFAULT_HISTORY_POINTS,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        if history_points <= 0:
            raise ValueError("history_points must be positive")
        self._history_points = history_points
        self._clock = clock
        self._devices: dict[str, DeviceState] = {}
        self._lock = threading.Lock()

    @property
    def history_points(self) -> int:
        return self._history_points

    @property
    def device_count(self) -> int:
        with self._lock:
            return len(self._devices)

    def apply(self, record: PositionRecord) -> DeviceState:
        """Accept a normalized record for its device."""
        with self._lock:
            state = self._devices.get(record.device_id)
            if state is None:
                state = DeviceState(latest=record, history=deque(maxlen=self._history_points))
                self._devices[record.device_id] = state
            state.latest = record
            # deque(maxlen=...) evicts from the left once the bound is reached.
            state.history.append(record)
            state.accepted += 1
            return state

    def snapshot(self) -> list[PositionRecord]:
        """Latest record of every known device, in no particular order."""
        with self._lock:
            return [state.latest for state in self._devices.values()]

    def get(self, device_id: str) -> PositionRecord | None:
        with self._lock:
            state = self._devices.get(device_id)
            return state.latest if state is not None else None

    def history(self, device_id: str, limit: int | None = None) -> list[PositionRecord]:
        """In-memory trail for a device, most recent first.

        Unknown devices yield an empty list. ``limit`` of ``None`` returns the
        whole trail.
        """
        with self._lock:
            state = self._devices.get(device_id)
            if state is None:
                return []
            newest_first = reversed(state.history)
            if limit is None:
                return list(newest_first)
            return list(itertools.islice(newest_first, max(limit, 0)))

    def online_count(self, window_s: int, *, now_ms: int | None = None) -> int:
        """Number of devices whose latest fix is within ``window_s`` seconds."""
        now = self._clock() if now_ms is None else now_ms
        with self._lock:
            return sum(1 for state in self._devices.values() if state.latest.is_online(now, window_s))
