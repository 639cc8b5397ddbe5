"""Normalization helpers.

Centralizes defensive parsing of device payloads into :class:`PositionRecord`.
Required fields (``device_id``, ``lat``, ``lng``) are strict; every other
field is coerced permissively and falls back to a default.
"""

from __future__ import annotations

import math
import time
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from gpstrack.exceptions import TrackerValidationError
from gpstrack.models.position import PositionRecord

_TIMESTAMP_KEYS = ("ts", "timestamp")
# Largest value an SQLite INTEGER column can hold.
_MAX_INT64 = 2**63 - 1


def now_ms() -> int:
    """Current epoch timestamp in milliseconds."""
    return int(time.time() * 1000)


def safe_float(value: Any) -> float | None:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(result) or math.isinf(result):
        return None
    return result


def safe_int(value: Any) -> int | None:
    parsed = safe_float(value)
    if parsed is None:
        return None
    return int(parsed)


def safe_str(value: Any) -> str | None:
    if value is None or isinstance(value, bool):
        return None
    if not isinstance(value, (str, int)):
        return None
    text = str(value).strip()
    return text if text else None


def non_negative_or_zero(value: Any) -> int:
    parsed = safe_int(value)
    if parsed is None:
        return 0
    return parsed if 0 <= parsed <= _MAX_INT64 else 0


def normalize_heading(value: Any) -> int:
    """Wrap a heading into 0-359; trackers report -180..180 as often as 0..360."""
    parsed = safe_float(value)
    if parsed is None:
        return 0
    return int(round(parsed)) % 360


def _required_coordinate(payload: Mapping[str, Any], key: str, bound: float) -> float:
    value = safe_float(payload.get(key))
    if value is None:
        raise TrackerValidationError(f"{key} must be a number", field=key)
    if not -bound <= value <= bound:
        raise TrackerValidationError(f"{key} must be between {-bound:g} and {bound:g}, got {value}", field=key)
    return value


def _payload_timestamp(payload: Mapping[str, Any], default_ms: int) -> int:
    for key in _TIMESTAMP_KEYS:
        ts = safe_int(payload.get(key))
        if ts is not None and 0 < ts <= _MAX_INT64:
            return ts
    return default_ms


def has_required_fields(payload: Mapping[str, Any]) -> bool:
    """Cheap presence check used to pick the client-facing error message."""
    return all(payload.get(key) not in (None, "") for key in ("device_id", "lat", "lng"))


def normalize_position(payload: Any, *, received_at_ms: int | None = None) -> PositionRecord:
    """Validate and coerce a raw device payload.

    Parameters
    ----------
    payload
        Decoded JSON object (or form mapping) from an ingestion adapter.
    received_at_ms
        Ingestion wall-clock time used when the payload carries no usable
        ``ts``. Defaults to now.

    Raises
    ------
    TrackerValidationError
        ``device_id``, ``lat`` or ``lng`` is missing, not coercible, or the
        coordinates are out of range.
    """
    if not isinstance(payload, Mapping):
        raise TrackerValidationError("payload must be a JSON object")

    device_id = safe_str(payload.get("device_id"))
    if device_id is None:
        raise TrackerValidationError("device_id is required", field="device_id")

    lat = _required_coordinate(payload, "lat", 90.0)
    lng = _required_coordinate(payload, "lng", 180.0)

    try:
        return PositionRecord(
            device_id=device_id,
            lat=lat,
            lng=lng,
            speed=safe_float(payload.get("speed")) or 0.0,
            heading=normalize_heading(payload.get("heading")),
            sats=non_negative_or_zero(payload.get("sats")),
            timestamp=_payload_timestamp(payload, received_at_ms if received_at_ms is not None else now_ms()),
        )
    except ValidationError as exc:
        raise TrackerValidationError(f"invalid position payload: {exc.errors()[0]['msg']}") from exc
