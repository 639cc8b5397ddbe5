from __future__ import annotations

import pytest

from gpstrack.exceptions import TrackerValidationError
from gpstrack.ingestion.normalize import (
    has_required_fields,
    non_negative_or_zero,
    normalize_heading,
    normalize_position,
    safe_float,
    safe_str,
)

_NOW = 1_700_000_000_000


def test_full_payload_is_carried_through() -> None:
    record = normalize_position(
        {
            "device_id": "TEST_001",
            "lat": 40.7128,
            "lng": -74.0060,
            "speed": 25.5,
            "heading": 180,
            "sats": 12,
            "ts": 1_699_999_999_000,
        },
        received_at_ms=_NOW,
    )

    assert record.device_id == "TEST_001"
    assert record.lat == 40.7128
    assert record.lng == -74.0060
    assert record.speed == 25.5
    assert record.heading == 180
    assert record.sats == 12
    assert record.timestamp == 1_699_999_999_000


def test_optional_fields_default_to_zero_and_receive_time() -> None:
    record = normalize_position({"device_id": "D1", "lat": 1.5, "lng": 2.5}, received_at_ms=_NOW)

    assert record.speed == 0.0
    assert record.heading == 0
    assert record.sats == 0
    assert record.timestamp == _NOW


def test_zero_coordinates_are_valid() -> None:
    record = normalize_position({"device_id": "NULL_ISLAND", "lat": 0, "lng": 0}, received_at_ms=_NOW)

    assert record.lat == 0.0
    assert record.lng == 0.0


def test_numeric_strings_are_coerced() -> None:
    record = normalize_position(
        {"device_id": 42, "lat": "40.5", "lng": " -73.25 ", "speed": "10", "sats": "7"},
        received_at_ms=_NOW,
    )

    assert record.device_id == "42"
    assert record.lat == 40.5
    assert record.lng == -73.25
    assert record.speed == 10.0
    assert record.sats == 7


@pytest.mark.parametrize(
    ("payload", "field"),
    [
        ({"lat": 1, "lng": 1}, "device_id"),
        ({"device_id": "   ", "lat": 1, "lng": 1}, "device_id"),
        ({"device_id": "D1", "lng": 1}, "lat"),
        ({"device_id": "D1", "lat": "north", "lng": 1}, "lat"),
        ({"device_id": "D1", "lat": True, "lng": 1}, "lat"),
        ({"device_id": "D1", "lat": 90.5, "lng": 1}, "lat"),
        ({"device_id": "D1", "lat": 1, "lng": -180.01}, "lng"),
        ({"device_id": "D1", "lat": 1, "lng": float("nan")}, "lng"),
    ],
)
def test_invalid_required_fields_are_rejected(payload: dict, field: str) -> None:
    with pytest.raises(TrackerValidationError) as excinfo:
        normalize_position(payload, received_at_ms=_NOW)

    assert excinfo.value.field == field


def test_coordinate_bounds_are_inclusive() -> None:
    record = normalize_position({"device_id": "D1", "lat": -90, "lng": 180}, received_at_ms=_NOW)

    assert record.lat == -90.0
    assert record.lng == 180.0


def test_non_object_payload_is_rejected() -> None:
    with pytest.raises(TrackerValidationError):
        normalize_position(["D1", 1, 2], received_at_ms=_NOW)


def test_heading_wraps_into_range() -> None:
    assert normalize_heading(370) == 10
    assert normalize_heading(-90) == 270
    assert normalize_heading(359.6) == 0
    assert normalize_heading("bogus") == 0


def test_negative_satellites_become_zero() -> None:
    assert non_negative_or_zero(-3) == 0
    assert non_negative_or_zero(None) == 0
    assert non_negative_or_zero("9") == 9
    assert non_negative_or_zero(1e20) == 0


def test_unusable_timestamp_falls_back_to_receive_time() -> None:
    zero_ts = normalize_position({"device_id": "D1", "lat": 1, "lng": 1, "ts": 0}, received_at_ms=_NOW)
    junk_ts = normalize_position({"device_id": "D1", "lat": 1, "lng": 1, "ts": "later"}, received_at_ms=_NOW)
    huge_ts = normalize_position({"device_id": "D1", "lat": 1, "lng": 1, "ts": 1e20}, received_at_ms=_NOW)
    alt_key = normalize_position({"device_id": "D1", "lat": 1, "lng": 1, "timestamp": 1234}, received_at_ms=_NOW)

    assert zero_ts.timestamp == _NOW
    assert junk_ts.timestamp == _NOW
    assert huge_ts.timestamp == _NOW
    assert alt_key.timestamp == 1234


def test_has_required_fields() -> None:
    assert has_required_fields({"device_id": "D1", "lat": 0, "lng": 0})
    assert not has_required_fields({"device_id": "D1", "lat": 0})
    assert not has_required_fields({"device_id": "", "lat": 1, "lng": 1})


def test_safe_helpers_reject_non_scalars() -> None:
    assert safe_float(float("inf")) is None
    assert safe_float([1]) is None
    assert safe_str({"id": 1}) is None
    assert safe_str(False) is None
