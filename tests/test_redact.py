from __future__ import annotations

from gpstrack._redact import redact_for_log, redact_url


def test_redact_for_log_redacts_sensitive_keys() -> None:
    payload = {
        "device_id": "TEST_001",
        "lat": 40.7128,
        "token": "default_token",
        "X-Device-Token": "default_token",
        "nested": {"mqtt_password": "pw", "Authorization": "Bearer x"},
    }

    redacted = redact_for_log(payload)
    assert redacted["device_id"] == "TEST_001"
    assert redacted["lat"] == 40.7128
    assert redacted["token"] == "<redacted>"
    assert redacted["X-Device-Token"] == "<redacted>"
    assert redacted["nested"]["mqtt_password"] == "<redacted>"
    assert redacted["nested"]["Authorization"] == "<redacted>"
    assert payload["token"] == "default_token"


def test_redact_for_log_truncates_long_strings() -> None:
    long_value = "x" * 600
    redacted = redact_for_log({"value": long_value}, max_string=10)
    assert redacted["value"].startswith("x" * 10)
    assert "<truncated>" in redacted["value"]


def test_redact_for_log_summarizes_bytes() -> None:
    assert redact_for_log(b"\x00\x01\x02") == "<bytes:3b>"


def test_redact_url_masks_token_query_parameters() -> None:
    assert redact_url("/api/track?token=s3cret") == "/api/track?token=<redacted>"
    assert redact_url("/api/track?a=1&TOKEN=s3cret&b=2") == "/api/track?a=1&TOKEN=<redacted>&b=2"
    assert redact_url("/api/positions?tokens=1") == "/api/positions?tokens=1"
