from __future__ import annotations

import pytest

from gpstrack.cli import _parse_args, build_config, main
from gpstrack.config import TrackerConfig
from gpstrack.exceptions import TrackerConfigError

_ENV_KEYS = (
    "HOST",
    "PORT",
    "PUBLIC_ORIGIN",
    "SQLITE_FILE",
    "DEVICE_TOKEN",
    "HISTORY_POINTS",
    "ONLINE_WINDOW_S",
    "MQTT_ENABLED",
    "MQTT_BROKER_HOST",
    "MQTT_PORT",
    "MQTT_USERNAME",
    "MQTT_PASSWORD",
    "MQTT_TOPIC",
    "MQTT_KEEPALIVE",
    "WS_PING_INTERVAL",
    "PERSIST_TIMEOUT",
    "INGEST_TIMEOUT",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def test_defaults() -> None:
    config = TrackerConfig.from_env()

    assert config.port == 3000
    assert config.sqlite_file == "./data/tracker.sqlite"
    assert config.device_token == "default_token"
    assert config.history_points == 500
    assert config.online_window_s == 60
    assert config.mqtt_enabled is False
    assert config.mqtt_topic == "track/#"


def test_environment_values_are_parsed(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PORT", "8080")
    monkeypatch.setenv("DEVICE_TOKEN", "fleet-secret")
    monkeypatch.setenv("HISTORY_POINTS", "25")
    monkeypatch.setenv("MQTT_ENABLED", "yes")
    monkeypatch.setenv("MQTT_BROKER_HOST", "broker.local")
    monkeypatch.setenv("WS_PING_INTERVAL", "2.5")

    config = TrackerConfig.from_env()

    assert config.port == 8080
    assert config.device_token == "fleet-secret"
    assert config.history_points == 25
    assert config.mqtt_enabled is True
    assert config.mqtt_broker_host == "broker.local"
    assert config.ws_ping_interval == 2.5


def test_unparseable_numbers_fall_back_to_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("HISTORY_POINTS", "lots")
    monkeypatch.setenv("PORT", "")
    monkeypatch.setenv("MQTT_ENABLED", "maybe")

    config = TrackerConfig.from_env()

    assert config.history_points == 500
    assert config.port == 3000
    assert config.mqtt_enabled is False


def test_overrides_win_over_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PORT", "8080")
    monkeypatch.setenv("MQTT_ENABLED", "true")

    config = TrackerConfig.from_env(port=9000, mqtt_enabled=False)

    assert config.port == 9000
    assert config.mqtt_enabled is False


@pytest.mark.parametrize(
    "overrides",
    [
        {"history_points": 0},
        {"online_window_s": -1},
        {"ws_ping_interval": 0},
        {"port": 70000},
    ],
)
def test_invalid_values_raise(overrides: dict) -> None:
    with pytest.raises(TrackerConfigError):
        TrackerConfig(**overrides)


def test_cli_flags_override_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PORT", "8080")
    args = _parse_args(["--port", "9001", "--no-mqtt", "--sqlite-file", "/tmp/t.sqlite"])

    config = build_config(args)

    assert config.port == 9001
    assert config.mqtt_enabled is False
    assert config.sqlite_file == "/tmp/t.sqlite"


def test_cli_exits_with_usage_error_on_invalid_configuration(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("HISTORY_POINTS", "0")

    assert main([]) == 2
