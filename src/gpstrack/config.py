"""Server configuration for gpstrack."""

from __future__ import annotations

import dataclasses
import os
from collections.abc import Callable
from typing import Any

from gpstrack._constants import DEFAULT_HISTORY_POINTS, DEFAULT_ONLINE_WINDOW_S, MQTT_TOPIC
from gpstrack.exceptions import TrackerConfigError


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _env_number(value: str | None, cast: Callable[[str], Any]) -> Any:
    """Parse a numeric env value, returning ``None`` when absent or unparseable.

    Unparseable values fall back to the field default rather than failing
    startup, so ``HISTORY_POINTS=abc`` behaves like an unset variable.
    """
    if value is None or not value.strip():
        return None
    try:
        return cast(value.strip())
    except ValueError:
        return None


@dataclasses.dataclass(frozen=True)
class TrackerConfig:
    """Server configuration.

    Parameters
    ----------
    host : str
        Interface the HTTP/WebSocket server binds to.
    port : int
        HTTP/WebSocket server port.
    public_origin : str
        Origin allowed by the CORS middleware.
    sqlite_file : str
        Path of the SQLite history database. Parent directories are created.
    device_token : str
        Shared secret devices send as ``X-Device-Token`` or ``?token=``.
    history_points : int
        Maximum positions kept per device, both in memory and in SQLite.
    online_window_s : int
        A device counts as online when its latest timestamp is newer than
        this many seconds.
    mqtt_enabled : bool
        Start the MQTT subscriber alongside the HTTP endpoint.
    mqtt_broker_host : str
        MQTT broker hostname.
    mqtt_port : int
        MQTT broker port.
    mqtt_username : str
        MQTT username (empty for anonymous).
    mqtt_password : str
        MQTT password.
    mqtt_topic : str
        Topic filter position reports are published on.
    mqtt_keepalive : int
        MQTT keepalive in seconds.
    ws_ping_interval : float
        Seconds between WebSocket liveness probes.
    persist_timeout : float
        Seconds a single SQLite write may take before it is abandoned.
    ingest_timeout : float
        Seconds allowed for reading a ``POST /api/track`` request body.
    """

    host: str = "0.0.0.0"  # noqa: S104
    port: int = 3000
    public_origin: str = "http://localhost:3000"
    sqlite_file: str = "./data/tracker.sqlite"
    device_token: str = "default_token"
    history_points: int = DEFAULT_HISTORY_POINTS
    online_window_s: int = DEFAULT_ONLINE_WINDOW_S
    mqtt_enabled: bool = False
    mqtt_broker_host: str = "localhost"
    mqtt_port: int = 1883
    mqtt_username: str = ""
    mqtt_password: str = ""
    mqtt_topic: str = MQTT_TOPIC
    mqtt_keepalive: int = 60
    ws_ping_interval: float = 30.0
    persist_timeout: float = 5.0
    ingest_timeout: float = 5.0

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """Raise :class:`TrackerConfigError` for values the pipeline cannot honour."""
        if self.history_points <= 0:
            raise TrackerConfigError(f"history_points must be positive, got {self.history_points}")
        if self.online_window_s <= 0:
            raise TrackerConfigError(f"online_window_s must be positive, got {self.online_window_s}")
        if self.ws_ping_interval <= 0:
            raise TrackerConfigError(f"ws_ping_interval must be positive, got {self.ws_ping_interval}")
        if not 0 < self.port < 65536:
            raise TrackerConfigError(f"port must be between 1 and 65535, got {self.port}")

    @classmethod
    def from_env(cls, **overrides: Any) -> TrackerConfig:
        """Create configuration from environment variables.

        Reads the same variable names as the deployment manifests
        (``PORT``, ``SQLITE_FILE``, ``DEVICE_TOKEN``, ``MQTT_*`` ...).
        Explicit keyword arguments override environment values.

        Parameters
        ----------
        **overrides
            Explicit field values that take precedence over env vars.

        Returns
        -------
        TrackerConfig
            Populated configuration.
        """
        env = os.environ

        _ENV_STR_MAP = {
            "HOST": "host",
            "PUBLIC_ORIGIN": "public_origin",
            "SQLITE_FILE": "sqlite_file",
            "DEVICE_TOKEN": "device_token",
            "MQTT_BROKER_HOST": "mqtt_broker_host",
            "MQTT_USERNAME": "mqtt_username",
            "MQTT_PASSWORD": "mqtt_password",
            "MQTT_TOPIC": "mqtt_topic",
        }
        _ENV_INT_MAP = {
            "PORT": "port",
            "HISTORY_POINTS": "history_points",
            "ONLINE_WINDOW_S": "online_window_s",
            "MQTT_PORT": "mqtt_port",
            "MQTT_KEEPALIVE": "mqtt_keepalive",
        }
        _ENV_FLOAT_MAP = {
            "WS_PING_INTERVAL": "ws_ping_interval",
            "PERSIST_TIMEOUT": "persist_timeout",
            "INGEST_TIMEOUT": "ingest_timeout",
        }

        config_kwargs: dict[str, Any] = {}
        for env_key, field_name in _ENV_STR_MAP.items():
            val = env.get(env_key)
            if val is not None:
                config_kwargs[field_name] = val

        for env_map, cast in ((_ENV_INT_MAP, int), (_ENV_FLOAT_MAP, float)):
            for env_key, field_name in env_map.items():
                parsed = _env_number(env.get(env_key), cast)
                if parsed is not None:
                    config_kwargs[field_name] = parsed

        if "mqtt_enabled" not in overrides:
            config_kwargs["mqtt_enabled"] = _env_bool(env.get("MQTT_ENABLED"), False)

        config_kwargs.update(overrides)

        return cls(**config_kwargs)
