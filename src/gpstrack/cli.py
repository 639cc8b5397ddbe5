"""Command-line entry point: ``gpstrack`` / ``python -m gpstrack``."""

from __future__ import annotations

import argparse
import logging
from collections.abc import Sequence
from typing import Any

from aiohttp import web

from gpstrack.config import TrackerConfig
from gpstrack.exceptions import TrackerConfigError
from gpstrack.ingestion.http import create_app
from gpstrack.server import TrackerServer

_LOG = logging.getLogger("gpstrack")


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="GPS tracker server: HTTP/MQTT ingestion, SQLite history and WebSocket fan-out.",
    )
    parser.add_argument("--host", help="Bind address (env HOST, default 0.0.0.0).")
    parser.add_argument("--port", type=int, help="HTTP/WebSocket port (env PORT, default 3000).")
    parser.add_argument("--sqlite-file", help="SQLite history file (env SQLITE_FILE).")
    parser.add_argument(
        "--mqtt",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Enable or disable the MQTT subscriber (env MQTT_ENABLED).",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logs.",
    )
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> TrackerConfig:
    overrides: dict[str, Any] = {}
    if args.host is not None:
        overrides["host"] = args.host
    if args.port is not None:
        overrides["port"] = args.port
    if args.sqlite_file is not None:
        overrides["sqlite_file"] = args.sqlite_file
    if args.mqtt is not None:
        overrides["mqtt_enabled"] = args.mqtt
    return TrackerConfig.from_env(**overrides)


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = build_config(args)
    except TrackerConfigError as exc:
        _LOG.error("Invalid configuration: %s", exc)
        return 2

    _LOG.info(
        "Configuration port=%s public_origin=%s mqtt_enabled=%s history_points=%s online_window_s=%s",
        config.port,
        config.public_origin,
        config.mqtt_enabled,
        config.history_points,
        config.online_window_s,
    )
    app = create_app(TrackerServer(config))
    web.run_app(app, host=config.host, port=config.port, print=None)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
