#!/usr/bin/env python3
"""Simulate GPS trackers reporting to a gpstrack server.

Each simulated device drives around one of a few sample routes and reports
``{device_id, lat, lng, speed, heading, sats, ts}`` every interval, either via
``POST /api/track`` or by publishing to ``track/<device_id>`` over MQTT.

Usage:
    python scripts/device_simulator.py --devices 10 --interval 1.0 --mode mqtt
    python scripts/device_simulator.py --devices 5 --mode http --host 192.168.1.100
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import math
import random
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import aiohttp
import paho.mqtt.client as mqtt

# Allow running from repo root without installing the package.
_repo = Path(__file__).resolve().parent.parent
_src = _repo / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from gpstrack._constants import DEVICE_TOKEN_HEADER  # noqa: E402

_LOG = logging.getLogger("device_simulator")

SAMPLE_ROUTES: list[list[tuple[float, float]]] = [
    # City centre loop
    [(40.7128, -74.0060), (40.7589, -73.9851), (40.7505, -73.9934), (40.7282, -73.7949), (40.7128, -74.0060)],
    # Harbour run
    [(40.7128, -74.0060), (40.6892, -74.0445), (40.6782, -74.0115), (40.6501, -73.9496), (40.7128, -74.0060)],
    # Uptown
    [(40.7831, -73.9712), (40.7614, -73.9776), (40.7505, -73.9934), (40.7282, -73.7949), (40.7831, -73.9712)],
]

# Rough metres per degree, good enough for a simulation.
_METRES_PER_DEGREE = 111_000


@dataclass
class SimulatedDevice:
    device_id: str
    route: list[tuple[float, float]]
    speed: float
    satellites: int = field(default_factory=lambda: random.randint(8, 15))
    segment: int = 0
    progress: float = 0.0
    heading: float = 0.0
    last_update: float = field(default_factory=time.monotonic)

    def _endpoints(self) -> tuple[tuple[float, float], tuple[float, float]]:
        start = self.route[self.segment]
        end = self.route[(self.segment + 1) % len(self.route)]
        return start, end

    def position(self) -> tuple[float, float]:
        (lat0, lng0), (lat1, lng1) = self._endpoints()
        self.heading = math.degrees(math.atan2(lng1 - lng0, lat1 - lat0))
        return lat0 + (lat1 - lat0) * self.progress, lng0 + (lng1 - lng0) * self.progress

    def advance(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_update
        self.last_update = now

        (lat0, lng0), (lat1, lng1) = self._endpoints()
        segment_length = math.hypot(lat1 - lat0, lng1 - lng0) or 1e-9
        moved = (self.speed * 1000 / 3600) * elapsed / _METRES_PER_DEGREE
        self.progress += moved / segment_length
        if self.progress >= 1:
            self.progress = 0.0
            self.segment = (self.segment + 1) % len(self.route)

        self.speed = max(5.0, self.speed + random.uniform(-1.0, 1.0))
        self.satellites = max(4, self.satellites + random.randint(-1, 1))

    def report(self) -> dict[str, Any]:
        lat, lng = self.position()
        return {
            "device_id": self.device_id,
            "lat": lat,
            "lng": lng,
            "speed": round(self.speed, 1),
            "heading": round(self.heading),
            "sats": self.satellites,
            "ts": int(time.time() * 1000),
        }


def build_devices(count: int, average_speed: float) -> list[SimulatedDevice]:
    return [
        SimulatedDevice(
            device_id=f"SIM_{index + 1:03d}",
            route=SAMPLE_ROUTES[index % len(SAMPLE_ROUTES)],
            speed=average_speed + random.uniform(-10.0, 10.0),
        )
        for index in range(count)
    ]


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Simulate GPS devices reporting to gpstrack.")
    parser.add_argument("--devices", "-n", type=int, default=5, help="Number of devices (default: 5).")
    parser.add_argument("--interval", type=float, default=2.0, help="Seconds between reports (default: 2.0).")
    parser.add_argument("--speed", type=float, default=40.0, help="Average speed in km/h (default: 40).")
    parser.add_argument("--mode", choices=("mqtt", "http"), default="mqtt", help="Transport (default: mqtt).")
    parser.add_argument("--host", default="localhost", help="Server / broker host.")
    parser.add_argument("--port", type=int, default=3000, help="HTTP server port (default: 3000).")
    parser.add_argument("--mqtt-port", type=int, default=1883, help="MQTT broker port (default: 1883).")
    parser.add_argument("--token", default="simulator_token", help="Device token for HTTP mode.")
    parser.add_argument("--mqtt-username", default="", help="MQTT username.")
    parser.add_argument("--mqtt-password", default="", help="MQTT password.")
    parser.add_argument("--duration", type=float, default=0.0, help="Stop after N seconds (0 = until Ctrl+C).")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logs.")
    return parser.parse_args()


async def _run_http(args: argparse.Namespace, devices: list[SimulatedDevice]) -> None:
    url = f"http://{args.host}:{args.port}/api/track"
    headers = {DEVICE_TOKEN_HEADER: args.token}
    timeout = aiohttp.ClientTimeout(total=10)
    async with aiohttp.ClientSession(timeout=timeout) as session:

        async def send(device: SimulatedDevice) -> None:
            data = device.report()
            try:
                async with session.post(url, json=data, headers=headers) as resp:
                    if resp.status == 200:
                        _LOG.info("HTTP: %s -> %.6f, %.6f (%.1f km/h)", data["device_id"], data["lat"], data["lng"], data["speed"])
                    else:
                        _LOG.error("HTTP error for %s: %s %s", data["device_id"], resp.status, await resp.text())
            except aiohttp.ClientError as exc:
                _LOG.error("HTTP request failed for %s: %s", data["device_id"], exc)

        await _tick_loop(args, devices, send)


async def _run_mqtt(args: argparse.Namespace, devices: list[SimulatedDevice]) -> None:
    client = mqtt.Client(callback_api_version=mqtt.CallbackAPIVersion.VERSION2)
    client.enable_logger(_LOG)
    if args.mqtt_username:
        client.username_pw_set(args.mqtt_username, args.mqtt_password or None)
    client.connect(args.host, args.mqtt_port, keepalive=60)
    client.loop_start()

    async def send(device: SimulatedDevice) -> None:
        data = device.report()
        info = client.publish(f"track/{device.device_id}", json.dumps(data), qos=0)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            _LOG.error("Failed to publish for %s: rc=%s", device.device_id, info.rc)
            return
        _LOG.info("MQTT: %s -> %.6f, %.6f (%.1f km/h)", data["device_id"], data["lat"], data["lng"], data["speed"])

    try:
        await _tick_loop(args, devices, send)
    finally:
        client.disconnect()
        client.loop_stop()


async def _tick_loop(args: argparse.Namespace, devices: list[SimulatedDevice], send: Any) -> None:
    started = time.monotonic()
    while args.duration <= 0 or time.monotonic() - started < args.duration:
        for device in devices:
            device.advance()
        await asyncio.gather(*(send(device) for device in devices))
        await asyncio.sleep(args.interval)


def _main() -> int:
    args = _parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )

    devices = build_devices(args.devices, args.speed)
    _LOG.info("Simulating %d devices mode=%s interval=%.1fs speed=%.0fkm/h", len(devices), args.mode, args.interval, args.speed)

    runner = _run_mqtt if args.mode == "mqtt" else _run_http
    try:
        asyncio.run(runner(args, devices))
    except KeyboardInterrupt:
        _LOG.info("Simulation stopped")
    return 0


if __name__ == "__main__":
    raise SystemExit(_main())
