from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from gpstrack.config import TrackerConfig
from gpstrack.exceptions import TrackerAuthError, TrackerPersistenceError, TrackerValidationError
from gpstrack.server import TrackerServer
from gpstrack.state.events import IngestionSource

_NOW = 1_700_000_000_000


@dataclass
class _RecordingSink:
    sent: list[str] = field(default_factory=list)
    closed: bool = False

    async def send_str(self, data: str) -> None:
        self.sent.append(data)

    async def ping(self, message: bytes = b"") -> None:
        return None

    async def close(self) -> None:
        self.closed = True

    def messages(self) -> list[dict]:
        return [json.loads(raw) for raw in self.sent]


async def _settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


def _server(tmp_path: Path, **overrides: object) -> TrackerServer:
    config = TrackerConfig(sqlite_file=str(tmp_path / "tracker.sqlite"), device_token="s3cret", **overrides)
    return TrackerServer(config, clock=lambda: _NOW)


def test_authorize() -> None:
    server = TrackerServer(TrackerConfig(device_token="s3cret"))

    server.authorize("s3cret")
    for token in (None, "", "s3cre", "S3CRET"):
        with pytest.raises(TrackerAuthError):
            server.authorize(token)


@pytest.mark.asyncio
async def test_concurrent_record_lands_in_snapshot_or_update_once(tmp_path: Path) -> None:
    server = _server(tmp_path)
    server.ingest({"device_id": "D1", "lat": 1, "lng": 1}, source=IngestionSource.HTTP)

    sink = _RecordingSink()
    server.broadcaster.subscribe(sink)
    server.ingest({"device_id": "D2", "lat": 2, "lng": 2}, source=IngestionSource.HTTP)
    await _settle()

    snapshot, update = sink.messages()
    assert [d["device_id"] for d in snapshot["devices"]] == ["D1"]
    assert update["device"]["device_id"] == "D2"
    await server.broadcaster.stop()


@pytest.mark.asyncio
async def test_rejected_payload_changes_nothing(tmp_path: Path) -> None:
    server = _server(tmp_path)
    sink = _RecordingSink()
    server.broadcaster.subscribe(sink)

    with pytest.raises(TrackerValidationError):
        server.ingest({"device_id": "D1", "lat": 200, "lng": 1}, source=IngestionSource.MQTT)
    await _settle()

    assert server.positions() == []
    assert sink.sent == []
    assert server.stats().total_positions == 0
    await server.broadcaster.stop()


@pytest.mark.asyncio
async def test_stats_counts_sources_and_online_devices(tmp_path: Path) -> None:
    server = _server(tmp_path, online_window_s=60)
    server.ingest({"device_id": "D1", "lat": 1, "lng": 1, "ts": _NOW - 1_000}, source=IngestionSource.HTTP)
    server.ingest({"device_id": "D1", "lat": 1, "lng": 1, "ts": _NOW - 500}, source=IngestionSource.MQTT)
    server.ingest({"device_id": "D2", "lat": 1, "lng": 1, "ts": _NOW - 120_000}, source=IngestionSource.MQTT)

    stats = server.stats()

    assert stats.total_devices == 2
    assert stats.total_positions == 3
    assert stats.online_devices == 1
    assert stats.http_positions == 1
    assert stats.mqtt_positions == 2
    assert stats.model_dump(by_alias=True)["totalDevices"] == 2


@pytest.mark.asyncio
async def test_runs_without_history_store(tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("")
    config = TrackerConfig(sqlite_file=str(blocker / "tracker.sqlite"), ws_ping_interval=60)

    async with TrackerServer(config) as server:
        event = server.ingest({"device_id": "D1", "lat": 1, "lng": 1}, source=IngestionSource.HTTP)
        assert event.device_id == "D1"
        assert [r.device_id for r in server.positions()] == ["D1"]
        with pytest.raises(TrackerPersistenceError):
            await server.device_history("D1", 10)


@pytest.mark.asyncio
async def test_lifecycle_persists_accepted_records(tmp_path: Path) -> None:
    async with _server(tmp_path) as server:
        server.ingest({"device_id": "D1", "lat": 1, "lng": 1, "ts": 10}, source=IngestionSource.HTTP)
        server.ingest({"device_id": "D1", "lat": 2, "lng": 2, "ts": 20}, source=IngestionSource.HTTP)
        await server.history_writer.flush()

        history = await server.device_history("D1", 10)

    assert [r.timestamp for r in history] == [20, 10]
    assert not server.history_writer.is_open


@pytest.mark.asyncio
async def test_end_to_end_subscriber_sees_exactly_the_accepted_record(tmp_path: Path) -> None:
    server = _server(tmp_path)
    early = _RecordingSink()
    server.broadcaster.subscribe(early)
    payload = {
        "device_id": "TEST_001",
        "lat": 40.7128,
        "lng": -74.0060,
        "speed": 25.5,
        "heading": 45,
        "sats": 12,
        "ts": 1640995200000,
    }
    expected = {**{k: v for k, v in payload.items() if k != "ts"}, "timestamp": 1640995200000}

    server.authorize("s3cret")
    event = server.ingest(payload, source=IngestionSource.HTTP)
    await _settle()

    assert server.positions() == [event.record]
    assert early.messages() == [{"type": "update", "device": expected}]

    late = _RecordingSink()
    server.broadcaster.subscribe(late)
    await _settle()
    assert late.messages() == [{"type": "snapshot", "devices": [expected]}]
    await server.broadcaster.stop()
