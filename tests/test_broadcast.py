from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field

import pytest

from gpstrack.broadcast import Broadcaster, SubscriberState
from gpstrack.models.position import PositionRecord


@dataclass
class _FakeSink:
    sent: list[str] = field(default_factory=list)
    pings: int = 0
    closed: bool = False
    fail_send: bool = False
    fail_ping: bool = False

    async def send_str(self, data: str) -> None:
        if self.fail_send:
            raise ConnectionResetError("peer went away")
        self.sent.append(data)

    async def ping(self, message: bytes = b"") -> None:
        if self.fail_ping:
            raise ConnectionResetError("peer went away")
        self.pings += 1

    async def close(self) -> None:
        self.closed = True

    def messages(self) -> list[dict]:
        return [json.loads(raw) for raw in self.sent]


def _record(device_id: str, ts: int = 1_000) -> PositionRecord:
    return PositionRecord(device_id=device_id, lat=40.7, lng=-74.0, timestamp=ts)


async def _settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_no_snapshot_while_no_device_is_known() -> None:
    broadcaster = Broadcaster(lambda: [])
    sink = _FakeSink()

    broadcaster.subscribe(sink)
    await _settle()

    assert sink.sent == []
    await broadcaster.stop()


@pytest.mark.asyncio
async def test_new_subscriber_gets_snapshot_first() -> None:
    broadcaster = Broadcaster(lambda: [_record("D1"), _record("D2")])
    sink = _FakeSink()

    subscriber = broadcaster.subscribe(sink)
    broadcaster.publish(_record("D1", ts=2_000))
    await _settle()

    assert subscriber.state is SubscriberState.OPEN
    snapshot, update = sink.messages()
    assert snapshot["type"] == "snapshot"
    assert {d["device_id"] for d in snapshot["devices"]} == {"D1", "D2"}
    assert update == {"type": "update", "device": _record("D1", ts=2_000).model_dump()}
    await broadcaster.stop()


@pytest.mark.asyncio
async def test_publish_fans_out_to_every_subscriber() -> None:
    broadcaster = Broadcaster(lambda: [])
    sinks = [_FakeSink() for _ in range(3)]
    for sink in sinks:
        broadcaster.subscribe(sink)

    delivered = broadcaster.publish(_record("D1"))
    await _settle()

    assert delivered == 3
    for sink in sinks:
        assert [m["type"] for m in sink.messages()] == ["update"]
    await broadcaster.stop()


@pytest.mark.asyncio
async def test_unsubscribed_sink_receives_nothing_more() -> None:
    broadcaster = Broadcaster(lambda: [])
    sink = _FakeSink()
    subscriber = broadcaster.subscribe(sink)

    broadcaster.unsubscribe(subscriber)
    broadcaster.unsubscribe(subscriber)
    delivered = broadcaster.publish(_record("D1"))
    await _settle()

    assert delivered == 0
    assert sink.sent == []
    assert sink.closed
    assert broadcaster.subscriber_count == 0
    assert subscriber.state is SubscriberState.CLOSED


@pytest.mark.asyncio
async def test_failing_sink_is_dropped_without_affecting_others() -> None:
    broadcaster = Broadcaster(lambda: [])
    broken = _FakeSink(fail_send=True)
    healthy = _FakeSink()
    broadcaster.subscribe(broken)
    broadcaster.subscribe(healthy)

    broadcaster.publish(_record("D1", ts=1))
    await _settle()
    delivered = broadcaster.publish(_record("D1", ts=2))
    await _settle()

    assert delivered == 1
    assert broken.closed
    assert broadcaster.subscriber_count == 1
    assert [m["device"]["timestamp"] for m in healthy.messages()] == [1, 2]
    await broadcaster.stop()


@pytest.mark.asyncio
async def test_subscriber_with_full_queue_is_dropped() -> None:
    broadcaster = Broadcaster(lambda: [], queue_size=1)
    sink = _FakeSink()
    broadcaster.subscribe(sink)

    # No yield between publishes, so the writer never gets to drain.
    assert broadcaster.publish(_record("D1", ts=1)) == 1
    assert broadcaster.publish(_record("D1", ts=2)) == 0
    await _settle()

    assert broadcaster.subscriber_count == 0
    assert sink.closed


@pytest.mark.asyncio
async def test_liveness_drops_subscribers_that_never_answer() -> None:
    broadcaster = Broadcaster(lambda: [], ping_interval=1.0)
    silent = _FakeSink()
    responsive = _FakeSink()
    broadcaster.subscribe(silent)
    answering = broadcaster.subscribe(responsive)

    assert await broadcaster.check_liveness() == 0
    assert silent.pings == 1
    assert responsive.pings == 1

    answering.mark_alive()
    assert await broadcaster.check_liveness() == 1
    await _settle()

    assert silent.closed
    assert not responsive.closed
    assert broadcaster.subscriber_count == 1
    await broadcaster.stop()


@pytest.mark.asyncio
async def test_failed_ping_drops_subscriber() -> None:
    broadcaster = Broadcaster(lambda: [], ping_interval=1.0)
    sink = _FakeSink(fail_ping=True)
    broadcaster.subscribe(sink)

    assert await broadcaster.check_liveness() == 1
    await _settle()

    assert broadcaster.subscriber_count == 0
    assert sink.closed


@pytest.mark.asyncio
async def test_stop_closes_every_subscriber() -> None:
    broadcaster = Broadcaster(lambda: [], ping_interval=60.0)
    broadcaster.start()
    sinks = [_FakeSink(), _FakeSink()]
    for sink in sinks:
        broadcaster.subscribe(sink)

    await broadcaster.stop()

    assert broadcaster.subscriber_count == 0
    assert all(sink.closed for sink in sinks)
