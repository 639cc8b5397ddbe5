"""Fan-out of accepted positions to live push-channel subscribers.

Owns:
- the subscriber registry (its own lock, independent of the state store)
- one bounded outbound queue and writer task per subscriber
- the periodic ping/pong liveness sweep

Every core call (``subscribe``, ``publish``, ``unsubscribe``) is synchronous
and runs on the event loop thread. Because ``TrackerServer.accept`` applies a
record and publishes it without yielding, and ``subscribe`` registers and
snapshots without yielding, a concurrent record lands either in the new
subscriber's snapshot or in its first update, never both and never neither.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
import threading
from collections.abc import Callable
from enum import StrEnum
from typing import Any, Protocol

from gpstrack._constants import SUBSCRIBER_QUEUE_SIZE
from gpstrack.exceptions import TrackerTransportError
from gpstrack.models.messages import SnapshotMessage, UpdateMessage
from gpstrack.models.position import PositionRecord

_logger = logging.getLogger(__name__)


class Sink(Protocol):
    """Structural interface of a push-channel connection.

    :class:`aiohttp.web.WebSocketResponse` satisfies it; tests pass fakes.
    """

    async def send_str(self, data: str) -> None: ...

    async def ping(self, message: bytes = b"") -> None: ...

    async def close(self) -> Any: ...


class SubscriberState(StrEnum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


class Subscriber:
    """Handle for one registered sink.

    Messages are queued with :meth:`offer` and written by a dedicated task, so
    a slow sink only ever delays itself.
    """

    def __init__(
        self,
        sink: Sink,
        *,
        subscriber_id: int,
        on_failure: Callable[[Subscriber, str], None],
        queue_size: int = SUBSCRIBER_QUEUE_SIZE,
    ) -> None:
        self.id = subscriber_id
        self.sink = sink
        self.state = SubscriberState.CONNECTING
        self.is_alive = True
        self._on_failure = on_failure
        self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize=queue_size)
        self._writer: asyncio.Task[None] | None = None
        self._closer: asyncio.Task[None] | None = None

    def __repr__(self) -> str:
        return f"Subscriber(id={self.id}, state={self.state.value})"

    def open(self) -> None:
        if self.state is not SubscriberState.CONNECTING:
            return
        self.state = SubscriberState.OPEN
        self._writer = asyncio.get_running_loop().create_task(self._drain(), name=f"gpstrack-sub-{self.id}")

    def offer(self, message: str) -> bool:
        """Queue a serialized message. Returns ``False`` if not open or full."""
        if self.state is not SubscriberState.OPEN:
            return False
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            return False
        return True

    def mark_alive(self) -> None:
        self.is_alive = True

    async def probe(self, timeout: float) -> None:
        """Send a liveness ping; the pong is reported through :meth:`mark_alive`."""
        try:
            await asyncio.wait_for(self.sink.ping(), timeout=timeout)
        except Exception as exc:
            raise TrackerTransportError(f"ping to subscriber {self.id} failed: {exc!r}") from exc

    async def _drain(self) -> None:
        while True:
            message = await self._queue.get()
            try:
                await self.sink.send_str(message)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                _logger.debug("Send to subscriber %s failed", self.id, exc_info=True)
                self._on_failure(self, f"send failed: {exc!r}")
                return

    def close(self) -> None:
        """Move to CLOSED and release the sink. Safe to call repeatedly."""
        if self.state is SubscriberState.CLOSED:
            return
        self.state = SubscriberState.CLOSED
        writer = self._writer
        if writer is not None and writer is not asyncio.current_task():
            writer.cancel()
        self._closer = asyncio.get_running_loop().create_task(self._close_sink())

    async def _close_sink(self) -> None:
        try:
            await self.sink.close()
        except Exception:
            _logger.debug("Closing subscriber %s sink failed", self.id, exc_info=True)

    async def wait_closed(self) -> None:
        tasks = [task for task in (self._writer, self._closer) if task is not None]
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task


class Broadcaster:
    """Registry of live subscribers with snapshot-on-connect semantics.

    Parameters
    ----------
    snapshot_provider
        Returns the latest record of every known device; called once per
        new subscriber.
    ping_interval
        Seconds between liveness sweeps. A subscriber that has not answered
        the previous sweep's ping is closed.
    """

    def __init__(
        self,
        snapshot_provider: Callable[[], list[PositionRecord]],
        *,
        ping_interval: float = 30.0,
        queue_size: int = SUBSCRIBER_QUEUE_SIZE,
    ) -> None:
        self._snapshot_provider = snapshot_provider
        self._ping_interval = ping_interval
        self._queue_size = queue_size
        self._subscribers: dict[int, Subscriber] = {}
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._liveness_task: asyncio.Task[None] | None = None

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def _registered(self) -> list[Subscriber]:
        with self._lock:
            return list(self._subscribers.values())

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def subscribe(self, sink: Sink) -> Subscriber:
        """Register ``sink`` and queue the current snapshot for it.

        No snapshot message is sent while no device is known.
        """
        subscriber = Subscriber(
            sink,
            subscriber_id=next(self._ids),
            on_failure=self._drop,
            queue_size=self._queue_size,
        )
        with self._lock:
            self._subscribers[subscriber.id] = subscriber
            devices = self._snapshot_provider()
            subscriber.open()
            if devices:
                subscriber.offer(SnapshotMessage(devices=devices).model_dump_json())
        _logger.debug("Subscriber %s registered snapshot_devices=%d", subscriber.id, len(devices))
        return subscriber

    def unsubscribe(self, subscriber: Subscriber) -> None:
        """Remove a subscriber. Unknown or already removed handles are ignored."""
        with self._lock:
            removed = self._subscribers.pop(subscriber.id, None)
        subscriber.close()
        if removed is not None:
            _logger.debug("Subscriber %s unregistered", subscriber.id)

    def _drop(self, subscriber: Subscriber, reason: str) -> None:
        _logger.info("Dropping subscriber %s: %s", subscriber.id, reason)
        self.unsubscribe(subscriber)

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    def publish(self, record: PositionRecord) -> int:
        """Queue an ``update`` message for every open subscriber.

        Returns the number of subscribers the message was queued for.
        """
        message = UpdateMessage(device=record).model_dump_json()
        delivered = 0
        for subscriber in self._registered():
            if subscriber.offer(message):
                delivered += 1
            elif subscriber.state is SubscriberState.OPEN:
                self._drop(subscriber, "outbound queue full")
        return delivered

    # ------------------------------------------------------------------
    # Liveness
    # ------------------------------------------------------------------

    async def check_liveness(self) -> int:
        """Run one liveness sweep. Returns the number of subscribers dropped."""
        dropped = 0
        probes: list[Subscriber] = []
        for subscriber in self._registered():
            if not subscriber.is_alive:
                self._drop(subscriber, "no pong since last probe")
                dropped += 1
                continue
            subscriber.is_alive = False
            probes.append(subscriber)

        results = await asyncio.gather(
            *(subscriber.probe(self._ping_interval) for subscriber in probes),
            return_exceptions=True,
        )
        for subscriber, result in zip(probes, results, strict=True):
            if isinstance(result, BaseException):
                self._drop(subscriber, str(result))
                dropped += 1
        return dropped

    async def _liveness_loop(self) -> None:
        while True:
            await asyncio.sleep(self._ping_interval)
            try:
                await self.check_liveness()
            except Exception:
                _logger.warning("Liveness sweep failed", exc_info=True)

    def start(self) -> None:
        if self._liveness_task is None:
            self._liveness_task = asyncio.get_running_loop().create_task(
                self._liveness_loop(), name="gpstrack-liveness"
            )

    async def stop(self) -> None:
        """Stop the liveness sweep and close every subscriber."""
        task = self._liveness_task
        self._liveness_task = None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        subscribers = self._registered()
        for subscriber in subscribers:
            self.unsubscribe(subscriber)
        for subscriber in subscribers:
            await subscriber.wait_closed()
