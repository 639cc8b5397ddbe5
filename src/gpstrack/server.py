"""Ingestion pipeline orchestrator.

:class:`TrackerServer` wires the state store, the SQLite history writer, the
push-channel broadcaster and the optional MQTT subscriber together. The HTTP
layer in :mod:`gpstrack.ingestion.http` is a thin shell around it.
"""

from __future__ import annotations

import hmac
import logging
from collections.abc import Callable, Mapping
from typing import Any

from gpstrack.broadcast import Broadcaster
from gpstrack.config import TrackerConfig
from gpstrack.exceptions import TrackerAuthError, TrackerPersistenceError, TrackerTransportError
from gpstrack.ingestion.mqtt import MqttIngestor
from gpstrack.ingestion.normalize import normalize_position, now_ms
from gpstrack.models.messages import TrackerStats
from gpstrack.models.position import PositionRecord
from gpstrack.persistence import HistoryWriter
from gpstrack.state.events import IngestionEvent, IngestionSource
from gpstrack.state.store import DeviceStateStore

_logger = logging.getLogger(__name__)


class TrackerServer:
    """Async lifecycle owner for the ingestion / fan-out / history pipeline.

    Usage::

        async with TrackerServer(config) as server:
            server.ingest({"device_id": "D1", "lat": 40.7, "lng": -74.0})
            server.positions()
    """

    def __init__(
        self,
        config: TrackerConfig,
        *,
        store: DeviceStateStore | None = None,
        broadcaster: Broadcaster | None = None,
        history_writer: HistoryWriter | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._config = config
        self._clock = clock
        self.store = store or DeviceStateStore(history_points=config.history_points, clock=clock)
        self.broadcaster = broadcaster or Broadcaster(self.store.snapshot, ping_interval=config.ws_ping_interval)
        self.history_writer = history_writer or HistoryWriter(
            config.sqlite_file,
            history_points=config.history_points,
            timeout=config.persist_timeout,
        )
        self._mqtt: MqttIngestor | None = None
        self._started_at = clock()
        self._accepted: dict[IngestionSource, int] = dict.fromkeys(IngestionSource, 0)

    @property
    def config(self) -> TrackerConfig:
        return self._config

    @property
    def mqtt(self) -> MqttIngestor | None:
        return self._mqtt

    @property
    def mqtt_status(self) -> str:
        """``disabled``, ``connecting`` or ``connected``."""
        if self._mqtt is None or self._mqtt.runtime is None:
            return "disabled"
        return "connected" if self._mqtt.runtime.connected else "connecting"

    def now_ms(self) -> int:
        return self._clock()

    @property
    def uptime_ms(self) -> int:
        return self._clock() - self._started_at

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> TrackerServer:
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()

    async def start(self) -> None:
        """Open the history store, start liveness probing and MQTT."""
        _logger.info(
            "Starting tracker history_points=%d online_window_s=%d mqtt_enabled=%s",
            self._config.history_points,
            self._config.online_window_s,
            self._config.mqtt_enabled,
        )
        try:
            await self.history_writer.open()
        except TrackerPersistenceError:
            _logger.error("History store unavailable; continuing without durable history", exc_info=True)

        self.broadcaster.start()

        if self._config.mqtt_enabled and self._mqtt is None:
            self._mqtt = MqttIngestor(
                self._config,
                ingest=lambda payload: self.ingest(payload, source=IngestionSource.MQTT),
            )
            try:
                await self._mqtt.start()
            except TrackerTransportError:
                _logger.error("MQTT ingestion unavailable; continuing with HTTP only")

    async def stop(self) -> None:
        """Stop MQTT, close subscribers and flush the history store."""
        mqtt = self._mqtt
        self._mqtt = None
        if mqtt is not None:
            await mqtt.stop()
        await self.broadcaster.stop()
        await self.history_writer.close()
        _logger.info("Tracker stopped")

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def authorize(self, token: str | None) -> None:
        """Check a device token against the shared secret.

        Raises
        ------
        TrackerAuthError
            The token is missing or does not match.
        """
        expected = self._config.device_token.encode()
        if token is None or not hmac.compare_digest(token.encode(), expected):
            raise TrackerAuthError("Invalid device token")

    def ingest(self, payload: Mapping[str, Any], *, source: IngestionSource) -> IngestionEvent:
        """Normalize a raw payload and accept it.

        Raises
        ------
        TrackerValidationError
            The payload failed normalization; nothing was changed.
        """
        record = normalize_position(payload, received_at_ms=self._clock())
        return self.accept(record, source=source)

    def accept(self, record: PositionRecord, *, source: IngestionSource) -> IngestionEvent:
        """Apply a normalized record and fan it out.

        Persistence and broadcast are queued, never awaited: once a record is
        here it is accepted regardless of downstream failures.
        """
        self.store.apply(record)
        self._accepted[source] += 1

        if self.history_writer.is_open:
            self.history_writer.submit(record)
        delivered = self.broadcaster.publish(record)

        _logger.debug(
            "Position updated for %s: %s, %s source=%s subscribers=%d",
            record.device_id,
            record.lat,
            record.lng,
            source.value,
            delivered,
        )
        return IngestionEvent(record=record, source=source)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def positions(self) -> list[PositionRecord]:
        return self.store.snapshot()

    async def device_history(self, device_id: str, limit: int) -> list[PositionRecord]:
        """Persisted history, most recent first. Raises :class:`TrackerPersistenceError`."""
        return await self.history_writer.history(device_id, limit)

    def stats(self) -> TrackerStats:
        return TrackerStats(
            total_devices=self.store.device_count,
            total_positions=sum(self._accepted.values()),
            online_devices=self.store.online_count(self._config.online_window_s, now_ms=self._clock()),
            ws_clients=self.broadcaster.subscriber_count,
            uptime=self.uptime_ms,
            history_points=self._config.history_points,
            online_window_s=self._config.online_window_s,
            http_positions=self._accepted[IngestionSource.HTTP],
            mqtt_positions=self._accepted[IngestionSource.MQTT],
        )
