"""MQTT ingestion.

A threaded paho-mqtt runtime subscribes to the position topic and hands
decoded payloads to the event loop, where a bounded queue feeds them into the
pipeline one at a time. Trust is implicit in broker access control, so MQTT
payloads carry no device token.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import secrets
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, cast

import paho.mqtt.client as mqtt

from gpstrack._constants import MQTT_QUEUE_SIZE, MQTT_RECONNECT_MAX_DELAY, MQTT_RECONNECT_MIN_DELAY
from gpstrack._redact import redact_for_log
from gpstrack.config import TrackerConfig
from gpstrack.exceptions import TrackerTransportError, TrackerValidationError

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MqttMessage:
    """Decoded MQTT position message."""

    topic: str
    payload: dict[str, Any]


def decode_position_payload(payload: bytes) -> dict[str, Any]:
    """Parse an MQTT payload into a JSON object.

    Raises
    ------
    TrackerValidationError
        The payload is not UTF-8 JSON or not a JSON object.
    """
    try:
        parsed = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise TrackerValidationError(f"MQTT payload is not valid JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise TrackerValidationError("MQTT payload decoded to non-object JSON")
    return parsed


class TrackMqttRuntime:
    """paho-mqtt client on its own network thread, feeding an asyncio loop.

    paho reconnects by itself, backing off between ``MQTT_RECONNECT_MIN_DELAY``
    and ``MQTT_RECONNECT_MAX_DELAY`` seconds; the topic is re-subscribed on
    every successful (re)connect. Callbacks run on paho's thread and only
    touch the loop through ``call_soon_threadsafe``.
    """

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop,
        on_message: Callable[[MqttMessage], None],
        topic: str,
        keepalive: int = 60,
        logger: logging.Logger | None = None,
    ) -> None:
        self._loop = loop
        self._deliver = on_message
        self._topic = topic
        self._keepalive = keepalive
        self._log = logger or _logger
        self._client: mqtt.Client | None = None
        self.connected = False

    def start(self, host: str, port: int, *, username: str = "", password: str = "") -> None:
        """Begin connecting in the background. Blocking; call from an executor."""
        self.stop()
        client = mqtt.Client(
            callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
            client_id=f"gpstrack-{secrets.token_hex(4)}",
            protocol=mqtt.MQTTv311,
        )
        client.enable_logger(self._log)
        if username:
            client.username_pw_set(username, password or None)
        client.reconnect_delay_set(min_delay=MQTT_RECONNECT_MIN_DELAY, max_delay=MQTT_RECONNECT_MAX_DELAY)
        client.on_connect = self._handle_connect
        client.on_subscribe = self._handle_subscribe
        client.on_message = self._handle_message
        client.on_disconnect = self._handle_disconnect

        self._log.info("Connecting to MQTT broker %s:%s topic=%s", host, port, self._topic)
        client.connect_async(host, port, keepalive=self._keepalive)
        client.loop_start()
        self._client = client

    def stop(self) -> None:
        """Disconnect and join the network thread. No-op when not started."""
        client, self._client = self._client, None
        self.connected = False
        if client is None:
            return
        try:
            client.disconnect()
        finally:
            client.loop_stop()
            self._log.debug("MQTT network thread joined")

    # paho callbacks (network thread)

    def _handle_connect(
        self, client: mqtt.Client, _userdata: Any, _flags: Any, reason_code: Any, _props: Any
    ) -> None:
        if reason_code.is_failure:
            self._log.warning("MQTT broker refused connection: %s", reason_code)
            return
        self.connected = True
        self._log.info("MQTT connected; subscribing to %s", self._topic)
        client.subscribe(self._topic, qos=0)

    def _handle_subscribe(
        self, _client: mqtt.Client, _userdata: Any, _mid: int, reason_codes: list[Any], _props: Any
    ) -> None:
        if any(code.is_failure for code in reason_codes):
            self._log.error("Broker rejected subscription to %s: %s", self._topic, reason_codes)

    def _handle_message(self, _client: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
        try:
            payload = decode_position_payload(msg.payload)
        except TrackerValidationError as exc:
            self._log.warning("Dropping message on %s: %s", msg.topic, exc)
            return
        self._log.debug("MQTT message topic=%s payload=%s", msg.topic, redact_for_log(payload))
        self._loop.call_soon_threadsafe(self._deliver, MqttMessage(topic=msg.topic, payload=payload))

    def _handle_disconnect(
        self, _client: mqtt.Client, _userdata: Any, _flags: Any, reason_code: Any, _props: Any
    ) -> None:
        self.connected = False
        if self._client is not None:
            self._log.warning("MQTT connection lost (%s); paho will retry", reason_code)


class MqttIngestor:
    """Bounded hand-off between the MQTT runtime and the ingestion pipeline.

    ``ingest`` is called on the event loop for every decoded message; payloads
    it rejects with :class:`TrackerValidationError` are logged and dropped.
    """

    def __init__(
        self,
        config: TrackerConfig,
        *,
        ingest: Callable[[Mapping[str, Any]], Any],
        queue_size: int = MQTT_QUEUE_SIZE,
        runtime_factory: Callable[..., TrackMqttRuntime] = TrackMqttRuntime,
    ) -> None:
        self._config = config
        self._ingest = ingest
        self._queue: asyncio.Queue[MqttMessage] = asyncio.Queue(maxsize=queue_size)
        self._runtime_factory = runtime_factory
        self._runtime: TrackMqttRuntime | None = None
        self._consumer: asyncio.Task[None] | None = None
        self.received = 0
        self.rejected = 0
        self.dropped = 0

    @property
    def runtime(self) -> TrackMqttRuntime | None:
        return self._runtime

    def enqueue(self, message: MqttMessage) -> None:
        """Queue a decoded message. Must run on the event loop thread."""
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            self.dropped += 1
            _logger.warning("MQTT ingest queue full; dropping message on %s", message.topic)

    async def _consume(self) -> None:
        while True:
            message = await self._queue.get()
            try:
                self._ingest(message.payload)
                self.received += 1
            except TrackerValidationError as exc:
                self.rejected += 1
                _logger.warning(
                    "Invalid location data on %s: %s payload=%s",
                    message.topic,
                    exc,
                    redact_for_log(message.payload),
                )
            except Exception:
                _logger.error("Processing MQTT message on %s failed", message.topic, exc_info=True)
            finally:
                self._queue.task_done()

    async def start(self) -> None:
        loop = asyncio.get_running_loop()
        if self._consumer is None:
            self._consumer = loop.create_task(self._consume(), name="gpstrack-mqtt-consumer")

        runtime = self._runtime_factory(
            loop=loop,
            on_message=self.enqueue,
            topic=self._config.mqtt_topic,
            keepalive=self._config.mqtt_keepalive,
        )
        try:
            await loop.run_in_executor(
                None,
                lambda: runtime.start(
                    self._config.mqtt_broker_host,
                    self._config.mqtt_port,
                    username=self._config.mqtt_username,
                    password=self._config.mqtt_password,
                ),
            )
        except Exception as exc:
            _logger.error("MQTT runtime start failed", exc_info=True)
            raise TrackerTransportError(f"MQTT runtime start failed: {exc}") from exc
        self._runtime = runtime

    async def stop(self) -> None:
        runtime = self._runtime
        self._runtime = None
        if runtime is not None:
            try:
                await asyncio.get_running_loop().run_in_executor(None, runtime.stop)
            except Exception:
                _logger.debug("MQTT runtime stop failed", exc_info=True)

        consumer = self._consumer
        self._consumer = None
        if consumer is not None:
            consumer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await consumer
