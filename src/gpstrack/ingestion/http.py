"""HTTP ingestion endpoint, REST reads and the WebSocket push channel.

Handlers stay thin: parsing, status codes and JSON envelopes live here, every
state change goes through :class:`gpstrack.server.TrackerServer`.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from aiohttp import WSMsgType, web

from gpstrack import __version__
from gpstrack._constants import (
    DEFAULT_HISTORY_LIMIT,
    DEVICE_TOKEN_HEADER,
    DEVICE_TOKEN_QUERY,
    INVALID_TOKEN_MESSAGE,
    MISSING_FIELDS_MESSAGE,
)
from gpstrack._redact import redact_for_log, redact_url
from gpstrack.exceptions import TrackerAuthError, TrackerPersistenceError, TrackerValidationError
from gpstrack.ingestion.normalize import has_required_fields, normalize_position, safe_int
from gpstrack.server import TrackerServer
from gpstrack.state.events import IngestionSource

_logger = logging.getLogger(__name__)

SERVER_KEY = web.AppKey("tracker_server", TrackerServer)

_Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]
_FORM_TYPES = frozenset({"application/x-www-form-urlencoded", "multipart/form-data"})


def _error(status: int, message: str) -> web.Response:
    return web.json_response({"success": False, "error": message}, status=status)


async def _read_payload(request: web.Request) -> Any:
    if request.content_type in _FORM_TYPES:
        return dict(await request.post())
    return await request.json()


class TrackerHttpApi:
    """Route handlers bound to one :class:`TrackerServer`."""

    def __init__(self, server: TrackerServer) -> None:
        self._server = server

    async def handle_track(self, request: web.Request) -> web.Response:
        config = self._server.config
        try:
            payload = await asyncio.wait_for(_read_payload(request), timeout=config.ingest_timeout)
        except TimeoutError:
            _logger.warning("Reading /api/track body from %s timed out", request.remote)
            return _error(408, "Request timeout")
        except ValueError:
            payload = None

        if not isinstance(payload, Mapping) or not has_required_fields(payload):
            _logger.debug("Rejected track request: %s", redact_for_log(payload))
            return _error(400, MISSING_FIELDS_MESSAGE)

        try:
            record = normalize_position(payload, received_at_ms=self._server.now_ms())
        except TrackerValidationError as exc:
            _logger.debug("Rejected track request: %s payload=%s", exc, redact_for_log(payload))
            return _error(400, str(exc))

        token = request.headers.get(DEVICE_TOKEN_HEADER) or request.query.get(DEVICE_TOKEN_QUERY)
        try:
            self._server.authorize(token)
        except TrackerAuthError:
            _logger.debug(
                "Invalid device token for %s from %s on %s",
                record.device_id,
                request.remote,
                redact_url(request.path_qs),
            )
            return _error(401, INVALID_TOKEN_MESSAGE)

        self._server.accept(record, source=IngestionSource.HTTP)
        return web.json_response({"success": True, "message": "Position updated successfully"})

    async def handle_positions(self, _request: web.Request) -> web.Response:
        positions = self._server.positions()
        return web.json_response(
            {
                "success": True,
                "count": len(positions),
                "devices": [record.model_dump() for record in positions],
            }
        )

    async def handle_stats(self, _request: web.Request) -> web.Response:
        stats = self._server.stats()
        return web.json_response({"success": True, "stats": stats.model_dump(by_alias=True)})

    async def handle_history(self, request: web.Request) -> web.Response:
        device_id = request.match_info["device_id"]
        limit = safe_int(request.query.get("limit"))
        if limit is None or limit <= 0:
            limit = DEFAULT_HISTORY_LIMIT
        limit = min(limit, self._server.config.history_points)

        try:
            positions = await self._server.device_history(device_id, limit)
        except TrackerPersistenceError:
            _logger.error("Error fetching history for %s", device_id, exc_info=True)
            return _error(500, "Database error")

        return web.json_response(
            {
                "success": True,
                "device_id": device_id,
                "count": len(positions),
                "positions": [record.model_dump() for record in positions],
            }
        )

    async def handle_device_stats(self, request: web.Request) -> web.Response:
        device_id = request.match_info["device_id"]
        try:
            stats = await self._server.history_writer.device_stats(device_id)
        except TrackerPersistenceError:
            _logger.error("Error fetching device stats for %s", device_id, exc_info=True)
            return _error(500, "Database error")
        if stats is None:
            return _error(404, "Unknown device")
        return web.json_response({"success": True, "stats": stats})

    async def handle_health(self, _request: web.Request) -> web.Response:
        return web.json_response(
            {
                "status": "healthy",
                "timestamp": self._server.now_ms(),
                "uptime": self._server.uptime_ms,
                "version": __version__,
                "mqtt": self._server.mqtt_status,
            }
        )

    async def handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        # Pings and pongs are surfaced to this loop so the broadcaster owns liveness.
        ws = web.WebSocketResponse(autoping=False)
        await ws.prepare(request)
        _logger.info("WebSocket client connected from %s", request.remote)

        subscriber = self._server.broadcaster.subscribe(ws)
        try:
            async for msg in ws:
                if msg.type == WSMsgType.PONG:
                    subscriber.mark_alive()
                elif msg.type == WSMsgType.PING:
                    subscriber.mark_alive()
                    await ws.pong(msg.data)
                elif msg.type == WSMsgType.ERROR:
                    _logger.warning("WebSocket error: %s", ws.exception())
        finally:
            self._server.broadcaster.unsubscribe(subscriber)
            _logger.info("WebSocket client disconnected")
        return ws


def _cors_middleware(origin: str) -> Callable[[web.Request, _Handler], Awaitable[web.StreamResponse]]:
    def allow_origin(headers: Any) -> None:
        headers["Access-Control-Allow-Origin"] = origin
        headers["Access-Control-Allow-Credentials"] = "true"

    @web.middleware
    async def cors(request: web.Request, handler: _Handler) -> web.StreamResponse:
        if request.method == "OPTIONS":
            response: web.StreamResponse = web.Response(status=204)
            response.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
            response.headers["Access-Control-Allow-Headers"] = f"Content-Type, {DEVICE_TOKEN_HEADER}"
        else:
            try:
                response = await handler(request)
            except web.HTTPException as exc:
                # Router errors such as 405 are raised, not returned.
                allow_origin(exc.headers)
                raise
        if not response.prepared:
            allow_origin(response.headers)
        return response

    return cors


@web.middleware
async def _api_error_middleware(request: web.Request, handler: _Handler) -> web.StreamResponse:
    """Serve JSON errors under ``/api``; other paths keep aiohttp's defaults."""
    if not request.path.startswith("/api"):
        return await handler(request)
    try:
        return await handler(request)
    except web.HTTPNotFound:
        return web.json_response({"error": "Not found"}, status=404)
    except web.HTTPException:
        raise
    except Exception:
        _logger.exception("Unhandled error for %s %s", request.method, redact_url(request.path_qs))
        return _error(500, "Internal server error")


async def _on_startup(app: web.Application) -> None:
    await app[SERVER_KEY].start()


async def _on_cleanup(app: web.Application) -> None:
    await app[SERVER_KEY].stop()


def create_app(server: TrackerServer) -> web.Application:
    """Build the aiohttp application; the server starts and stops with it."""
    app = web.Application(middlewares=[_cors_middleware(server.config.public_origin), _api_error_middleware])
    app[SERVER_KEY] = server
    api = TrackerHttpApi(server)

    app.router.add_post("/api/track", api.handle_track)
    app.router.add_get("/api/positions", api.handle_positions)
    app.router.add_get("/api/stats", api.handle_stats)
    app.router.add_get("/api/history/{device_id}", api.handle_history)
    app.router.add_get("/api/devices/{device_id}/stats", api.handle_device_stats)
    app.router.add_get("/api/health", api.handle_health)
    app.router.add_get("/ws", api.handle_ws)

    app.on_startup.append(_on_startup)
    app.on_cleanup.append(_on_cleanup)
    return app
