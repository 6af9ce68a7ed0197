"""Websocket listener adapter.

Hosts the batch ingestion endpoint on an aiohttp application. Each emitter
connection is served by its own handler task, so batches from different
emitters interleave while batches on one connection run in arrival order.
The HTTP routes only surface counters and recent buckets; no logic lives
there.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from aiohttp import WSMsgType, web

from routestream.adapters.sqlite_storage import SQLiteBucketStore
from routestream.core.codec import ACK_EVENT, ERROR_EVENT, STREAM_EVENT
from routestream.core.config import ListenerConfig
from routestream.core.processor import BatchProcessor

LOGGER = logging.getLogger(__name__)

SEND_TIMEOUT = 5.0
SHUTTING_DOWN_REASON = "Listener is shutting down"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ListenerService:
    """Accepts emitter connections and feeds their batches to the processor."""

    def __init__(
        self,
        processor: BatchProcessor,
        store: SQLiteBucketStore,
        config: Optional[ListenerConfig] = None,
    ) -> None:
        self._processor = processor
        self._store = store
        self._config = config or ListenerConfig()
        self._emitters: dict[str, dict[str, Any]] = {}
        self._sockets: set[web.WebSocketResponse] = set()
        self._inflight: set[asyncio.Task] = set()
        self._accepting = True
        self._started_at = time.monotonic()
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/ws", self.handle_ws)
        app.router.add_get("/health", self.handle_health)
        app.router.add_get("/stats", self.handle_stats)
        app.router.add_get("/recent-data", self.handle_recent_data)
        return app

    # -- lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        self._runner = web.AppRunner(self.create_app())
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self._config.host, self._config.port)
        await self._site.start()
        LOGGER.info("Listener service started on %s:%s", self._config.host, self._config.port)

    async def shutdown(self) -> bool:
        """Stop accepting connections and drain in-flight batches.

        Returns False when in-flight batches did not finish within the grace
        period; the caller is expected to exit with a failure status.
        """

        LOGGER.info("Received shutdown signal, closing server gracefully...")
        self._accepting = False
        if self._site is not None:
            await self._site.stop()

        drained = await self._drain(self._config.shutdown_grace)
        if not drained:
            LOGGER.critical("Forced shutdown due to timeout")

        for ws in list(self._sockets):
            await ws.close()
        for task in list(self._inflight):
            task.cancel()
        if self._runner is not None:
            await self._runner.cleanup()
        if drained:
            LOGGER.info("Listener service shut down complete")
        return drained

    async def _drain(self, grace: float) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + grace
        while self._inflight:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False
            LOGGER.info("Waiting for %s in-flight batches", len(self._inflight))
            await asyncio.wait(set(self._inflight), timeout=remaining)
        return True

    def get_status(self) -> dict[str, Any]:
        return {
            "port": self._config.port,
            "connectedEmitters": len(self._emitters),
            "inFlightBatches": len(self._inflight),
            "processingStats": self._processor.stats.snapshot(),
            "uptime": time.monotonic() - self._started_at,
        }

    # -- websocket -----------------------------------------------------------

    async def handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(heartbeat=30)
        await ws.prepare(request)

        emitter_id = uuid.uuid4().hex
        self._emitters[emitter_id] = {
            "connectedAt": _now_iso(),
            "address": request.remote,
            "messagesReceived": 0,
            "lastMessageAt": None,
        }
        self._sockets.add(ws)
        LOGGER.info("New emitter connected: %s from %s", emitter_id, request.remote)

        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    await self._dispatch(ws, emitter_id, msg.data)
                elif msg.type == WSMsgType.ERROR:
                    LOGGER.error("Socket error from %s: %s", emitter_id, ws.exception())
        finally:
            self._sockets.discard(ws)
            self._emitters.pop(emitter_id, None)
            LOGGER.info("Emitter disconnected: %s", emitter_id)
        return ws

    async def _dispatch(self, ws: web.WebSocketResponse, emitter_id: str, raw: str) -> None:
        try:
            frame = json.loads(raw)
            event = frame["event"]
            data = frame.get("data")
        except (json.JSONDecodeError, KeyError, TypeError) as exc:
            LOGGER.warning("Malformed frame from %s: %s", emitter_id, exc)
            await self._emit(ws, ERROR_EVENT, {"error": "Malformed frame", "timestamp": _now_iso()})
            return

        if event != STREAM_EVENT:
            LOGGER.debug("Ignoring event %s from %s", event, emitter_id)
            return
        if not self._accepting:
            LOGGER.warning("Refusing message stream from %s during shutdown", emitter_id)
            await self._emit(ws, ERROR_EVENT, {"error": SHUTTING_DOWN_REASON, "timestamp": _now_iso()})
            return

        task = asyncio.get_running_loop().create_task(self.handle_message_stream(ws, emitter_id, data))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        # Shielded so a dropped connection does not abort a batch mid-way;
        # shutdown drains these tasks instead.
        await asyncio.shield(task)

    async def handle_message_stream(self, ws: web.WebSocketResponse, emitter_id: str, data: Any) -> None:
        info = self._emitters.get(emitter_id)
        if info is not None:
            info["messagesReceived"] += 1
            info["lastMessageAt"] = _now_iso()

        message_count = data.get("messageCount") if isinstance(data, dict) else None
        LOGGER.info("Got message stream from %s with %s messages", emitter_id, message_count)

        try:
            result = await self._processor.process_stream(data)
        except Exception as exc:
            LOGGER.error("Failed to handle message stream: %s", exc)
            await self._emit(ws, ERROR_EVENT, {"error": str(exc), "timestamp": _now_iso()})
            return

        await self._emit(ws, ACK_EVENT, result.to_wire())

    async def _emit(self, ws: web.WebSocketResponse, event: str, payload: dict) -> None:
        if ws.closed:
            LOGGER.warning("Cannot emit %s, connection already closed", event)
            return
        try:
            await asyncio.wait_for(ws.send_json({"event": event, "data": payload}), timeout=SEND_TIMEOUT)
        except (asyncio.TimeoutError, ConnectionResetError, RuntimeError) as exc:
            LOGGER.error("Failed to emit %s: %s", event, exc)

    # -- http ----------------------------------------------------------------

    async def handle_health(self, request: web.Request) -> web.Response:
        return web.json_response(
            {
                "status": "healthy",
                "service": "listener",
                "timestamp": _now_iso(),
                "uptime": time.monotonic() - self._started_at,
                "connectedEmitters": len(self._emitters),
                "processingStats": self._processor.stats.snapshot(),
            }
        )

    async def handle_stats(self, request: web.Request) -> web.Response:
        return web.json_response(
            {
                "processingStats": self._processor.stats.snapshot(),
                "connectedEmitters": [{"id": key, **info} for key, info in self._emitters.items()],
            }
        )

    async def handle_recent_data(self, request: web.Request) -> web.Response:
        try:
            limit = int(request.query.get("limit", 10))
        except ValueError:
            limit = 10
        try:
            summaries = await asyncio.to_thread(self._store.recent_summaries, limit)
        except Exception:
            LOGGER.exception("Failed to fetch recent data")
            return web.json_response({"error": "Failed to fetch recent data"}, status=500)
        return web.json_response(summaries)
