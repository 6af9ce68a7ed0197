"""Websocket emitter adapter.

`WebSocketTransport` satisfies the core TransportPort on top of an aiohttp
client session. `EmitterService` wires the transport, the batch factory and
the connection state machine together.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Optional

import aiohttp
from aiohttp import WSMsgType

from routestream.core.config import EmitterConfig
from routestream.core.crypto import CryptoIntegrityLayer
from routestream.core.errors import TransportError
from routestream.core.generator import BatchFactory, ReferenceData
from routestream.core.ports import ClosedCallback, EventCallback
from routestream.core.state_machine import ConnectionStateMachine

LOGGER = logging.getLogger(__name__)


class WebSocketTransport:
    """One websocket connection at a time, reopened on every connect()."""

    def __init__(self, url: str, heartbeat: float = 30.0) -> None:
        self._url = url
        self._heartbeat = heartbeat
        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._reader: Optional[asyncio.Task] = None
        self._closing = False

    @property
    def url(self) -> str:
        return self._url

    async def connect(self, on_event: EventCallback, on_closed: ClosedCallback) -> None:
        await self.close()
        self._closing = False
        session = aiohttp.ClientSession()
        try:
            ws = await session.ws_connect(self._url, heartbeat=self._heartbeat)
        except asyncio.CancelledError:
            await session.close()
            raise
        except (aiohttp.ClientError, OSError) as exc:
            await session.close()
            raise TransportError(f"Failed to connect to {self._url}: {exc}") from exc

        self._session = session
        self._ws = ws
        self._reader = asyncio.get_running_loop().create_task(self._read_loop(ws, on_event, on_closed))

    async def _read_loop(
        self,
        ws: aiohttp.ClientWebSocketResponse,
        on_event: EventCallback,
        on_closed: ClosedCallback,
    ) -> None:
        reason = "io server disconnect"
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    frame = json.loads(msg.data)
                    on_event(frame["event"], frame.get("data") or {})
                except (json.JSONDecodeError, KeyError, TypeError) as exc:
                    LOGGER.warning("Malformed frame from listener: %s", exc)
            elif msg.type == WSMsgType.ERROR:
                reason = f"transport error: {ws.exception()}"
                break
        if not self._closing:
            on_closed(reason)

    async def send(self, event: str, payload: dict) -> None:
        ws = self._ws
        if ws is None or ws.closed:
            raise TransportError("Not connected")
        try:
            await ws.send_json({"event": event, "data": payload})
        except (aiohttp.ClientError, ConnectionResetError, RuntimeError) as exc:
            raise TransportError(f"Send failed: {exc}") from exc

    async def close(self) -> None:
        self._closing = True
        ws, session, reader = self._ws, self._session, self._reader
        self._ws = self._session = self._reader = None
        if ws is not None:
            await ws.close()
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
        if session is not None:
            await session.close()


class EmitterService:
    """Producer process: generates batches and ships them to the listener."""

    def __init__(
        self,
        config: EmitterConfig,
        crypto: CryptoIntegrityLayer,
        data: ReferenceData,
        transport: Optional[WebSocketTransport] = None,
    ) -> None:
        self._config = config
        self._transport = transport or WebSocketTransport(config.listener_url)
        self._machine = ConnectionStateMachine(
            transport=self._transport,
            batch_factory=BatchFactory(data, crypto),
            config=config,
        )

    @property
    def machine(self) -> ConnectionStateMachine:
        return self._machine

    async def run(self) -> None:
        LOGGER.info("Starting Emitter Service - connecting to %s", self._transport.url)
        await self._machine.run()

    async def stop(self) -> None:
        await self._machine.stop()
        LOGGER.info("Emitter Service stopped")

    def get_status(self) -> dict[str, Any]:
        status = self._machine.get_status()
        status["listenerUrl"] = self._transport.url
        return status
