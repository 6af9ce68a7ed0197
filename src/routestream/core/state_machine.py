"""Producer connection state machine.

One machine owns one transport and two cancellable timers:
- the periodic-send timer, alive only while CONNECTED
- the reconnect timer, alive only while RECONNECT_SCHEDULED

Transitions:
    DISCONNECTED -> CONNECTING            start() or reconnect timer fired
    CONNECTING -> CONNECTED               handshake done, attempts reset to 0
    CONNECTING -> DISCONNECTED            handshake failed or timed out
    CONNECTED -> DISCONNECTED             peer close, network or send failure
    DISCONNECTED -> RECONNECT_SCHEDULED   attempts += 1 while attempts <= max
    DISCONNECTED -> STOPPED               attempts > max (exhausted)
    any -> STOPPED                        stop()

Every timer callback and transport callback carries the connection
generation it was created for, so a late callback from an old connection
never acts on the current one.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from functools import partial
from typing import Any, Callable, Optional, Tuple

from routestream.core.codec import ACK_EVENT, ERROR_EVENT, STREAM_EVENT
from routestream.core.config import EmitterConfig
from routestream.core.errors import ReconnectExhausted
from routestream.core.models import ConnectionState
from routestream.core.ports import TransportPort

LOGGER = logging.getLogger(__name__)

BatchSource = Callable[[], Tuple[str, int]]


class ConnectionStateMachine:
    """Drives connect, periodic send, and fixed-delay reconnect for a producer."""

    def __init__(
        self,
        transport: TransportPort,
        batch_factory: BatchSource,
        config: Optional[EmitterConfig] = None,
    ) -> None:
        self._transport = transport
        self._batch_factory = batch_factory
        self._config = config or EmitterConfig()

        self._state = ConnectionState.DISCONNECTED
        self._reconnect_attempts = 0
        self._generation = 0
        self._exhausted = False
        self._send_timer: Optional[asyncio.TimerHandle] = None
        self._reconnect_timer: Optional[asyncio.TimerHandle] = None
        self._tasks: set[asyncio.Task] = set()
        self._stopped: Optional[asyncio.Event] = None

        self.batches_sent = 0
        self.acks_received = 0
        self.errors_received = 0
        self.last_ack: Optional[dict] = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def has_pending_timers(self) -> bool:
        return self._send_timer is not None or self._reconnect_timer is not None

    # -- lifecycle -----------------------------------------------------------

    def start(self) -> None:
        """Begin connecting. Allowed from DISCONNECTED or STOPPED (restart)."""

        if self._state not in (ConnectionState.DISCONNECTED, ConnectionState.STOPPED):
            LOGGER.warning("start() ignored in state %s", self._state.value)
            return

        self._stopped = asyncio.Event()
        self._reconnect_attempts = 0
        self._exhausted = False
        self._set_state(ConnectionState.DISCONNECTED)
        self._begin_connect()

    async def stop(self) -> None:
        """Cancel all timers, close the transport, and enter STOPPED."""

        if self._state is ConnectionState.STOPPED:
            return
        LOGGER.info("Stopping emitter")
        self._enter_stopped(exhausted=False)
        await self._close_transport()

    async def run(self) -> None:
        """Start and wait until STOPPED.

        Raises ReconnectExhausted if the machine stopped because it ran out
        of reconnect attempts.
        """

        self.start()
        if self._stopped is not None:
            await self._stopped.wait()
        if self._exhausted:
            raise ReconnectExhausted(self._config.max_reconnect_attempts)

    def get_status(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "isConnected": self._state is ConnectionState.CONNECTED,
            "reconnectAttempts": self._reconnect_attempts,
            "maxReconnectAttempts": self._config.max_reconnect_attempts,
            "messageInterval": self._config.message_interval,
            "hasActiveInterval": self._send_timer is not None,
            "batchesSent": self.batches_sent,
            "acksReceived": self.acks_received,
            "errorsReceived": self.errors_received,
        }

    # -- connecting ----------------------------------------------------------

    def _begin_connect(self) -> None:
        self._generation += 1
        self._set_state(ConnectionState.CONNECTING)
        self._spawn(self._connect(self._generation))

    async def _connect(self, generation: int) -> None:
        try:
            await asyncio.wait_for(
                self._transport.connect(
                    partial(self._on_event, generation),
                    partial(self._on_closed, generation),
                ),
                timeout=self._config.connect_timeout,
            )
        except asyncio.TimeoutError:
            self._on_connect_failed(generation, "handshake timed out")
            return
        except Exception as exc:
            self._on_connect_failed(generation, str(exc) or type(exc).__name__)
            return

        if not self._is_current(generation, ConnectionState.CONNECTING):
            # stop() won the race against the handshake.
            await self._close_transport()
            return

        self._set_state(ConnectionState.CONNECTED)
        self._reconnect_attempts = 0
        LOGGER.info("Connected to listener service")
        self._spawn(self._send_batch(generation))
        self._arm_send_timer(generation)

    def _on_connect_failed(self, generation: int, reason: str) -> None:
        if not self._is_current(generation, ConnectionState.CONNECTING):
            return
        LOGGER.error("Socket connection error: %s", reason)
        self._set_state(ConnectionState.DISCONNECTED)
        self._schedule_reconnect()

    # -- connected -----------------------------------------------------------

    def _arm_send_timer(self, generation: int) -> None:
        loop = asyncio.get_running_loop()
        self._send_timer = loop.call_later(
            self._config.message_interval, self._on_send_timer, generation
        )

    def _on_send_timer(self, generation: int) -> None:
        self._send_timer = None
        if not self._is_current(generation, ConnectionState.CONNECTED):
            return
        self._spawn(self._send_batch(generation))
        self._arm_send_timer(generation)

    async def _send_batch(self, generation: int) -> None:
        if not self._is_current(generation, ConnectionState.CONNECTED):
            LOGGER.warning("Cannot send message - not connected to listener")
            return

        stream, message_count = self._batch_factory()
        payload = {
            "stream": stream,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "messageCount": message_count,
        }
        LOGGER.info("Sending message stream with %s messages", message_count)
        try:
            await asyncio.wait_for(
                self._transport.send(STREAM_EVENT, payload),
                timeout=self._config.send_timeout,
            )
        except asyncio.TimeoutError:
            self._on_closed(generation, "send timed out")
            return
        except Exception as exc:
            self._on_closed(generation, f"send failed: {exc}")
            return
        self.batches_sent += 1

    def _on_event(self, generation: int, event: str, data: dict) -> None:
        if generation != self._generation:
            return
        if event == ACK_EVENT:
            self.acks_received += 1
            self.last_ack = data
            LOGGER.info(
                "Listener acknowledged message receipt: messageCount=%s processed=%s valid=%s invalid=%s saved=%s",
                data.get("messageCount"),
                data.get("processedCount"),
                data.get("validCount"),
                data.get("invalidCount"),
                data.get("savedCount"),
            )
        elif event == ERROR_EVENT:
            self.errors_received += 1
            LOGGER.error("Listener reported processing error: %s", data.get("error"))
        else:
            LOGGER.debug("Ignoring unknown event %s", event)

    def _on_closed(self, generation: int, reason: str) -> None:
        if not self._is_current(generation, ConnectionState.CONNECTED):
            return
        LOGGER.warning("Disconnected from listener service. Reason: %s", reason)
        self._cancel_send_timer()
        self._set_state(ConnectionState.DISCONNECTED)
        self._spawn(self._close_transport())
        self._schedule_reconnect()

    # -- reconnecting --------------------------------------------------------

    def _schedule_reconnect(self) -> None:
        self._reconnect_attempts += 1
        if self._reconnect_attempts > self._config.max_reconnect_attempts:
            LOGGER.error(
                "Max reconnection attempts (%s) reached. Stopping emitter.",
                self._config.max_reconnect_attempts,
            )
            self._enter_stopped(exhausted=True)
            return

        self._set_state(ConnectionState.RECONNECT_SCHEDULED)
        LOGGER.info(
            "Scheduling reconnection attempt %s/%s in %s seconds",
            self._reconnect_attempts,
            self._config.max_reconnect_attempts,
            self._config.reconnect_interval,
        )
        loop = asyncio.get_running_loop()
        self._reconnect_timer = loop.call_later(
            self._config.reconnect_interval, self._on_reconnect_timer, self._generation
        )

    def _on_reconnect_timer(self, generation: int) -> None:
        self._reconnect_timer = None
        if not self._is_current(generation, ConnectionState.RECONNECT_SCHEDULED):
            return
        LOGGER.info("Reconnection attempt %s...", self._reconnect_attempts)
        self._begin_connect()

    # -- helpers -------------------------------------------------------------

    def _enter_stopped(self, exhausted: bool) -> None:
        self._cancel_send_timer()
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None

        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()

        self._generation += 1
        self._exhausted = exhausted
        self._set_state(ConnectionState.STOPPED)
        if self._stopped is not None:
            self._stopped.set()

    def _cancel_send_timer(self) -> None:
        if self._send_timer is not None:
            self._send_timer.cancel()
            self._send_timer = None
            LOGGER.info("Stopped periodic messaging")

    async def _close_transport(self) -> None:
        try:
            await self._transport.close()
        except Exception:
            LOGGER.exception("Failed to close transport")

    def _is_current(self, generation: int, state: ConnectionState) -> bool:
        return generation == self._generation and self._state is state

    def _set_state(self, state: ConnectionState) -> None:
        if state is not self._state:
            LOGGER.debug("Emitter state %s -> %s", self._state.value, state.value)
        self._state = state

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
