"""Ports (interfaces) used by the core.

Ports define the minimal contracts for storage and transport adapters so
that the core can be reused with different backends.
"""

from __future__ import annotations

from typing import Any, Callable, Mapping, Optional, Protocol

from routestream.core.models import Record

EventCallback = Callable[[str, dict], None]
ClosedCallback = Callable[[str], None]


class BucketStorePort(Protocol):
    """Storage operations required by the ingestion pipeline.

    `append` must be atomic per bucket key under concurrent callers and raise
    PersistenceError on failure. `deadline` is a `time.monotonic()` reading;
    once it passes, the store must give up without committing.
    """

    def append(self, fields: Mapping[str, Any], deadline: Optional[float] = None) -> Record:
        ...


class TransportPort(Protocol):
    """Producer-side connection used by the state machine.

    `connect` resolves once the handshake completes and raises TransportError
    on failure. After a successful connect the transport reports inbound
    events through `on_event` and a peer or network close through
    `on_closed`; a close requested via `close` is not reported.
    """

    async def connect(self, on_event: EventCallback, on_closed: ClosedCallback) -> None:
        ...

    async def send(self, event: str, payload: dict) -> None:
        ...

    async def close(self) -> None:
        ...
