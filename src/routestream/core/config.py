"""Core configuration dataclasses.

We keep config parsing outside the core, but these dataclasses define the
shape the core expects so adapters and app layers can build safely.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class CryptoConfig:
    """Symmetric key material for envelope encryption."""

    secret_key: str


@dataclass(frozen=True)
class EmitterConfig:
    """Producer connection and scheduling settings."""

    listener_host: str = "localhost"
    listener_port: int = 3001
    message_interval: float = 10.0
    reconnect_interval: float = 5.0
    max_reconnect_attempts: int = 10
    connect_timeout: float = 5.0
    send_timeout: float = 5.0

    @property
    def listener_url(self) -> str:
        return f"http://{self.listener_host}:{self.listener_port}/ws"


@dataclass(frozen=True)
class ListenerConfig:
    """Consumer server and persistence settings."""

    host: str = "0.0.0.0"
    port: int = 3001
    db_path: str = "routestream.db"
    persist_timeout: float = 5.0
    shutdown_grace: float = 10.0
