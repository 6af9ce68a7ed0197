"""Static configuration for routestream.

Non-secret settings (ports, intervals, paths, logging) live in a single JSON
file for quick edits without touching Python. Secrets come from the
environment, optionally via a `.env` file.
"""

import json
import os

from dotenv import load_dotenv

from routestream.core.config import CryptoConfig, EmitterConfig, ListenerConfig

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))

load_dotenv(os.path.join(PROJECT_ROOT, ".env"))

CONFIG_PATH = os.getenv("ROUTESTREAM_CONFIG", os.path.join(PROJECT_ROOT, "config.json"))

DEFAULT_SECRET_KEY = "routestream-default-secret-32ch!"


def _load_json_config() -> dict:
    """Load config.json with a flat, user-friendly schema."""

    if not os.path.exists(CONFIG_PATH):
        raise FileNotFoundError(f"Config file not found: {CONFIG_PATH}")

    with open(CONFIG_PATH, "r", encoding="utf-8") as handle:
        return json.load(handle)


def _resolve_path(path: str) -> str:
    return path if os.path.isabs(path) else os.path.join(PROJECT_ROOT, path)


_CONFIG = _load_json_config()

# Expose the raw config for modules that need structured access.
CONFIG = _CONFIG

# The encryption secret never lives in config.json.
CRYPTO = CryptoConfig(secret_key=os.getenv("ENCRYPTION_KEY", DEFAULT_SECRET_KEY))

# Listener: where to accept emitters and where to keep the bucket database.
_listener = _CONFIG.get("listener", {})
LISTENER = ListenerConfig(
    host=_listener.get("host", "0.0.0.0"),
    port=int(os.getenv("LISTENER_PORT", _listener.get("port", 3001))),
    db_path=_resolve_path(_listener.get("db_path", "routestream.db")),
    persist_timeout=float(_listener.get("persist_timeout_seconds", 5)),
    shutdown_grace=float(_listener.get("shutdown_grace_seconds", 10)),
)

# Emitter: which listener to reach and how often to send or retry.
_emitter = _CONFIG.get("emitter", {})
EMITTER = EmitterConfig(
    listener_host=os.getenv("LISTENER_HOST", _emitter.get("listener_host", "localhost")),
    listener_port=int(os.getenv("LISTENER_PORT", _emitter.get("listener_port", 3001))),
    message_interval=float(_emitter.get("message_interval_seconds", 10)),
    reconnect_interval=float(_emitter.get("reconnect_interval_seconds", 5)),
    max_reconnect_attempts=int(_emitter.get("max_reconnect_attempts", 10)),
    connect_timeout=float(_emitter.get("connect_timeout_seconds", 5)),
    send_timeout=float(_emitter.get("send_timeout_seconds", 5)),
)

# Names, origins, and destinations used to synthesize emitter batches.
REFERENCE_DATA_PATH = _resolve_path(_CONFIG.get("reference_data_path", "data.json"))

# Logging configuration (optional).
LOGGING = _CONFIG.get("logging", {})
