"""Adapters binding the core to SQLite and aiohttp websockets."""
