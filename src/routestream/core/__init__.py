"""Core domain package for routestream.

Core contains crypto, framing, validation, and the producer state machine
without any websocket or storage-specific code, keeping the business logic
portable.
"""
