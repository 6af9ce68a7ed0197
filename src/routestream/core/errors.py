"""Error taxonomy shared by the core and adapters.

Item-level errors (envelope, decryption, payload, persistence) are caught
inside the batch loop. Batch-level errors abort one batch. Connection-level
errors only drive the producer state machine.
"""

from __future__ import annotations


class RoutestreamError(Exception):
    """Base class for all routestream errors."""


class FormatError(RoutestreamError):
    """The batch framing could not be decoded."""


class MalformedEnvelopeError(RoutestreamError):
    """An envelope is not `<hex iv>:<hex ciphertext>`."""


class DecryptionError(RoutestreamError):
    """The envelope could not be decrypted."""


class MalformedPayloadError(RoutestreamError):
    """Decrypted bytes are not a JSON object, or required fields are missing."""


class PersistenceError(RoutestreamError):
    """The bucket store failed or timed out while appending a record."""


class TransportError(RoutestreamError):
    """The producer transport failed to connect, send, or stay open."""


class ReconnectExhausted(RoutestreamError):
    """The producer gave up after too many reconnect attempts."""

    def __init__(self, attempts: int) -> None:
        super().__init__(f"Max reconnection attempts ({attempts}) reached")
        self.attempts = attempts
