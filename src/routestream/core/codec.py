"""Batch framing helpers (core domain).

A batch is a sequence of envelopes joined with `|`, which never appears in
hex output or in the envelope separator.
"""

from __future__ import annotations

from typing import Iterable

from routestream.core.errors import FormatError

BATCH_DELIMITER = "|"


def encode_batch(envelopes: Iterable[str]) -> str:
    return BATCH_DELIMITER.join(envelopes)


def decode_batch(stream: object) -> list[str]:
    """Split a batch stream into envelopes, preserving order.

    Empty segments (after trimming) are dropped.
    """

    if not stream or not isinstance(stream, str):
        raise FormatError("Invalid message stream format")
    return [part for part in stream.split(BATCH_DELIMITER) if part.strip()]


# Event names carried in websocket frames: {"event": <name>, "data": {...}}.
STREAM_EVENT = "encrypted_message_stream"
ACK_EVENT = "message_received"
ERROR_EVENT = "processing_error"
