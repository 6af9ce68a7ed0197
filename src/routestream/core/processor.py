"""Core batch ingestion pipeline.

This module is transport-agnostic. It only relies on the bucket store port,
enabling other servers or adapters without changes here.

The pipeline enforces a strict order per batch:
1) Decode the stream into envelopes (a framing error aborts the batch)
2) For each envelope, in order: decrypt, parse, validate the tag
3) Persist valid records to their minute bucket
4) Fold the batch counts into the shared stats
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Mapping

from routestream.core.codec import decode_batch
from routestream.core.crypto import CryptoIntegrityLayer, strip_tag, validate_tag
from routestream.core.errors import (
    DecryptionError,
    FormatError,
    MalformedEnvelopeError,
    MalformedPayloadError,
    PersistenceError,
)
from routestream.core.models import BatchResult, ItemOutcome, ItemResult, Record, minute_bucket_key
from routestream.core.ports import BucketStorePort
from routestream.core.stats import ProcessingStats

LOGGER = logging.getLogger(__name__)

REQUIRED_FIELDS = ("name", "origin", "destination")
TAG_MISMATCH_REASON = "Invalid secret key"


class BatchProcessor:
    """Orchestrates decryption, validation, persistence, and stats."""

    def __init__(
        self,
        crypto: CryptoIntegrityLayer,
        store: BucketStorePort,
        stats: ProcessingStats,
        persist_timeout: float = 5.0,
    ) -> None:
        self._crypto = crypto
        self._store = store
        self._stats = stats
        self._persist_timeout = persist_timeout

    @property
    def stats(self) -> ProcessingStats:
        return self._stats

    async def process_stream(self, payload: Mapping[str, Any]) -> BatchResult:
        """Process one `encrypted_message_stream` payload.

        Raises FormatError when the stream cannot be framed; stats are left
        untouched in that case.
        """

        started = time.monotonic()
        if not isinstance(payload, Mapping):
            raise FormatError("Batch payload is not an object")
        envelopes = decode_batch(payload.get("stream"))

        result = BatchResult(message_count=len(envelopes))
        # Items run one at a time so per-item results keep the input order.
        for index, envelope in enumerate(envelopes):
            result.add(await self._process_item(index, envelope))

        result.processing_time_ms = int((time.monotonic() - started) * 1000)
        result.timestamp = datetime.now(timezone.utc)
        self._stats.fold(result)

        LOGGER.info(
            "Processed message stream in %sms: processed=%s valid=%s invalid=%s saved=%s errors=%s",
            result.processing_time_ms,
            result.processed_count,
            result.valid_count,
            result.invalid_count,
            result.saved_count,
            len(result.errors),
        )
        return result

    async def _process_item(self, index: int, envelope: str) -> ItemResult:
        try:
            message = self._crypto.decrypt_message(envelope)
            if not validate_tag(message):
                LOGGER.warning("Invalid secret_key for message %s, discarding", index)
                return ItemResult(index, ItemOutcome.INVALID, TAG_MISMATCH_REASON)
        except (MalformedEnvelopeError, DecryptionError, MalformedPayloadError) as exc:
            LOGGER.warning("Failed to process encrypted message %s: %s", index, exc)
            return ItemResult(index, ItemOutcome.INVALID, str(exc))
        except Exception as exc:
            LOGGER.exception("Unexpected error on message %s", index)
            return ItemResult(index, ItemOutcome.INVALID, str(exc) or type(exc).__name__)

        fields = strip_tag(message)
        missing = [name for name in REQUIRED_FIELDS if not isinstance(fields.get(name), str)]
        if missing:
            reason = f"Missing required fields: {', '.join(missing)}"
            LOGGER.warning("Message %s rejected: %s", index, reason)
            return ItemResult(index, ItemOutcome.INVALID, reason)

        try:
            record = await self._persist({name: fields[name] for name in REQUIRED_FIELDS})
        except PersistenceError as exc:
            LOGGER.error("Failed to save message %s: %s", index, exc)
            return ItemResult(index, ItemOutcome.VALID_UNSAVED, str(exc))

        LOGGER.debug("Saved message %s route=%s", index, record.route)
        return ItemResult(index, ItemOutcome.VALID_SAVED, bucket_key=minute_bucket_key(record.timestamp))

    async def _persist(self, fields: Mapping[str, Any]) -> Record:
        # The store rolls back once the deadline passes; its answer is final.
        deadline = time.monotonic() + self._persist_timeout
        try:
            return await asyncio.to_thread(self._store.append, fields, deadline)
        except PersistenceError:
            raise
        except Exception as exc:
            raise PersistenceError(str(exc) or type(exc).__name__) from exc
