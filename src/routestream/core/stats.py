"""Process-wide ingestion counters."""

from __future__ import annotations

import threading

from routestream.core.models import BatchResult


class ProcessingStats:
    """Monotonic counters folded in once per completed batch.

    Each fold takes a lock so concurrent batch completions never interleave
    their increments.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._total_received = 0
        self._total_processed = 0
        self._total_valid = 0
        self._total_invalid = 0
        self._total_saved = 0
        self._errors = 0

    def fold(self, result: BatchResult) -> None:
        with self._lock:
            self._total_received += result.message_count
            self._total_processed += result.processed_count
            self._total_valid += result.valid_count
            self._total_invalid += result.invalid_count
            self._total_saved += result.saved_count
            self._errors += len(result.errors)

    @property
    def total_saved(self) -> int:
        with self._lock:
            return self._total_saved

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return {
                "totalReceived": self._total_received,
                "totalProcessed": self._total_processed,
                "totalValid": self._total_valid,
                "totalInvalid": self._total_invalid,
                "totalSaved": self._total_saved,
                "errors": self._errors,
            }
