"""Core domain models.

These dataclasses are shared across the core and adapters to avoid tight
coupling to aiohttp or SQLite types.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


@dataclass(frozen=True)
class Record:
    """A single persisted event record."""

    name: str
    origin: str
    destination: str
    timestamp: datetime
    record_id: str

    @property
    def route(self) -> str:
        return route_key(self.origin, self.destination)


@dataclass(frozen=True)
class MinuteBucket:
    """Snapshot of one minute of aggregated records as read from the store."""

    bucket_key: str
    timestamp: datetime
    year_month: str
    date_only: str
    hour: int
    records: tuple[Record, ...]
    record_count: int
    routes: dict[str, int]
    name_frequency: dict[str, int]
    first_record_time: Optional[datetime]
    last_record_time: Optional[datetime]
    created_at: datetime
    updated_at: datetime

    def summary(self) -> dict[str, Any]:
        """Return the JSON-friendly subset used by the recent-data route."""

        return {
            "minuteBucket": self.bucket_key,
            "timestamp": self.timestamp.isoformat(),
            "recordCount": self.record_count,
            "routes": [{"route": route, "count": count} for route, count in self.routes.items()],
            "nameFrequency": [{"name": name, "count": count} for name, count in self.name_frequency.items()],
        }


def route_key(origin: str, destination: str) -> str:
    return f"{origin}->{destination}"


def minute_bucket_key(moment: datetime) -> str:
    """Sortable key of the minute containing `moment`, e.g. 2024-01-15T14:05."""

    return moment.strftime("%Y-%m-%dT%H:%M")


class ItemOutcome(str, Enum):
    VALID_SAVED = "valid_saved"
    VALID_UNSAVED = "valid_unsaved"
    INVALID = "invalid"


@dataclass(frozen=True)
class ItemResult:
    """Outcome of decrypting, validating, and persisting one envelope."""

    index: int
    outcome: ItemOutcome
    reason: Optional[str] = None
    bucket_key: Optional[str] = None

    @property
    def valid(self) -> bool:
        return self.outcome is not ItemOutcome.INVALID

    @property
    def saved(self) -> bool:
        return self.outcome is ItemOutcome.VALID_SAVED


@dataclass(frozen=True)
class ItemError:
    index: int
    reason: str

    def to_wire(self) -> dict[str, Any]:
        return {"messageIndex": self.index, "error": self.reason}


@dataclass
class BatchResult:
    """Per-batch counts reported back to the producer."""

    message_count: int = 0
    processed_count: int = 0
    valid_count: int = 0
    invalid_count: int = 0
    saved_count: int = 0
    errors: list[ItemError] = field(default_factory=list)
    processing_time_ms: int = 0
    timestamp: Optional[datetime] = None

    def add(self, item: ItemResult) -> None:
        self.processed_count += 1
        if item.valid:
            self.valid_count += 1
            if item.saved:
                self.saved_count += 1
        else:
            self.invalid_count += 1
        if item.reason is not None and not item.saved:
            self.errors.append(ItemError(index=item.index, reason=item.reason))

    def to_wire(self) -> dict[str, Any]:
        return {
            "messageCount": self.message_count,
            "processedCount": self.processed_count,
            "validCount": self.valid_count,
            "invalidCount": self.invalid_count,
            "savedCount": self.saved_count,
            "errors": [error.to_wire() for error in self.errors],
            "processingTime": self.processing_time_ms,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECT_SCHEDULED = "reconnect_scheduled"
    STOPPED = "stopped"
