from __future__ import annotations

import asyncio
import random
import time
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

import pytest

from routestream.adapters.sqlite_storage import SQLiteBucketStore
from routestream.core.codec import encode_batch
from routestream.core.crypto import TAG_FIELD, CryptoIntegrityLayer, tag_message
from routestream.core.errors import FormatError, PersistenceError
from routestream.core.generator import BatchFactory, ReferenceData
from routestream.core.models import Record
from routestream.core.processor import BatchProcessor
from routestream.core.stats import ProcessingStats

CRYPTO = CryptoIntegrityLayer("test-secret")
ASHA = {"name": "Asha", "origin": "Mumbai", "destination": "Delhi"}


class FakeStore:
    def __init__(self) -> None:
        self.appended: list[dict] = []

    def append(self, fields: Mapping[str, Any], deadline: Optional[float] = None) -> Record:
        self.appended.append(dict(fields))
        return Record(
            name=fields["name"],
            origin=fields["origin"],
            destination=fields["destination"],
            timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc),
            record_id=f"id-{len(self.appended)}",
        )


class FailingStore:
    def append(self, fields: Mapping[str, Any], deadline: Optional[float] = None) -> Record:
        raise PersistenceError("disk full")


def _slow_clock(delay: float):
    def clock() -> datetime:
        time.sleep(delay)
        return datetime.now(timezone.utc)

    return clock


def _envelope(fields: dict) -> str:
    return CRYPTO.encrypt_message(tag_message(fields))


def _payload(envelopes: list[str]) -> dict:
    return {"stream": encode_batch(envelopes), "timestamp": "2024-01-01T00:00:00Z", "messageCount": len(envelopes)}


def _processor(store, stats=None, persist_timeout: float = 5.0) -> BatchProcessor:
    return BatchProcessor(CRYPTO, store, stats or ProcessingStats(), persist_timeout=persist_timeout)


def test_single_item_batch_end_to_end(tmp_path) -> None:
    store = SQLiteBucketStore(str(tmp_path / "buckets.db"))
    store.init_db()
    processor = _processor(store)

    result = asyncio.run(processor.process_stream(_payload([_envelope(ASHA)])))

    ack = result.to_wire()
    assert ack["messageCount"] == 1
    assert ack["processedCount"] == 1
    assert ack["validCount"] == 1
    assert ack["savedCount"] == 1
    assert ack["invalidCount"] == 0
    assert ack["errors"] == []
    assert ack["timestamp"] is not None

    bucket = store.recent_buckets(limit=1)[0]
    assert bucket.routes == {"Mumbai->Delhi": 1}
    assert bucket.name_frequency == {"Asha": 1}
    assert TAG_FIELD not in bucket.records[0].__dict__


def test_one_malformed_envelope_is_isolated() -> None:
    store = FakeStore()
    envelopes = [_envelope(ASHA) for _ in range(4)]
    envelopes.insert(2, "not-an-envelope")

    result = asyncio.run(_processor(store).process_stream(_payload(envelopes)))

    assert result.processed_count == 5
    assert result.invalid_count == 1
    assert result.valid_count == 4
    assert result.saved_count == 4
    assert [(e.index, e.reason) for e in result.errors] == [(2, "Invalid encrypted text format")]
    assert len(store.appended) == 4


def test_tag_mismatch_is_invalid_not_an_error() -> None:
    store = FakeStore()
    tampered = tag_message(ASHA)
    tampered["destination"] = "Goa"

    result = asyncio.run(_processor(store).process_stream(_payload([CRYPTO.encrypt_message(tampered)])))

    assert result.invalid_count == 1
    assert result.valid_count == 0
    assert result.errors[0].reason == "Invalid secret key"
    assert store.appended == []


def test_tag_is_stripped_before_persisting() -> None:
    store = FakeStore()

    asyncio.run(_processor(store).process_stream(_payload([_envelope(ASHA)])))

    assert store.appended == [ASHA]


def test_valid_message_without_required_fields_is_invalid() -> None:
    store = FakeStore()

    result = asyncio.run(_processor(store).process_stream(_payload([_envelope({"name": "Asha"})])))

    assert result.invalid_count == 1
    assert "origin" in result.errors[0].reason
    assert store.appended == []


def test_persistence_failure_is_valid_but_unsaved() -> None:
    stats = ProcessingStats()

    result = asyncio.run(_processor(FailingStore(), stats).process_stream(_payload([_envelope(ASHA)] * 2)))

    assert result.valid_count == 2
    assert result.saved_count == 0
    assert result.invalid_count == 0
    assert [e.reason for e in result.errors] == ["disk full", "disk full"]
    assert stats.snapshot()["errors"] == 2


def test_persistence_timeout_is_valid_but_unsaved(tmp_path) -> None:
    store = SQLiteBucketStore(str(tmp_path / "buckets.db"), clock=_slow_clock(0.3))
    store.init_db()
    stats = ProcessingStats()

    result = asyncio.run(
        _processor(store, stats, persist_timeout=0.1).process_stream(_payload([_envelope(ASHA)]))
    )

    assert result.valid_count == 1
    assert result.saved_count == 0
    assert "timed out" in result.errors[0].reason
    assert store.total_record_count() == 0
    assert stats.total_saved == 0


def test_store_receives_persistence_deadline() -> None:
    deadlines: list[Optional[float]] = []

    class RecordingStore(FakeStore):
        def append(self, fields: Mapping[str, Any], deadline: Optional[float] = None) -> Record:
            deadlines.append(deadline)
            return super().append(fields, deadline)

    before = time.monotonic()
    asyncio.run(_processor(RecordingStore(), persist_timeout=2.0).process_stream(_payload([_envelope(ASHA)])))

    assert len(deadlines) == 1
    assert before + 2.0 <= deadlines[0] <= time.monotonic() + 2.0


@pytest.mark.parametrize("payload", [{"stream": ""}, {}, {"stream": 12}, "not-a-mapping"])
def test_framing_error_aborts_batch_without_stats(payload) -> None:
    stats = ProcessingStats()

    with pytest.raises(FormatError):
        asyncio.run(_processor(FakeStore(), stats).process_stream(payload))

    assert stats.snapshot() == {
        "totalReceived": 0,
        "totalProcessed": 0,
        "totalValid": 0,
        "totalInvalid": 0,
        "totalSaved": 0,
        "errors": 0,
    }


def test_stats_fold_every_batch() -> None:
    stats = ProcessingStats()
    processor = _processor(FakeStore(), stats)

    asyncio.run(processor.process_stream(_payload([_envelope(ASHA), "bad"])))
    asyncio.run(processor.process_stream(_payload([_envelope(ASHA)])))

    assert stats.snapshot() == {
        "totalReceived": 3,
        "totalProcessed": 3,
        "totalValid": 2,
        "totalInvalid": 1,
        "totalSaved": 2,
        "errors": 1,
    }


def test_saved_total_matches_bucket_records(tmp_path) -> None:
    store = SQLiteBucketStore(str(tmp_path / "buckets.db"))
    store.init_db()
    stats = ProcessingStats()
    processor = _processor(store, stats)
    factory = BatchFactory(
        ReferenceData(names=("Asha", "Rahul"), origins=("Mumbai",), destinations=("Delhi", "Goa")),
        CRYPTO,
        random.Random(5),
    )

    async def scenario() -> None:
        for _ in range(2):
            stream, _count = factory()
            broken = stream + "|deadbeef:00"
            await processor.process_stream({"stream": broken})

    asyncio.run(scenario())

    saved = stats.total_saved
    assert saved > 0
    assert store.total_record_count() == saved
    assert sum(b.record_count for b in store.recent_buckets(limit=100)) == saved


def test_concurrent_batches_share_stats() -> None:
    stats = ProcessingStats()
    processor = _processor(FakeStore(), stats)

    async def scenario() -> None:
        await asyncio.gather(*(processor.process_stream(_payload([_envelope(ASHA)] * 3)) for _ in range(5)))

    asyncio.run(scenario())

    assert stats.snapshot()["totalReceived"] == 15
    assert stats.snapshot()["totalSaved"] == 15
