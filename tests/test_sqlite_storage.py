from __future__ import annotations

import sqlite3
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from routestream.adapters.sqlite_storage import SQLiteBucketStore
from routestream.core.errors import PersistenceError

MINUTE = datetime(2024, 1, 15, 14, 5, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now


def _make_store(tmp_path, clock: FakeClock) -> SQLiteBucketStore:
    store = SQLiteBucketStore(str(tmp_path / "buckets.db"), timeout=10.0, clock=clock)
    store.init_db()
    return store


def _assert_conserved(bucket) -> None:
    assert bucket.record_count == len(bucket.records)
    assert sum(bucket.routes.values()) == bucket.record_count
    assert sum(bucket.name_frequency.values()) == bucket.record_count


def test_first_append_creates_bucket(tmp_path) -> None:
    clock = FakeClock(MINUTE + timedelta(seconds=12))
    store = _make_store(tmp_path, clock)

    record = store.append({"name": "Asha", "origin": "Mumbai", "destination": "Delhi"})

    bucket = store.get_bucket("2024-01-15T14:05")
    assert bucket is not None
    assert bucket.timestamp == MINUTE
    assert bucket.year_month == "2024-01"
    assert bucket.date_only == "2024-01-15"
    assert bucket.hour == 14
    assert bucket.record_count == 1
    assert bucket.records[0].record_id == record.record_id
    assert bucket.routes == {"Mumbai->Delhi": 1}
    assert bucket.name_frequency == {"Asha": 1}
    assert bucket.first_record_time == record.timestamp
    assert bucket.last_record_time == record.timestamp


def test_appends_in_same_minute_accumulate(tmp_path) -> None:
    clock = FakeClock(MINUTE)
    store = _make_store(tmp_path, clock)

    store.append({"name": "Asha", "origin": "Mumbai", "destination": "Delhi"})
    clock.now = MINUTE + timedelta(seconds=30)
    store.append({"name": "Rahul", "origin": "Mumbai", "destination": "Delhi"})
    clock.now = MINUTE + timedelta(seconds=59)
    last = store.append({"name": "Asha", "origin": "Pune", "destination": "Goa"})

    bucket = store.get_bucket("2024-01-15T14:05")
    assert bucket.record_count == 3
    assert [r.name for r in bucket.records] == ["Asha", "Rahul", "Asha"]
    assert bucket.routes == {"Mumbai->Delhi": 2, "Pune->Goa": 1}
    assert bucket.name_frequency == {"Asha": 2, "Rahul": 1}
    assert bucket.first_record_time == MINUTE
    assert bucket.last_record_time == last.timestamp
    _assert_conserved(bucket)


def test_next_minute_gets_its_own_bucket(tmp_path) -> None:
    clock = FakeClock(MINUTE + timedelta(seconds=59))
    store = _make_store(tmp_path, clock)

    store.append({"name": "Asha", "origin": "Mumbai", "destination": "Delhi"})
    clock.now = MINUTE + timedelta(minutes=1)
    store.append({"name": "Asha", "origin": "Mumbai", "destination": "Delhi"})

    assert store.get_bucket("2024-01-15T14:05").record_count == 1
    assert store.get_bucket("2024-01-15T14:06").record_count == 1
    assert store.total_record_count() == 2


def test_concurrent_appends_to_same_minute(tmp_path) -> None:
    clock = FakeClock(MINUTE + timedelta(seconds=5))
    store = _make_store(tmp_path, clock)
    names = ["Asha", "Rahul", "Priya"]
    routes = [("Mumbai", "Delhi"), ("Pune", "Goa")]

    def append(i: int):
        origin, destination = routes[i % len(routes)]
        return store.append({"name": names[i % len(names)], "origin": origin, "destination": destination})

    with ThreadPoolExecutor(max_workers=16) as pool:
        records = list(pool.map(append, range(50)))

    assert len({r.record_id for r in records}) == 50
    buckets = store.recent_buckets(limit=10)
    assert len(buckets) == 1
    bucket = buckets[0]
    assert bucket.record_count == 50
    assert len(bucket.records) == 50
    assert sum(bucket.routes.values()) == 50
    assert sum(bucket.name_frequency.values()) == 50
    assert bucket.routes == {"Mumbai->Delhi": 25, "Pune->Goa": 25}


def test_missing_field_raises_persistence_error(tmp_path) -> None:
    store = _make_store(tmp_path, FakeClock(MINUTE))

    with pytest.raises(PersistenceError):
        store.append({"name": "Asha", "origin": "Mumbai"})


def test_unavailable_database_raises_persistence_error(tmp_path) -> None:
    store = SQLiteBucketStore(str(tmp_path / "missing" / "buckets.db"), clock=FakeClock(MINUTE))

    with pytest.raises(PersistenceError):
        store.append({"name": "Asha", "origin": "Mumbai", "destination": "Delhi"})


def test_query_helpers(tmp_path) -> None:
    clock = FakeClock(MINUTE)
    store = _make_store(tmp_path, clock)

    for offset, route in ((0, ("Mumbai", "Delhi")), (1, ("Mumbai", "Delhi")), (61, ("Pune", "Goa"))):
        clock.now = MINUTE + timedelta(minutes=offset)
        store.append({"name": "Asha", "origin": route[0], "destination": route[1]})

    recent = store.recent_buckets(limit=2)
    assert [b.bucket_key for b in recent] == ["2024-01-15T15:06", "2024-01-15T14:06"]

    summaries = store.recent_summaries(limit=2)
    assert summaries == [b.summary() for b in recent]
    assert summaries[0]["routes"] == [{"route": "Pune->Goa", "count": 1}]

    in_range = store.buckets_in_range(MINUTE, MINUTE + timedelta(minutes=30))
    assert [b.bucket_key for b in in_range] == ["2024-01-15T14:05", "2024-01-15T14:06"]

    hourly = store.hourly_aggregation("2024-01-15")
    assert [(h["hour"], h["totalRecords"], h["documents"]) for h in hourly] == [(14, 2, 2), (15, 1, 1)]

    top = store.top_routes(MINUTE, MINUTE + timedelta(hours=2), limit=5)
    assert top == [("Mumbai->Delhi", 2), ("Pune->Goa", 1)]

    assert store.get_bucket("1999-01-01T00:00") is None


def test_expired_deadline_writes_nothing(tmp_path) -> None:
    store = _make_store(tmp_path, FakeClock(MINUTE))

    with pytest.raises(PersistenceError, match="timed out"):
        store.append({"name": "Asha", "origin": "Mumbai", "destination": "Delhi"}, deadline=time.monotonic() - 1)

    assert store.total_record_count() == 0


def test_deadline_passing_mid_transaction_rolls_back(tmp_path) -> None:
    class StallingStore(SQLiteBucketStore):
        @staticmethod
        def _upsert_counter(conn, table, column, bucket_key, key) -> None:
            time.sleep(0.15)
            SQLiteBucketStore._upsert_counter(conn, table, column, bucket_key, key)

    store = StallingStore(str(tmp_path / "buckets.db"), clock=FakeClock(MINUTE))
    store.init_db()

    with pytest.raises(PersistenceError, match="timed out"):
        store.append({"name": "Asha", "origin": "Mumbai", "destination": "Delhi"}, deadline=time.monotonic() + 0.2)

    assert store.total_record_count() == 0
    assert store.get_bucket("2024-01-15T14:05") is None


def test_lock_wait_is_capped_by_deadline(tmp_path) -> None:
    store = _make_store(tmp_path, FakeClock(MINUTE))
    holder = sqlite3.connect(str(tmp_path / "buckets.db"), isolation_level=None)
    holder.execute("BEGIN IMMEDIATE")
    try:
        started = time.monotonic()
        with pytest.raises(PersistenceError):
            store.append({"name": "Asha", "origin": "Mumbai", "destination": "Delhi"}, deadline=started + 0.2)
        elapsed = time.monotonic() - started
    finally:
        holder.execute("ROLLBACK")
        holder.close()

    # The store's own busy timeout is 10s.
    assert elapsed < 2.0
    assert store.total_record_count() == 0
