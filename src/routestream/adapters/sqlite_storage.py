"""SQLite minute-bucket store.

Implements the core BucketStorePort using a single SQLite database that may
be shared by several processes or threads.
"""

from __future__ import annotations

import random
import sqlite3
import string
import time
from contextlib import closing
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional

from routestream.core.errors import PersistenceError
from routestream.core.models import MinuteBucket, Record, minute_bucket_key, route_key

_ID_ALPHABET = string.ascii_lowercase + string.digits
# Retries only cover record_id collisions; lock waits are bounded by timeout.
_MAX_APPEND_ATTEMPTS = 3
DEADLINE_REASON = "Persistence timed out before commit"


def _utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _iso(moment: datetime) -> str:
    return _utc(moment).isoformat(timespec="microseconds")


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def new_record_id(moment: datetime) -> str:
    """Millisecond clock reading plus a random base36 suffix."""

    suffix = "".join(random.choices(_ID_ALPHABET, k=9))
    return f"{int(moment.timestamp() * 1000)}-{suffix}"


class SQLiteBucketStore:
    """Aggregates records into one row per minute with derived counters."""

    def __init__(
        self,
        db_path: str,
        timeout: float = 5.0,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._db_path = db_path
        self._timeout = timeout
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _connect(self, timeout: Optional[float] = None) -> sqlite3.Connection:
        # Autocommit mode: transactions are opened explicitly with BEGIN IMMEDIATE.
        conn = sqlite3.connect(
            self._db_path,
            timeout=self._timeout if timeout is None else timeout,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        """Create tables if they do not exist.

        Tables:
        - buckets: one row per minute, unique on bucket_key
        - records: raw records, unique on record_id
        - route_counts / name_counts: per-bucket counters keyed by route or name
        """

        with closing(self._connect()) as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS buckets (
                    bucket_key TEXT PRIMARY KEY,
                    timestamp TEXT NOT NULL,
                    year_month TEXT NOT NULL,
                    date_only TEXT NOT NULL,
                    hour INTEGER NOT NULL CHECK (hour BETWEEN 0 AND 23),
                    record_count INTEGER NOT NULL DEFAULT 0,
                    first_record_time TEXT,
                    last_record_time TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            # seq keeps insertion order inside a bucket.
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS records (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    record_id TEXT NOT NULL UNIQUE,
                    bucket_key TEXT NOT NULL REFERENCES buckets (bucket_key),
                    name TEXT NOT NULL,
                    origin TEXT NOT NULL,
                    destination TEXT NOT NULL,
                    timestamp TEXT NOT NULL
                )
                """
            )
            for table, column in (("route_counts", "route"), ("name_counts", "name")):
                conn.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {table} (
                        bucket_key TEXT NOT NULL REFERENCES buckets (bucket_key),
                        {column} TEXT NOT NULL,
                        count INTEGER NOT NULL,
                        PRIMARY KEY (bucket_key, {column})
                    )
                    """
                )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_records_bucket ON records (bucket_key, seq)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_buckets_timestamp ON buckets (timestamp)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_buckets_date_hour ON buckets (date_only, hour)")

    def append(self, fields: Mapping[str, Any], deadline: Optional[float] = None) -> Record:
        """Persist one record into the bucket for the current minute.

        `deadline` is a `time.monotonic()` reading. Lock waits are capped at
        the time left, and a transaction still open when it passes is rolled
        back instead of committed.
        """

        try:
            name = fields["name"]
            origin = fields["origin"]
            destination = fields["destination"]
        except KeyError as exc:
            raise PersistenceError(f"Missing record field {exc}") from exc

        last_error: Optional[sqlite3.IntegrityError] = None
        for _ in range(_MAX_APPEND_ATTEMPTS):
            now = _utc(self._clock())
            record = Record(
                name=name,
                origin=origin,
                destination=destination,
                timestamp=now,
                record_id=new_record_id(now),
            )
            try:
                self._append_once(record, deadline)
                return record
            except sqlite3.IntegrityError as exc:
                last_error = exc
            except sqlite3.Error as exc:
                raise PersistenceError(f"Failed to add record: {exc}") from exc
        raise PersistenceError(f"Failed to add record: {last_error}")

    def _append_once(self, record: Record, deadline: Optional[float]) -> None:
        minute = record.timestamp.replace(second=0, microsecond=0)
        bucket_key = minute_bucket_key(minute)
        now_iso = _iso(record.timestamp)

        with closing(self._connect(self._time_left(deadline))) as conn:
            # BEGIN IMMEDIATE takes the write lock up front so the bucket,
            # record, and counter writes land as one unit.
            conn.execute("BEGIN IMMEDIATE")
            try:
                try:
                    conn.execute(
                        """
                        INSERT INTO buckets (
                            bucket_key, timestamp, year_month, date_only, hour,
                            record_count, first_record_time, last_record_time,
                            created_at, updated_at
                        ) VALUES (?, ?, ?, ?, ?, 1, ?, ?, ?, ?)
                        """,
                        (
                            bucket_key,
                            _iso(minute),
                            minute.strftime("%Y-%m"),
                            minute.strftime("%Y-%m-%d"),
                            minute.hour,
                            now_iso,
                            now_iso,
                            now_iso,
                            now_iso,
                        ),
                    )
                except sqlite3.IntegrityError:
                    # The minute already has a bucket: append to it instead.
                    conn.execute(
                        """
                        UPDATE buckets
                        SET record_count = record_count + 1,
                            last_record_time = ?,
                            updated_at = ?
                        WHERE bucket_key = ?
                        """,
                        (now_iso, now_iso, bucket_key),
                    )

                conn.execute(
                    """
                    INSERT INTO records (record_id, bucket_key, name, origin, destination, timestamp)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.record_id,
                        bucket_key,
                        record.name,
                        record.origin,
                        record.destination,
                        now_iso,
                    ),
                )
                self._upsert_counter(conn, "route_counts", "route", bucket_key, record.route)
                self._upsert_counter(conn, "name_counts", "name", bucket_key, record.name)
                self._time_left(deadline)
                conn.execute("COMMIT")
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise

    def _time_left(self, deadline: Optional[float]) -> Optional[float]:
        """Busy timeout for the next step, capped at what remains of `deadline`."""

        if deadline is None:
            return None
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise PersistenceError(DEADLINE_REASON)
        return min(self._timeout, remaining)

    @staticmethod
    def _upsert_counter(
        conn: sqlite3.Connection, table: str, column: str, bucket_key: str, key: str
    ) -> None:
        # One statement: increment the matching entry or insert it with 1.
        conn.execute(
            f"""
            INSERT INTO {table} (bucket_key, {column}, count) VALUES (?, ?, 1)
            ON CONFLICT (bucket_key, {column}) DO UPDATE SET count = count + 1
            """,
            (bucket_key, key),
        )

    # -- queries -------------------------------------------------------------

    def get_bucket(self, bucket_key: str) -> Optional[MinuteBucket]:
        with closing(self._connect()) as conn:
            row = conn.execute("SELECT * FROM buckets WHERE bucket_key = ?", (bucket_key,)).fetchone()
            return self._load_bucket(conn, row) if row else None

    def recent_buckets(self, limit: int = 10) -> list[MinuteBucket]:
        """Return the newest buckets first."""

        with closing(self._connect()) as conn:
            rows = conn.execute(
                "SELECT * FROM buckets ORDER BY timestamp DESC LIMIT ?",
                (limit,),
            ).fetchall()
            return [self._load_bucket(conn, row) for row in rows]

    def recent_summaries(self, limit: int = 10) -> list[dict[str, Any]]:
        """Newest-first bucket summaries, without reading the raw records."""

        with closing(self._connect()) as conn:
            rows = conn.execute(
                "SELECT * FROM buckets ORDER BY timestamp DESC LIMIT ?",
                (limit,),
            ).fetchall()
            return [self._load_bucket(conn, row, with_records=False).summary() for row in rows]

    def buckets_in_range(self, start: datetime, end: datetime) -> list[MinuteBucket]:
        """Return buckets whose minute falls within [start, end], oldest first."""

        with closing(self._connect()) as conn:
            rows = conn.execute(
                "SELECT * FROM buckets WHERE timestamp >= ? AND timestamp <= ? ORDER BY timestamp",
                (_iso(start), _iso(end)),
            ).fetchall()
            return [self._load_bucket(conn, row) for row in rows]

    def hourly_aggregation(self, date_only: str) -> list[dict[str, Any]]:
        """Per-hour totals for one `YYYY-MM-DD` day."""

        with closing(self._connect()) as conn:
            rows = conn.execute(
                """
                SELECT hour,
                       SUM(record_count) AS total_records,
                       COUNT(*) AS documents,
                       AVG(record_count) AS avg_records
                FROM buckets
                WHERE date_only = ?
                GROUP BY hour
                ORDER BY hour
                """,
                (date_only,),
            ).fetchall()
        return [
            {
                "hour": row["hour"],
                "totalRecords": row["total_records"],
                "documents": row["documents"],
                "avgRecordsPerMinute": row["avg_records"],
            }
            for row in rows
        ]

    def top_routes(self, start: datetime, end: datetime, limit: int = 10) -> list[tuple[str, int]]:
        with closing(self._connect()) as conn:
            rows = conn.execute(
                """
                SELECT rc.route AS route, SUM(rc.count) AS total
                FROM route_counts rc
                JOIN buckets b ON b.bucket_key = rc.bucket_key
                WHERE b.timestamp >= ? AND b.timestamp <= ?
                GROUP BY rc.route
                ORDER BY total DESC, rc.route
                LIMIT ?
                """,
                (_iso(start), _iso(end), limit),
            ).fetchall()
        return [(row["route"], row["total"]) for row in rows]

    def total_record_count(self) -> int:
        with closing(self._connect()) as conn:
            row = conn.execute("SELECT COALESCE(SUM(record_count), 0) AS total FROM buckets").fetchone()
        return int(row["total"])

    def _load_bucket(
        self, conn: sqlite3.Connection, row: sqlite3.Row, with_records: bool = True
    ) -> MinuteBucket:
        bucket_key = row["bucket_key"]
        records: tuple[Record, ...] = ()
        if with_records:
            records = tuple(
                Record(
                    name=r["name"],
                    origin=r["origin"],
                    destination=r["destination"],
                    timestamp=datetime.fromisoformat(r["timestamp"]),
                    record_id=r["record_id"],
                )
                for r in conn.execute(
                    "SELECT * FROM records WHERE bucket_key = ? ORDER BY seq",
                    (bucket_key,),
                )
            )
        routes = {
            r["route"]: r["count"]
            for r in conn.execute(
                "SELECT route, count FROM route_counts WHERE bucket_key = ? ORDER BY rowid",
                (bucket_key,),
            )
        }
        names = {
            r["name"]: r["count"]
            for r in conn.execute(
                "SELECT name, count FROM name_counts WHERE bucket_key = ? ORDER BY rowid",
                (bucket_key,),
            )
        }
        return MinuteBucket(
            bucket_key=bucket_key,
            timestamp=datetime.fromisoformat(row["timestamp"]),
            year_month=row["year_month"],
            date_only=row["date_only"],
            hour=row["hour"],
            records=records,
            record_count=row["record_count"],
            routes=routes,
            name_frequency=names,
            first_record_time=_parse(row["first_record_time"]),
            last_record_time=_parse(row["last_record_time"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )
