"""Durable, append-only history of every accepted record.

Backed by DuckDB: one ``records`` table holds all three record kinds with
the columns needed for filtering pulled out next to the record JSON. The
ingestion path only ever inserts.

:class:`HistoryStore` is blocking. :class:`AsyncHistoryStore` runs it in
worker threads with a bounded timeout so a slow store cannot stall a
stream worker or the event loop.
"""

from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
import threading
from collections.abc import Callable, Iterator
from datetime import datetime
from typing import Any, TypeVar

import duckdb

from pyfleet.exceptions import FleetStoreReadError, FleetStoreWriteError
from pyfleet.geo import EARTH_RADIUS_M, bounding_box
from pyfleet.models import (
    RECORD_TYPES,
    AssetStatus,
    DomainEvent,
    EventType,
    LocationRecord,
    RecordKind,
    StatusRecord,
    TelemetryRecord,
)

_logger = logging.getLogger(__name__)

T = TypeVar("T")

_SCHEMA = (
    "CREATE SEQUENCE IF NOT EXISTS records_seq START 1",
    """
    CREATE TABLE IF NOT EXISTS records (
      record_id  VARCHAR PRIMARY KEY,
      seq        BIGINT NOT NULL DEFAULT nextval('records_seq'),
      kind       VARCHAR NOT NULL,
      asset_id   VARCHAR NOT NULL,
      ts         DOUBLE NOT NULL,      -- epoch seconds
      event_type VARCHAR,
      status     VARCHAR,
      trip_id    VARCHAR,
      lon        DOUBLE,
      lat        DOUBLE,
      body       VARCHAR NOT NULL      -- record JSON, wire keys
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_records_asset_kind_ts ON records(asset_id, kind, ts)",
    "CREATE INDEX IF NOT EXISTS idx_records_event_type ON records(event_type)",
    "CREATE INDEX IF NOT EXISTS idx_records_status ON records(status)",
    "CREATE INDEX IF NOT EXISTS idx_records_trip ON records(trip_id)",
    "CREATE INDEX IF NOT EXISTS idx_records_geo ON records(lat, lon)",
)

_DISTANCE_SQL = (
    f"2 * {EARTH_RADIUS_M} * asin(least(1.0, sqrt("
    "power(sin(radians(lat - ?) / 2), 2)"
    " + cos(radians(?)) * cos(radians(lat)) * power(sin(radians(lon - ?) / 2), 2)"
    ")))"
)


def _row_values(record: TelemetryRecord) -> list[Any]:
    event_type: str | None = None
    status: str | None = None
    trip_id: str | None = None
    lon: float | None = None
    lat: float | None = None

    if isinstance(record, LocationRecord):
        lon, lat = record.position.as_tuple()
    elif isinstance(record, StatusRecord):
        status = str(record.status)
    elif isinstance(record, DomainEvent):
        event_type = str(record.event_type)
        trip_id = record.trip_id
        if record.position is not None:
            lon, lat = record.position.as_tuple()

    return [
        record.record_id,
        str(record.kind),
        record.asset_id,
        record.epoch_seconds,
        event_type,
        status,
        trip_id,
        lon,
        lat,
        record.to_json(),
    ]


def _load(kind: str, body: str) -> TelemetryRecord:
    return RECORD_TYPES[RecordKind(kind)].model_validate_json(body)


class HistoryStore:
    """DuckDB-backed append-only record store.

    Parameters
    ----------
    path : str
        Database file, or ``":memory:"`` for an ephemeral store.
    """

    def __init__(self, path: str = ":memory:") -> None:
        self._path = path
        self._lock = threading.Lock()
        self._conn: duckdb.DuckDBPyConnection | None = duckdb.connect(path)
        with self._cursor() as cur:
            for statement in _SCHEMA:
                cur.execute(statement)
        _logger.debug("History store ready path=%s", path)

    def close(self) -> None:
        with self._lock:
            conn = self._conn
            self._conn = None
        if conn is not None:
            conn.close()
            _logger.debug("History store closed path=%s", self._path)

    def __enter__(self) -> HistoryStore:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    @contextlib.contextmanager
    def _cursor(self) -> Iterator[duckdb.DuckDBPyConnection]:
        with self._lock:
            if self._conn is None:
                raise duckdb.ConnectionException("history store is closed")
            cur = self._conn.cursor()
            try:
                yield cur
            finally:
                cur.close()

    def _fetch(self, sql: str, params: list[Any]) -> list[tuple[Any, ...]]:
        try:
            with self._cursor() as cur:
                return cur.execute(sql, params).fetchall()
        except duckdb.Error as exc:
            raise FleetStoreReadError(f"history query failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def append(self, record: TelemetryRecord) -> bool:
        """Durably persist one record.

        Appending the same record twice is a no-op, which keeps history
        clean under at-least-once redelivery.

        Returns ``True`` when the record was inserted, ``False`` when it was
        already present.

        Raises
        ------
        FleetStoreWriteError
            When the insert fails.
        """
        values = _row_values(record)
        try:
            with self._cursor() as cur:
                exists = cur.execute("SELECT 1 FROM records WHERE record_id = ?", [values[0]]).fetchone()
                if exists is not None:
                    _logger.debug("Duplicate %s record for asset %s ignored", record.kind, record.asset_id)
                    return False
                cur.execute(
                    "INSERT INTO records (record_id, kind, asset_id, ts, event_type, status, trip_id, lon, lat, body)"
                    " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    values,
                )
        except duckdb.Error as exc:
            raise FleetStoreWriteError(
                f"failed to append {record.kind} record for asset {record.asset_id}: {exc}"
            ) from exc
        return True

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def query_history(
        self,
        asset_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 100,
        kind: RecordKind = RecordKind.LOCATION,
        event_type: EventType | None = None,
    ) -> list[TelemetryRecord]:
        """Records for one asset, newest first, bounded by *limit*.

        *start* and *end* are inclusive. *event_type* only applies to
        ``RecordKind.EVENT``.
        """
        clauses = ["asset_id = ?", "kind = ?"]
        params: list[Any] = [asset_id, str(kind)]
        if start is not None:
            clauses.append("ts >= ?")
            params.append(start.timestamp())
        if end is not None:
            clauses.append("ts <= ?")
            params.append(end.timestamp())
        if event_type is not None:
            clauses.append("event_type = ?")
            params.append(str(event_type))
        params.append(max(0, limit))

        rows = self._fetch(
            f"SELECT kind, body FROM records WHERE {' AND '.join(clauses)} ORDER BY ts DESC, seq DESC LIMIT ?",
            params,
        )
        return [_load(kind_value, body) for kind_value, body in rows]

    def latest(self, asset_id: str, kind: RecordKind) -> TelemetryRecord | None:
        records = self.query_history(asset_id, limit=1, kind=kind)
        return records[0] if records else None

    def query_events_by_trip(self, trip_id: str) -> list[DomainEvent]:
        """All events of a trip, oldest first."""
        rows = self._fetch(
            "SELECT body FROM records WHERE kind = ? AND trip_id = ? ORDER BY ts ASC, seq ASC",
            [str(RecordKind.EVENT), trip_id],
        )
        return [DomainEvent.model_validate_json(body) for (body,) in rows]

    def query_events_by_type(self, event_type: EventType, limit: int = 20) -> list[DomainEvent]:
        """Most recent events of one type across all assets, newest first."""
        rows = self._fetch(
            "SELECT body FROM records WHERE kind = ? AND event_type = ? ORDER BY ts DESC, seq DESC LIMIT ?",
            [str(RecordKind.EVENT), str(event_type), max(0, limit)],
        )
        return [DomainEvent.model_validate_json(body) for (body,) in rows]

    def query_by_status_latest(
        self,
        status: AssetStatus,
        limit: int = 100,
        *,
        current_only: bool = False,
    ) -> list[StatusRecord]:
        """One most-recent status record per asset, newest first.

        By default every asset that ever reported *status* is included with
        its latest report in that status. With ``current_only=True`` only
        assets whose latest report overall is *status* are returned.
        """
        if current_only:
            sql = """
                SELECT body FROM (
                  SELECT body, status, ts, seq,
                         row_number() OVER (PARTITION BY asset_id ORDER BY ts DESC, seq DESC) AS rn
                  FROM records WHERE kind = ?
                ) WHERE rn = 1 AND status = ?
                ORDER BY ts DESC, seq DESC LIMIT ?
            """
        else:
            sql = """
                SELECT body FROM (
                  SELECT body, ts, seq,
                         row_number() OVER (PARTITION BY asset_id ORDER BY ts DESC, seq DESC) AS rn
                  FROM records WHERE kind = ? AND status = ?
                ) WHERE rn = 1
                ORDER BY ts DESC, seq DESC LIMIT ?
            """
        rows = self._fetch(sql, [str(RecordKind.STATUS), str(status), max(0, limit)])
        return [StatusRecord.model_validate_json(body) for (body,) in rows]

    def find_nearby(
        self,
        longitude: float,
        latitude: float,
        radius_m: float,
        limit: int = 20,
    ) -> list[tuple[LocationRecord, float]]:
        """Historical positions within *radius_m*, one per asset.

        Each asset is represented by its closest point (ties go to the most
        recent). Results are ordered by ascending distance.
        """
        min_lon, min_lat, max_lon, max_lat = bounding_box(longitude, latitude, radius_m)
        sql = f"""
            WITH candidates AS (
              SELECT body, asset_id, ts, seq, {_DISTANCE_SQL} AS distance
              FROM records
              WHERE kind = ? AND lat BETWEEN ? AND ? AND lon BETWEEN ? AND ?
            ),
            ranked AS (
              SELECT body, distance, ts,
                     row_number() OVER (PARTITION BY asset_id ORDER BY distance ASC, ts DESC, seq DESC) AS rn
              FROM candidates WHERE distance <= ?
            )
            SELECT body, distance FROM ranked WHERE rn = 1
            ORDER BY distance ASC, ts DESC LIMIT ?
        """
        params: list[Any] = [
            latitude,
            latitude,
            longitude,
            str(RecordKind.LOCATION),
            min_lat,
            max_lat,
            min_lon,
            max_lon,
            radius_m,
            max(0, limit),
        ]
        rows = self._fetch(sql, params)
        return [(LocationRecord.model_validate_json(body), float(distance)) for body, distance in rows]


def _log_late_append(record: TelemetryRecord, task: asyncio.Future[bool]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        _logger.error("Timed-out append failed asset=%s record_id=%s: %s", record.asset_id, record.record_id, exc)
    elif task.result():
        _logger.warning(
            "Timed-out append committed late asset=%s record_id=%s; cache update and side effects were skipped",
            record.asset_id,
            record.record_id,
        )


class AsyncHistoryStore:
    """Async facade running :class:`HistoryStore` calls in worker threads.

    Every call is bounded by *timeout*. A timed-out append is reported as
    :class:`FleetStoreWriteError`, a timed-out query as
    :class:`FleetStoreReadError`.
    """

    def __init__(self, store: HistoryStore, *, timeout: float = 5.0) -> None:
        self._store = store
        self._timeout = timeout

    @property
    def store(self) -> HistoryStore:
        return self._store

    async def _run(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args, **kwargs), self._timeout)
        except TimeoutError as exc:
            raise FleetStoreReadError(f"history store call {fn.__name__} timed out after {self._timeout}s") from exc

    async def append(self, record: TelemetryRecord) -> bool:
        """Append *record*, bounded by the store timeout.

        A timed-out append is not cancelled: the worker thread still holds
        the store lock and may commit afterwards. The late outcome is
        logged, and since appends are keyed by ``record_id`` a retried
        delivery of the same record is a no-op.
        """
        task = asyncio.ensure_future(asyncio.to_thread(self._store.append, record))
        try:
            return await asyncio.wait_for(asyncio.shield(task), self._timeout)
        except TimeoutError as exc:
            task.add_done_callback(functools.partial(_log_late_append, record))
            raise FleetStoreWriteError(
                f"history store append timed out after {self._timeout}s; record_id={record.record_id} may still commit"
            ) from exc

    async def query_history(
        self,
        asset_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 100,
        kind: RecordKind = RecordKind.LOCATION,
        event_type: EventType | None = None,
    ) -> list[TelemetryRecord]:
        return await self._run(self._store.query_history, asset_id, start, end, limit, kind, event_type)

    async def latest(self, asset_id: str, kind: RecordKind) -> TelemetryRecord | None:
        return await self._run(self._store.latest, asset_id, kind)

    async def query_events_by_trip(self, trip_id: str) -> list[DomainEvent]:
        return await self._run(self._store.query_events_by_trip, trip_id)

    async def query_events_by_type(self, event_type: EventType, limit: int = 20) -> list[DomainEvent]:
        return await self._run(self._store.query_events_by_type, event_type, limit)

    async def query_by_status_latest(
        self,
        status: AssetStatus,
        limit: int = 100,
        *,
        current_only: bool = False,
    ) -> list[StatusRecord]:
        return await self._run(self._store.query_by_status_latest, status, limit, current_only=current_only)

    async def find_nearby(
        self,
        longitude: float,
        latitude: float,
        radius_m: float,
        limit: int = 20,
    ) -> list[tuple[LocationRecord, float]]:
        return await self._run(self._store.find_nearby, longitude, latitude, radius_m, limit)

    async def aclose(self) -> None:
        await asyncio.to_thread(self._store.close)
