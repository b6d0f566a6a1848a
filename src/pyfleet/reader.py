"""Read API over the cache and the history store.

Reads hit the latest-state cache first and fall back to the history store
on a miss; fallback results are written back to the cache, where
newest-wins still applies. Not-found is ``None`` or an empty list, never
an error.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable
from datetime import datetime, timedelta
from typing import TypeVar

from pyfleet.exceptions import FleetStoreReadError
from pyfleet.history import AsyncHistoryStore
from pyfleet.models import (
    AssetStatus,
    DomainEvent,
    EventType,
    LocationRecord,
    RecordKind,
    StatusRecord,
    TelemetryRecord,
)
from pyfleet.state import StateCache

_logger = logging.getLogger(__name__)

T = TypeVar("T")


class TelemetryReader:
    """Query current and historical telemetry.

    Parameters
    ----------
    cache : StateCache
        Fast path for latest state, proximity and status membership.
    history : AsyncHistoryStore
        Durable fallback.
    geo_staleness : timedelta or None
        Cached positions older than this are ignored by :meth:`get_nearby`.
    """

    def __init__(
        self,
        *,
        cache: StateCache,
        history: AsyncHistoryStore,
        geo_staleness: timedelta | None = timedelta(hours=24),
    ) -> None:
        self._cache = cache
        self._history = history
        self._geo_staleness = geo_staleness

    async def get_latest(self, asset_id: str, kind: RecordKind = RecordKind.LOCATION) -> TelemetryRecord | None:
        cached = self._cache.get_latest(asset_id, kind)
        if cached is not None:
            return cached

        record = await self._read("latest", self._history.latest(asset_id, kind))
        if record is not None:
            self._cache.upsert_latest(record)
        return record

    async def get_history(
        self,
        asset_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 100,
        kind: RecordKind = RecordKind.LOCATION,
        event_type: EventType | None = None,
    ) -> list[TelemetryRecord]:
        return await self._read(
            "history",
            self._history.query_history(asset_id, start, end, limit, kind, event_type),
        )

    async def get_nearby(
        self,
        longitude: float,
        latitude: float,
        radius_m: float,
        limit: int = 20,
    ) -> list[tuple[LocationRecord, float]]:
        """Assets within *radius_m* of a point, closest first.

        Uses the cache geo index when it has live positions in range,
        otherwise the history store.
        """
        hits = self._cache.nearby(longitude, latitude, radius_m, limit=limit, max_age=self._geo_staleness)
        results: list[tuple[LocationRecord, float]] = []
        for asset_id, distance in hits:
            record = await self.get_latest(asset_id, RecordKind.LOCATION)
            if isinstance(record, LocationRecord):
                results.append((record, distance))
        if results:
            return results

        _logger.debug("Geo cache miss near (%s, %s); querying history", longitude, latitude)
        return await self._read(
            "nearby",
            self._history.find_nearby(longitude, latitude, radius_m, limit),
        )

    async def get_by_status(self, status: AssetStatus, limit: int = 100) -> list[StatusRecord]:
        members = self._cache.members(status)
        results: list[StatusRecord] = []
        for asset_id in members[:limit]:
            record = await self.get_latest(asset_id, RecordKind.STATUS)
            if isinstance(record, StatusRecord) and record.status == status:
                results.append(record)
        if results:
            return results

        records = await self._read(
            "by-status",
            self._history.query_by_status_latest(status, limit, current_only=True),
        )
        for record in records:
            if self._cache.upsert_latest(record):
                self._cache.set_status_membership(record.asset_id, record.status)
        return records

    async def get_trip_events(self, trip_id: str) -> list[DomainEvent]:
        return await self._read("trip-events", self._history.query_events_by_trip(trip_id))

    async def get_recent_events(self, asset_id: str, limit: int = 20) -> list[DomainEvent]:
        cached = self._cache.recent_events(asset_id, limit)
        if cached:
            return cached
        events = await self._read(
            "recent-events",
            self._history.query_history(asset_id, limit=limit, kind=RecordKind.EVENT),
        )
        return [event for event in events if isinstance(event, DomainEvent)]

    async def get_events_by_type(self, event_type: EventType, limit: int = 20) -> list[DomainEvent]:
        return await self._read("events-by-type", self._history.query_events_by_type(event_type, limit))

    @staticmethod
    async def _read(what: str, query: Awaitable[T]) -> T:
        try:
            return await query
        except FleetStoreReadError:
            _logger.error("History read failed (%s)", what, exc_info=True)
            raise
