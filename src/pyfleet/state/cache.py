"""In-memory latest-state cache with a geo index of last known positions.

The cache is shared by all stream workers and by the read API, so every
public method takes the same lock. Entries carry a TTL; expired entries
are treated as absent and callers fall back to the history store.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from pydantic import BaseModel, ConfigDict, Field

from pyfleet.geo import haversine_m
from pyfleet.models import AssetStatus, DomainEvent, LocationRecord, RecordKind, StatusRecord, TelemetryRecord
from pyfleet.state.policy import is_expired, should_replace


def _utcnow() -> datetime:
    return datetime.now(UTC)


class LatestEntry(BaseModel):
    model_config = ConfigDict(extra="forbid")

    record: TelemetryRecord
    stored_at: datetime
    expires_at: datetime


class GeoEntry(BaseModel):
    """One point per asset. Not subject to the cache TTL."""

    model_config = ConfigDict(extra="forbid")

    longitude: float
    latitude: float
    updated_at: datetime


class MembershipEntry(BaseModel):
    model_config = ConfigDict(extra="forbid")

    status: AssetStatus
    expires_at: datetime


class RecentEvents(BaseModel):
    model_config = ConfigDict(extra="forbid")

    events: list[DomainEvent] = Field(default_factory=list)
    expires_at: datetime


class AssetState(BaseModel):
    model_config = ConfigDict(extra="forbid")

    latest: dict[RecordKind, LatestEntry] = Field(default_factory=dict)
    # Newest accepted timestamp per kind. Survives purges.
    watermarks: dict[RecordKind, datetime] = Field(default_factory=dict)
    geo: GeoEntry | None = None
    membership: MembershipEntry | None = None
    recent: RecentEvents | None = None


class StateCache:
    """Latest-state cache.

    Given the same sequence of records, in any order, the latest slots end
    up holding the same values: a record replaces the cached one only when
    its timestamp is strictly greater.
    """

    def __init__(
        self,
        *,
        ttl: timedelta = timedelta(hours=24),
        recent_events_limit: int = 20,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._ttl = ttl
        self._recent_events_limit = recent_events_limit
        self._clock = clock
        self._lock = threading.RLock()
        self._assets: dict[str, AssetState] = {}
        self._status_sets: dict[AssetStatus, set[str]] = {status: set() for status in AssetStatus}

    def _asset(self, asset_id: str) -> AssetState:
        state = self._assets.get(asset_id)
        if state is None:
            state = AssetState()
            self._assets[asset_id] = state
        return state

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def apply(self, record: TelemetryRecord) -> bool:
        """Apply every cache update a record implies.

        Geo position and status membership follow the latest slot, so an
        out-of-order record can never move them backwards.

        Returns ``True`` when the latest slot was replaced.
        """
        with self._lock:
            replaced = self.upsert_latest(record)
            if replaced and isinstance(record, LocationRecord):
                self.upsert_geo_position(record.asset_id, record.longitude, record.latitude)
            if replaced and isinstance(record, StatusRecord):
                self.set_status_membership(record.asset_id, record.status)
            if isinstance(record, DomainEvent):
                self.record_recent_event(record)
            return replaced

    def upsert_latest(self, record: TelemetryRecord) -> bool:
        """Store *record* as the latest for its (asset, kind) when strictly newer."""
        with self._lock:
            now = self._clock()
            state = self._asset(record.asset_id)
            current = state.latest.get(record.kind)
            cached_ts = state.watermarks.get(record.kind)

            accept = should_replace(cached_ts=cached_ts, incoming_ts=record.timestamp)
            # An expired or purged slot may be refreshed with an equally recent
            # record (e.g. re-read from history), but never with an older one.
            if not accept and cached_ts is not None and (current is None or is_expired(now, current.expires_at)):
                accept = record.timestamp >= cached_ts
            if not accept:
                return False

            state.latest[record.kind] = LatestEntry(
                record=record,
                stored_at=now,
                expires_at=now + self._ttl,
            )
            state.watermarks[record.kind] = record.timestamp
            return True

    def upsert_geo_position(self, asset_id: str, longitude: float, latitude: float) -> None:
        with self._lock:
            self._asset(asset_id).geo = GeoEntry(
                longitude=longitude,
                latitude=latitude,
                updated_at=self._clock(),
            )

    def set_status_membership(self, asset_id: str, status: AssetStatus) -> None:
        """Move *asset_id* into exactly one status set."""
        with self._lock:
            for other, members in self._status_sets.items():
                if other != status:
                    members.discard(asset_id)
            self._status_sets[status].add(asset_id)
            self._asset(asset_id).membership = MembershipEntry(
                status=status,
                expires_at=self._clock() + self._ttl,
            )

    def record_recent_event(self, event: DomainEvent) -> None:
        """Keep a bounded, newest-first list of recent events per asset."""
        with self._lock:
            now = self._clock()
            state = self._asset(event.asset_id)
            recent = state.recent
            events = [] if recent is None or is_expired(now, recent.expires_at) else list(recent.events)

            event_id = event.record_id
            if any(existing.record_id == event_id for existing in events):
                return
            events.append(event)
            events.sort(key=lambda ev: ev.timestamp, reverse=True)
            state.recent = RecentEvents(
                events=events[: self._recent_events_limit],
                expires_at=now + self._ttl,
            )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_latest(self, asset_id: str, kind: RecordKind) -> TelemetryRecord | None:
        with self._lock:
            state = self._assets.get(asset_id)
            if state is None:
                return None
            entry = state.latest.get(kind)
            if entry is None or is_expired(self._clock(), entry.expires_at):
                return None
            return entry.record

    def get_geo_position(self, asset_id: str) -> GeoEntry | None:
        with self._lock:
            state = self._assets.get(asset_id)
            return state.geo if state is not None else None

    def status_of(self, asset_id: str) -> AssetStatus | None:
        with self._lock:
            state = self._assets.get(asset_id)
            if state is None or state.membership is None:
                return None
            if is_expired(self._clock(), state.membership.expires_at):
                return None
            return state.membership.status

    def members(self, status: AssetStatus) -> list[str]:
        """Assets whose latest status is *status*, sorted by asset id."""
        with self._lock:
            return sorted(asset_id for asset_id in self._status_sets[status] if self.status_of(asset_id) == status)

    def recent_events(self, asset_id: str, limit: int | None = None) -> list[DomainEvent]:
        with self._lock:
            state = self._assets.get(asset_id)
            if state is None or state.recent is None or is_expired(self._clock(), state.recent.expires_at):
                return []
            events = list(state.recent.events)
        return events if limit is None else events[:limit]

    def nearby(
        self,
        longitude: float,
        latitude: float,
        radius_m: float,
        *,
        limit: int = 20,
        max_age: timedelta | None = None,
    ) -> list[tuple[str, float]]:
        """Assets whose last known position is within *radius_m*.

        Returns ``(asset_id, distance_m)`` pairs by ascending distance.
        Positions older than *max_age* are skipped.
        """
        with self._lock:
            now = self._clock()
            hits: list[tuple[str, float]] = []
            for asset_id, state in self._assets.items():
                geo = state.geo
                if geo is None:
                    continue
                if max_age is not None and now - geo.updated_at > max_age:
                    continue
                distance = haversine_m(longitude, latitude, geo.longitude, geo.latitude)
                if distance <= radius_m:
                    hits.append((asset_id, distance))
        hits.sort(key=lambda hit: (hit[1], hit[0]))
        return hits[:limit]

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def purge_expired(self) -> int:
        """Drop expired latest slots, memberships and event lists.

        Geo entries and newest-wins watermarks are kept, so a late older
        record cannot move state backwards once its slot was purged.
        Returns the number of entries removed.
        """
        removed = 0
        with self._lock:
            now = self._clock()
            for asset_id, state in self._assets.items():
                for kind, entry in list(state.latest.items()):
                    if is_expired(now, entry.expires_at):
                        del state.latest[kind]
                        removed += 1
                if state.membership is not None and is_expired(now, state.membership.expires_at):
                    self._status_sets[state.membership.status].discard(asset_id)
                    state.membership = None
                    removed += 1
                if state.recent is not None and is_expired(now, state.recent.expires_at):
                    state.recent = None
                    removed += 1
        return removed
