"""Data models for telemetry records."""

from pyfleet.models._base import (
    FleetBaseModel,
    FleetTimestamp,
    GeoPoint,
    RecordKind,
    TelemetryRecord,
    parse_timestamp,
)
from pyfleet.models.event import DomainEvent, EventType, TripInfo
from pyfleet.models.location import LocationRecord
from pyfleet.models.status import AssetStatus, EngineStatus, StatusRecord

Record = LocationRecord | StatusRecord | DomainEvent
"""Any record accepted by the pipeline."""

RECORD_TYPES: dict[RecordKind, type[TelemetryRecord]] = {
    RecordKind.LOCATION: LocationRecord,
    RecordKind.STATUS: StatusRecord,
    RecordKind.EVENT: DomainEvent,
}

__all__ = [
    "AssetStatus",
    "DomainEvent",
    "EngineStatus",
    "EventType",
    "FleetBaseModel",
    "FleetTimestamp",
    "GeoPoint",
    "LocationRecord",
    "RECORD_TYPES",
    "Record",
    "RecordKind",
    "StatusRecord",
    "TelemetryRecord",
    "TripInfo",
    "parse_timestamp",
]
