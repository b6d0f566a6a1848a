"""Domain event model and enums."""

from __future__ import annotations

import enum
from typing import Annotated, ClassVar

from pydantic import Field

from pyfleet.models._base import FleetBaseModel, FleetTimestamp, GeoPoint, RecordKind, TelemetryRecord, UpperStr


class EventType(enum.StrEnum):
    """Closed set of domain event types.

    Anything else is rejected at validation.
    """

    TRIP_STARTED = "TRIP_STARTED"
    TRIP_COMPLETED = "TRIP_COMPLETED"
    MAINTENANCE_DUE = "MAINTENANCE_DUE"
    IDLE_STARTED = "IDLE_STARTED"
    IDLE_ENDED = "IDLE_ENDED"
    GEOFENCE_ENTER = "GEOFENCE_ENTER"
    GEOFENCE_EXIT = "GEOFENCE_EXIT"
    BATTERY_LOW = "BATTERY_LOW"
    FUEL_LOW = "FUEL_LOW"


class TripInfo(FleetBaseModel):
    """Trip details attached to trip events.

    ``distance`` is in kilometres, ``duration`` in minutes.
    """

    _KEY_ALIASES: ClassVar[dict[str, str]] = {
        "startLocation": "startPosition",
        "endLocation": "endPosition",
    }

    trip_id: str = Field(min_length=1)
    start_time: FleetTimestamp | None = None
    end_time: FleetTimestamp | None = None
    start_position: GeoPoint | None = None
    end_position: GeoPoint | None = None
    distance: float | None = Field(default=None, ge=0.0)
    duration: float | None = Field(default=None, ge=0.0)


class DomainEvent(TelemetryRecord):
    """A discrete event reported for an asset. Never mutated after ingest."""

    kind: ClassVar[RecordKind] = RecordKind.EVENT

    event_type: Annotated[EventType, UpperStr]
    description: str | None = None
    trip_info: TripInfo | None = None
    position: GeoPoint | None = None

    @property
    def trip_id(self) -> str | None:
        return self.trip_info.trip_id if self.trip_info is not None else None
