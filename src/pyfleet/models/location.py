"""Location record model."""

from __future__ import annotations

from typing import ClassVar

from pydantic import Field, field_validator

from pyfleet.models._base import GeoPoint, RecordKind, TelemetryRecord


class LocationRecord(TelemetryRecord):
    """A position fix for an asset.

    Parameters
    ----------
    asset_id : str
        Opaque asset identifier.
    timestamp : datetime
        Fix time (UTC). Not guaranteed to be monotonic per asset.
    position : GeoPoint
        Longitude/latitude in degrees.
    speed : float
        Ground speed, ``>= 0``.
    heading : float
        Course over ground in degrees, wrapped into ``[0, 360)``.
    altitude : float
        Altitude in metres.
    accuracy : float
        Horizontal accuracy in metres, ``>= 0``.
    metadata : dict
        Free-form producer metadata.
    """

    kind: ClassVar[RecordKind] = RecordKind.LOCATION

    position: GeoPoint
    speed: float = Field(default=0.0, ge=0.0)
    heading: float = 0.0
    altitude: float = 0.0
    accuracy: float = Field(default=0.0, ge=0.0)

    @field_validator("heading")
    @classmethod
    def _wrap_heading(cls, value: float) -> float:
        return value % 360.0

    @property
    def longitude(self) -> float:
        return self.position.longitude

    @property
    def latitude(self) -> float:
        return self.position.latitude
