"""Status record model and enums."""

from __future__ import annotations

import enum
from typing import Annotated, ClassVar

from pydantic import Field

from pyfleet.models._base import RecordKind, TelemetryRecord, UpperStr


class AssetStatus(enum.StrEnum):
    """Operational status of an asset."""

    ACTIVE = "ACTIVE"
    IDLE = "IDLE"
    MAINTENANCE = "MAINTENANCE"
    OUT_OF_SERVICE = "OUT_OF_SERVICE"


class EngineStatus(enum.StrEnum):
    ON = "ON"
    OFF = "OFF"
    ERROR = "ERROR"


class StatusRecord(TelemetryRecord):
    """A status report for an asset.

    ``fuel_level``/``battery_level`` are percentages; ``odometer`` is in
    kilometres and is expected, but not required, to be non-decreasing.
    """

    kind: ClassVar[RecordKind] = RecordKind.STATUS

    status: Annotated[AssetStatus, UpperStr]
    fuel_level: float | None = Field(default=None, ge=0.0, le=100.0)
    battery_level: float | None = Field(default=None, ge=0.0, le=100.0)
    engine_status: Annotated[EngineStatus, UpperStr] | None = None
    odometer: float | None = Field(default=None, ge=0.0)
