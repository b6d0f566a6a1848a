"""Base model and shared field types for telemetry records.

Every record model inherits from :class:`FleetBaseModel` which provides:

* ``alias_generator=to_camel`` so camelCase wire keys map
  automatically to snake_case fields.
* A ``model_validator(mode="before")`` that drops ``null``/NaN values
  so the field default is used, and renames legacy keys
  (``vehicleId`` → ``assetId``, ``location`` → ``position``).
* A deterministic :attr:`FleetBaseModel.record_id` fingerprint used by
  the history store to make appends idempotent under redelivery.
"""

from __future__ import annotations

import enum
import hashlib
import math
from datetime import UTC, datetime
from typing import Annotated, Any, ClassVar

from pydantic import AliasChoices, BaseModel, BeforeValidator, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

# Threshold to distinguish epoch seconds from milliseconds.
_MS_THRESHOLD = 1_000_000_000_000

# Legacy producer keys accepted on every record.
COMMON_KEY_ALIASES: dict[str, str] = {
    "vehicleId": "assetId",
    "location": "position",
}


class RecordKind(enum.StrEnum):
    """The three logical streams, and the record type each carries."""

    LOCATION = "location"
    STATUS = "status"
    EVENT = "event"


def parse_timestamp(value: Any) -> datetime:
    """Coerce ISO-8601 strings or epoch numbers (seconds **or** milliseconds) to a UTC datetime.

    Naive datetimes and ISO strings without an offset are taken as UTC.
    Raises :class:`ValueError` for anything else so pydantic reports a
    validation error.
    """
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    if isinstance(value, bool):
        raise ValueError("timestamp must be an ISO-8601 string or epoch number")
    if isinstance(value, str):
        text = value.strip()
        if not text:
            raise ValueError("timestamp must be non-empty")
        try:
            value = float(text)
        except ValueError:
            parsed = datetime.fromisoformat(text)
            return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            raise ValueError("timestamp must be finite")
        ts = float(value)
        if abs(ts) >= _MS_THRESHOLD:
            ts /= 1000.0
        try:
            return datetime.fromtimestamp(ts, tz=UTC)
        except (OverflowError, OSError, ValueError) as exc:
            raise ValueError("timestamp out of range") from exc
    raise ValueError("timestamp must be an ISO-8601 string or epoch number")


FleetTimestamp = Annotated[datetime, BeforeValidator(parse_timestamp)]
"""Annotated type that coerces ISO strings and epoch values to UTC datetimes."""


def _normalize_enum_text(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().upper()
    return value


UpperStr = BeforeValidator(_normalize_enum_text)
"""Strip/upper-case enumeration values before strict matching."""


class GeoPoint(BaseModel):
    """A WGS84 position.

    Accepts ``{"longitude": x, "latitude": y}``, ``{"lon": x, "lat": y}``,
    GeoJSON ``{"type": "Point", "coordinates": [lon, lat]}`` and bare
    ``[lon, lat]`` pairs.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
        allow_inf_nan=False,
    )

    longitude: float = Field(ge=-180.0, le=180.0, validation_alias=AliasChoices("longitude", "lon", "lng"))
    latitude: float = Field(ge=-90.0, le=90.0, validation_alias=AliasChoices("latitude", "lat"))

    @model_validator(mode="before")
    @classmethod
    def _coerce_point(cls, values: Any) -> Any:
        if isinstance(values, (list, tuple)):
            if len(values) != 2:
                raise ValueError("coordinates must be [longitude, latitude]")
            return {"longitude": values[0], "latitude": values[1]}
        if isinstance(values, dict) and "coordinates" in values:
            coordinates = values["coordinates"]
            if not isinstance(coordinates, (list, tuple)) or len(coordinates) != 2:
                raise ValueError("coordinates must be [longitude, latitude]")
            return {"longitude": coordinates[0], "latitude": coordinates[1]}
        return values

    def as_tuple(self) -> tuple[float, float]:
        """Return ``(longitude, latitude)``."""
        return self.longitude, self.latitude


class FleetBaseModel(BaseModel):
    """Base for telemetry record models.

    Handles:
    * camelCase → snake_case via ``alias_generator=to_camel``
    * ``null`` and NaN values → dropped so the field default is used
    * legacy key aliases declared in ``_KEY_ALIASES``
    """

    _KEY_ALIASES: ClassVar[dict[str, str]] = COMMON_KEY_ALIASES

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
        allow_inf_nan=False,
        str_strip_whitespace=True,
        alias_generator=to_camel,
    )

    @staticmethod
    def _clean_dict(values: dict[str, Any], aliases: dict[str, str] | None = None) -> dict[str, Any]:
        """Drop null/NaN values and apply key aliases on *values*."""
        working = dict(values)
        if aliases:
            for old_key, new_key in aliases.items():
                if old_key in working and new_key not in working:
                    working[new_key] = working.pop(old_key)

        cleaned: dict[str, Any] = {}
        for key, value in working.items():
            if value is None:
                continue
            if isinstance(value, float) and math.isnan(value):
                continue
            cleaned[key] = value
        return cleaned

    @model_validator(mode="before")
    @classmethod
    def _clean_values(cls, values: Any) -> Any:
        if not isinstance(values, dict):
            return values
        aliases: dict[str, str] = getattr(cls, "_KEY_ALIASES", {})
        return FleetBaseModel._clean_dict(values, aliases)


class TelemetryRecord(FleetBaseModel):
    """Fields shared by every record kind."""

    kind: ClassVar[RecordKind]

    asset_id: str = Field(min_length=1)
    timestamp: FleetTimestamp
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def record_id(self) -> str:
        """Deterministic fingerprint of the record content."""
        body = self.model_dump_json(by_alias=True)
        return hashlib.sha256(f"{self.kind}:{body}".encode()).hexdigest()

    @property
    def epoch_seconds(self) -> float:
        """Record timestamp as epoch seconds."""
        return self.timestamp.timestamp()

    def to_json(self) -> str:
        """Serialize with wire (camelCase) keys."""
        return self.model_dump_json(by_alias=True)
