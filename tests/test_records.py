from __future__ import annotations

import json
from datetime import UTC, datetime

import pytest

from pyfleet.exceptions import FleetDecodeError, FleetValidationError
from pyfleet.ingestion.decode import Rejection, RejectionReason, decode, decode_or_raise, parse_payload
from pyfleet.models import (
    AssetStatus,
    DomainEvent,
    EngineStatus,
    EventType,
    LocationRecord,
    RecordKind,
    StatusRecord,
    parse_timestamp,
)


def _location(**overrides: object) -> dict[str, object]:
    payload: dict[str, object] = {
        "assetId": "truck-1",
        "timestamp": "2026-01-01T12:00:00Z",
        "position": {"longitude": 4.9, "latitude": 52.37},
        "speed": 42.5,
        "heading": 90,
    }
    payload.update(overrides)
    return payload


# ----------------------------------------------------------------------
# Timestamps
# ----------------------------------------------------------------------


def test_parse_timestamp_accepts_iso_and_epoch_forms() -> None:
    expected = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)
    assert parse_timestamp("2026-01-01T12:00:00Z") == expected
    assert parse_timestamp("2026-01-01T12:00:00") == expected
    assert parse_timestamp(expected.timestamp()) == expected
    assert parse_timestamp(int(expected.timestamp() * 1000)) == expected
    assert parse_timestamp(str(int(expected.timestamp()))) == expected


@pytest.mark.parametrize("value", [True, "", "not-a-date", float("inf"), None, 1e300, "1e300"])
def test_parse_timestamp_rejects_garbage(value: object) -> None:
    with pytest.raises(ValueError):
        parse_timestamp(value)


# ----------------------------------------------------------------------
# Location
# ----------------------------------------------------------------------


def test_location_decodes_camel_case_payload() -> None:
    record = decode(RecordKind.LOCATION, json.dumps(_location()).encode())

    assert isinstance(record, LocationRecord)
    assert record.asset_id == "truck-1"
    assert record.longitude == pytest.approx(4.9)
    assert record.latitude == pytest.approx(52.37)
    assert record.speed == 42.5
    assert record.timestamp == datetime(2026, 1, 1, 12, 0, tzinfo=UTC)


@pytest.mark.parametrize(
    "position",
    [
        {"lon": 4.9, "lat": 52.37},
        {"type": "Point", "coordinates": [4.9, 52.37]},
        [4.9, 52.37],
    ],
)
def test_location_accepts_every_position_form(position: object) -> None:
    record = decode(RecordKind.LOCATION, _location(position=position))

    assert isinstance(record, LocationRecord)
    assert record.position.as_tuple() == pytest.approx((4.9, 52.37))


def test_location_accepts_legacy_keys() -> None:
    payload = _location()
    payload["vehicleId"] = payload.pop("assetId")
    payload["location"] = payload.pop("position")

    record = decode(RecordKind.LOCATION, payload)

    assert isinstance(record, LocationRecord)
    assert record.asset_id == "truck-1"


def test_location_wraps_heading_and_defaults_optional_fields() -> None:
    record = decode(RecordKind.LOCATION, _location(heading=450, speed=None))

    assert isinstance(record, LocationRecord)
    assert record.heading == 90
    assert record.speed == 0
    assert record.altitude == 0
    assert record.accuracy == 0


@pytest.mark.parametrize(
    "overrides",
    [
        {"assetId": ""},
        {"assetId": "   "},
        {"position": {"longitude": 200, "latitude": 0}},
        {"position": {"longitude": 0, "latitude": -91}},
        {"speed": -1},
        {"timestamp": "yesterday"},
    ],
)
def test_location_validation_failures(overrides: dict[str, object]) -> None:
    result = decode(RecordKind.LOCATION, _location(**overrides))

    assert isinstance(result, Rejection)
    assert result.reason == RejectionReason.VALIDATION_ERROR


@pytest.mark.parametrize(
    "raw",
    [
        b'{"assetId": "truck-1", "timestamp": 1e300, "position": [4.9, 52.37]}',
        b'{"assetId": "truck-1", "timestamp": 1767268800, "position": [4.9, 52.37], "speed": Infinity}',
        b'{"assetId": "truck-1", "timestamp": 1767268800, "position": [4.9, 52.37], "heading": -Infinity}',
        b'{"assetId": "truck-1", "timestamp": 1767268800, "position": [NaN, 52.37]}',
    ],
)
def test_out_of_range_numbers_are_validation_errors(raw: bytes) -> None:
    result = decode(RecordKind.LOCATION, raw)

    assert isinstance(result, Rejection)
    assert result.reason == RejectionReason.VALIDATION_ERROR


def test_missing_asset_id_is_a_validation_error_naming_the_field() -> None:
    payload = _location()
    del payload["assetId"]

    result = decode(RecordKind.LOCATION, payload)

    assert isinstance(result, Rejection)
    assert result.reason == RejectionReason.VALIDATION_ERROR
    assert "assetId" in result.detail
    assert result.asset_id is None


# ----------------------------------------------------------------------
# Status
# ----------------------------------------------------------------------


def test_status_normalizes_enumeration_case() -> None:
    record = decode(
        "status",
        {
            "assetId": "truck-1",
            "timestamp": 1767268800,
            "status": " idle ",
            "fuelLevel": 55,
            "engineStatus": "off",
            "odometer": 12345.6,
        },
    )

    assert isinstance(record, StatusRecord)
    assert record.status == AssetStatus.IDLE
    assert record.engine_status == EngineStatus.OFF
    assert record.fuel_level == 55
    assert record.battery_level is None


@pytest.mark.parametrize(
    "overrides",
    [
        {"status": "PARKED"},
        {"fuelLevel": 101},
        {"batteryLevel": -5},
        {"odometer": -1},
    ],
)
def test_status_validation_failures(overrides: dict[str, object]) -> None:
    payload: dict[str, object] = {"assetId": "truck-1", "timestamp": 1767268800, "status": "ACTIVE"}
    payload.update(overrides)

    result = decode(RecordKind.STATUS, payload)

    assert isinstance(result, Rejection)
    assert result.reason == RejectionReason.VALIDATION_ERROR
    assert result.asset_id == "truck-1"


# ----------------------------------------------------------------------
# Events
# ----------------------------------------------------------------------


def test_event_with_trip_info() -> None:
    record = decode(
        RecordKind.EVENT,
        {
            "vehicleId": "truck-1",
            "timestamp": "2026-01-01T13:00:00Z",
            "eventType": "TRIP_COMPLETED",
            "tripInfo": {
                "tripId": "trip-9",
                "startTime": "2026-01-01T12:00:00Z",
                "endTime": "2026-01-01T13:00:00Z",
                "startLocation": {"type": "Point", "coordinates": [4.9, 52.37]},
                "endLocation": [5.1, 52.09],
                "distance": 42.0,
                "duration": 60,
            },
        },
    )

    assert isinstance(record, DomainEvent)
    assert record.event_type == EventType.TRIP_COMPLETED
    assert record.trip_id == "trip-9"
    assert record.trip_info is not None
    assert record.trip_info.end_position is not None
    assert record.trip_info.end_position.latitude == pytest.approx(52.09)


def test_unknown_event_type_is_rejected() -> None:
    result = decode(
        RecordKind.EVENT,
        {"assetId": "truck-1", "timestamp": "2026-01-01T13:00:00Z", "eventType": "UNKNOWN_TYPE"},
    )

    assert isinstance(result, Rejection)
    assert result.reason == RejectionReason.VALIDATION_ERROR
    assert "eventType" in result.detail


# ----------------------------------------------------------------------
# Decode errors
# ----------------------------------------------------------------------


@pytest.mark.parametrize("raw", [b"", b"   ", b"{not json", b"\xff\xfe\x00", b"[1, 2]", b'"text"'])
def test_malformed_payloads_are_decode_errors(raw: bytes) -> None:
    result = decode(RecordKind.LOCATION, raw)

    assert isinstance(result, Rejection)
    assert result.reason == RejectionReason.DECODE_ERROR


def test_parse_payload_raises_decode_error() -> None:
    with pytest.raises(FleetDecodeError):
        parse_payload(b"{")


def test_decode_or_raise_maps_rejections_to_exceptions() -> None:
    with pytest.raises(FleetDecodeError):
        decode_or_raise(RecordKind.STATUS, b"nope")
    with pytest.raises(FleetValidationError):
        decode_or_raise(RecordKind.STATUS, {"assetId": "a", "timestamp": 1, "status": "BROKEN"})


# ----------------------------------------------------------------------
# Fingerprint
# ----------------------------------------------------------------------


def test_record_id_is_stable_across_serialization() -> None:
    record = decode_or_raise(RecordKind.LOCATION, _location())
    reloaded = LocationRecord.model_validate_json(record.to_json())

    assert reloaded == record
    assert reloaded.record_id == record.record_id


def test_record_id_differs_for_different_content() -> None:
    first = decode_or_raise(RecordKind.LOCATION, _location())
    second = decode_or_raise(RecordKind.LOCATION, _location(speed=10))

    assert first.record_id != second.record_id
