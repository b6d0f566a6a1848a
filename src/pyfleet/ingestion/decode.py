"""Decode raw stream payloads into typed records.

Two failure modes are kept apart for observability:

- ``DECODE_ERROR``: the payload is not UTF-8 JSON, or not a JSON object.
- ``VALIDATION_ERROR``: the object is missing a required field (asset id,
  timestamp, position, status, event type) or a value is outside its
  enumeration or range.

Both are final; the message is dropped, never retried.
"""

from __future__ import annotations

import enum
import json
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from pyfleet.exceptions import FleetDecodeError, FleetError, FleetValidationError
from pyfleet.models import RECORD_TYPES, Record, RecordKind


class RejectionReason(enum.StrEnum):
    DECODE_ERROR = "decode_error"
    VALIDATION_ERROR = "validation_error"


@dataclass(frozen=True)
class Rejection:
    """Why a payload was not turned into a record."""

    kind: RecordKind
    reason: RejectionReason
    detail: str
    asset_id: str | None = None

    def to_exception(self) -> FleetError:
        if self.reason == RejectionReason.DECODE_ERROR:
            return FleetDecodeError(f"{self.kind} payload: {self.detail}")
        return FleetValidationError(f"{self.kind} payload: {self.detail}")


def parse_payload(raw: bytes | str | Mapping[str, Any]) -> dict[str, Any]:
    """Parse a raw payload into a JSON object.

    Raises
    ------
    FleetDecodeError
        When the payload is not UTF-8, not JSON, or not an object.
    """
    if isinstance(raw, Mapping):
        return dict(raw)
    if isinstance(raw, (bytes, bytearray)):
        try:
            text = bytes(raw).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise FleetDecodeError(f"payload is not UTF-8: {exc}") from exc
    else:
        text = raw
    if not text.strip():
        raise FleetDecodeError("empty payload")
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as exc:
        raise FleetDecodeError(f"invalid JSON: {exc.msg} at position {exc.pos}") from exc
    if not isinstance(parsed, dict):
        raise FleetDecodeError(f"expected a JSON object, got {type(parsed).__name__}")
    return parsed


def _describe_validation_error(exc: ValidationError) -> str:
    parts: list[str] = []
    for error in exc.errors(include_url=False):
        location = ".".join(str(part) for part in error.get("loc", ())) or "<root>"
        parts.append(f"{location}: {error.get('msg', 'invalid')}")
    return "; ".join(parts)


def _asset_hint(payload: Mapping[str, Any]) -> str | None:
    value = payload.get("assetId", payload.get("asset_id", payload.get("vehicleId")))
    if not isinstance(value, str):
        return None
    return value.strip() or None


def decode(kind: RecordKind | str, raw: bytes | str | Mapping[str, Any]) -> Record | Rejection:
    """Decode *raw* as a record of *kind*, or explain why not."""
    record_kind = RecordKind(kind)
    try:
        payload = parse_payload(raw)
    except FleetDecodeError as exc:
        return Rejection(kind=record_kind, reason=RejectionReason.DECODE_ERROR, detail=str(exc))

    model = RECORD_TYPES[record_kind]
    try:
        record = model.model_validate(payload)
    except ValidationError as exc:
        return Rejection(
            kind=record_kind,
            reason=RejectionReason.VALIDATION_ERROR,
            detail=_describe_validation_error(exc),
            asset_id=_asset_hint(payload),
        )
    return record  # type: ignore[return-value]


def decode_or_raise(kind: RecordKind | str, raw: bytes | str | Mapping[str, Any]) -> Record:
    """Like :func:`decode` but raises ``FleetDecodeError``/``FleetValidationError``."""
    result = decode(kind, raw)
    if isinstance(result, Rejection):
        raise result.to_exception()
    return result
