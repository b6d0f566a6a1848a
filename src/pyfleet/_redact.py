"""Helpers for safe payload logging.

Telemetry payloads are logged when a message fails so it can be replayed,
but producers occasionally put credentials or device secrets into the
free-form ``metadata`` map. These helpers redact such keys and bound the
size of what ends up in the logs.
"""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from typing import Any

_SENSITIVE_VALUE_KEYS: frozenset[str] = frozenset(
    {
        "password",
        "secret",
        "secrettoken",
        "token",
        "accesstoken",
        "refreshtoken",
        "apikey",
        "authorization",
        "cookie",
        "imei",
        "simpin",
    }
)


def redact_for_log(value: Any, *, max_string: int = 512, _depth: int = 0) -> Any:
    """Return a redacted copy of *value* suitable for logs."""
    if _depth > 20:
        return "<max-depth>"

    if value is None:
        return None

    if isinstance(value, str):
        if len(value) > max_string:
            return f"{value[:max_string]}…<truncated>"
        return value

    if isinstance(value, (int, float, bool)):
        return value

    if isinstance(value, bytes):
        return f"<bytes:{len(value)}b>"

    if isinstance(value, Mapping):
        redacted: dict[str, Any] = {}
        for k, v in value.items():
            key = str(k)
            if key.lower().replace("_", "") in _SENSITIVE_VALUE_KEYS:
                redacted[key] = "<redacted>"
            else:
                redacted[key] = redact_for_log(v, max_string=max_string, _depth=_depth + 1)
        return redacted

    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return [redact_for_log(v, max_string=max_string, _depth=_depth + 1) for v in value]

    return repr(value)


def payload_preview(payload: bytes | str, *, max_string: int = 512) -> str:
    """Render a raw message payload for a log line.

    JSON objects are redacted key-by-key; anything else is decoded
    leniently and truncated.
    """
    text = payload.decode("utf-8", errors="replace") if isinstance(payload, bytes) else payload
    try:
        parsed = json.loads(text)
    except ValueError:
        if len(text) > max_string:
            return f"{text[:max_string]}…<truncated>"
        return text
    return json.dumps(redact_for_log(parsed, max_string=max_string), ensure_ascii=False)
