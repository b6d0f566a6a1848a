from __future__ import annotations

import json

from pyfleet._redact import payload_preview, redact_for_log


def test_redact_for_log_redacts_sensitive_keys() -> None:
    payload = {
        "assetId": "truck-1",
        "metadata": {"apiKey": "abc", "driver": "Sam", "sim_pin": "1234"},
        "password": "pw",
        "nested": [{"token": "t"}],
    }

    redacted = redact_for_log(payload)
    assert redacted["assetId"] == "truck-1"
    assert redacted["password"] == "<redacted>"
    assert redacted["metadata"]["apiKey"] == "<redacted>"
    assert redacted["metadata"]["sim_pin"] == "<redacted>"
    assert redacted["metadata"]["driver"] == "Sam"
    assert redacted["nested"][0]["token"] == "<redacted>"


def test_redact_for_log_truncates_long_strings() -> None:
    long_value = "x" * 600
    redacted = redact_for_log({"value": long_value}, max_string=10)
    assert redacted["value"].startswith("x" * 10)
    assert "<truncated>" in redacted["value"]


def test_payload_preview_redacts_json_payloads() -> None:
    preview = payload_preview(b'{"assetId": "truck-1", "authorization": "Bearer abc"}')

    assert json.loads(preview) == {"assetId": "truck-1", "authorization": "<redacted>"}


def test_payload_preview_handles_non_json() -> None:
    assert payload_preview(b"\xff\xfenot json").endswith("not json")
    assert "<truncated>" in payload_preview("y" * 100, max_string=10)
