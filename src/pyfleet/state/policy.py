"""Deterministic latest-wins policy.

This module contains *no* payload parsing. Records reaching the cache are
already validated, so the policy only compares timestamps.
"""

from __future__ import annotations

from datetime import datetime


def should_replace(*, cached_ts: datetime | None, incoming_ts: datetime) -> bool:
    """Decide whether an incoming record replaces the cached latest slot.

    Policy:
    - Empty slot: accept.
    - Otherwise accept only a strictly newer timestamp. Ties keep the
      cached value so redelivery of the same record is a no-op.
    """
    if cached_ts is None:
        return True
    return incoming_ts > cached_ts


def is_expired(now: datetime, expires_at: datetime) -> bool:
    return now >= expires_at
