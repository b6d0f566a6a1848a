"""State/cache layer.

This package holds the low-latency "current state" view: the latest record
per asset and kind, the geo index of last known positions, status
membership sets and recent events. It is a performance layer only; the
history store remains the durable record.
"""

from pyfleet.state.cache import StateCache

__all__ = ["StateCache"]
