"""Ingestion layer.

Decodes raw stream payloads into typed records and pushes them through the
history, cache and dispatch write path.
"""

from pyfleet.ingestion.decode import Rejection, RejectionReason, decode, decode_or_raise
from pyfleet.ingestion.pipeline import IngestionPipeline, IngestionStats

__all__ = [
    "IngestionPipeline",
    "IngestionStats",
    "Rejection",
    "RejectionReason",
    "decode",
    "decode_or_raise",
]
