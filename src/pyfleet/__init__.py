"""pyfleet - Real-time fleet telemetry ingestion and state pipeline."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("pyfleet")
except PackageNotFoundError:
    __version__ = "0+local"
from pyfleet.config import FleetConfig
from pyfleet.consumer import ConsumerState, StreamConsumer, StreamConsumerManager
from pyfleet.dispatch import EventDispatcher
from pyfleet.exceptions import (
    FleetCacheWriteError,
    FleetConfigError,
    FleetConnectionError,
    FleetDecodeError,
    FleetDispatchError,
    FleetError,
    FleetStoreError,
    FleetStoreReadError,
    FleetStoreWriteError,
    FleetValidationError,
)
from pyfleet.history import AsyncHistoryStore, HistoryStore
from pyfleet.ingestion import IngestionPipeline, Rejection, RejectionReason, decode
from pyfleet.models import (
    AssetStatus,
    DomainEvent,
    EngineStatus,
    EventType,
    GeoPoint,
    LocationRecord,
    RecordKind,
    StatusRecord,
    TripInfo,
)
from pyfleet.reader import TelemetryReader
from pyfleet.service import TrackingService
from pyfleet.state import StateCache

__all__ = [
    "__version__",
    "AssetStatus",
    "AsyncHistoryStore",
    "ConsumerState",
    "DomainEvent",
    "EngineStatus",
    "EventDispatcher",
    "EventType",
    "FleetCacheWriteError",
    "FleetConfig",
    "FleetConfigError",
    "FleetConnectionError",
    "FleetDecodeError",
    "FleetDispatchError",
    "FleetError",
    "FleetStoreError",
    "FleetStoreReadError",
    "FleetStoreWriteError",
    "FleetValidationError",
    "GeoPoint",
    "HistoryStore",
    "IngestionPipeline",
    "LocationRecord",
    "RecordKind",
    "Rejection",
    "RejectionReason",
    "StateCache",
    "StatusRecord",
    "StreamConsumer",
    "StreamConsumerManager",
    "TelemetryReader",
    "TrackingService",
    "TripInfo",
    "decode",
]
