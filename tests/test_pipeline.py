from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

import pytest
import pytest_asyncio

from pyfleet._mqtt import StreamMessage
from pyfleet.dispatch import EventDispatcher
from pyfleet.exceptions import FleetDispatchError, FleetStoreWriteError
from pyfleet.history import AsyncHistoryStore, HistoryStore
from pyfleet.ingestion import IngestionPipeline, Rejection, RejectionReason
from pyfleet.models import AssetStatus, DomainEvent, EventType, LocationRecord, RecordKind, TelemetryRecord
from pyfleet.state import StateCache


@dataclass
class _RecordingNotifier:
    fail: bool = False
    calls: list[DomainEvent] = field(default_factory=list)

    async def notify(self, event: DomainEvent) -> None:
        self.calls.append(event)
        if self.fail:
            raise FleetDispatchError("HTTP 500 from maintenance service", status_code=500)


class _BrokenCache(StateCache):
    def apply(self, record: TelemetryRecord) -> bool:
        raise RuntimeError("cache unavailable")


class _BrokenStore(HistoryStore):
    def append(self, record: TelemetryRecord) -> bool:
        raise FleetStoreWriteError("disk full")


@dataclass
class _Harness:
    pipeline: IngestionPipeline
    store: HistoryStore
    cache: StateCache
    dispatcher: EventDispatcher
    notifier: _RecordingNotifier


@pytest_asyncio.fixture
async def harness() -> AsyncIterator[_Harness]:
    store = HistoryStore(":memory:")
    cache = StateCache()
    notifier = _RecordingNotifier()
    dispatcher = EventDispatcher(notifier)
    pipeline = IngestionPipeline(history=AsyncHistoryStore(store), cache=cache, dispatcher=dispatcher)
    yield _Harness(pipeline=pipeline, store=store, cache=cache, dispatcher=dispatcher, notifier=notifier)
    await dispatcher.drain()
    store.close()


def _payload(**fields: object) -> bytes:
    return json.dumps(fields).encode()


@pytest.mark.asyncio
async def test_location_flows_to_history_and_cache(harness: _Harness) -> None:
    record = await harness.pipeline.ingest(
        RecordKind.LOCATION,
        _payload(assetId="A", timestamp=100, position={"longitude": 1.0, "latitude": 1.0}),
    )

    assert isinstance(record, LocationRecord)
    assert harness.store.query_history("A") == [record]
    assert harness.cache.get_latest("A", RecordKind.LOCATION) == record
    assert harness.cache.get_geo_position("A") is not None
    assert harness.pipeline.stats.accepted == 1


@pytest.mark.asyncio
async def test_out_of_order_location_is_stored_but_not_cached(harness: _Harness) -> None:
    newer = await harness.pipeline.ingest("location", _payload(assetId="A", timestamp=100, position=[1.0, 1.0]))
    older = await harness.pipeline.ingest("location", _payload(assetId="A", timestamp=50, position=[2.0, 2.0]))

    assert harness.cache.get_latest("A", RecordKind.LOCATION) == newer
    assert [r.epoch_seconds for r in harness.store.query_history("A")] == [100, 50]
    geo = harness.cache.get_geo_position("A")
    assert geo is not None
    assert (geo.longitude, geo.latitude) == (1.0, 1.0)
    assert isinstance(older, LocationRecord)


@pytest.mark.asyncio
async def test_status_updates_membership(harness: _Harness) -> None:
    await harness.pipeline.ingest("status", _payload(assetId="B", timestamp=10, status="IDLE"))
    await harness.pipeline.ingest("status", _payload(assetId="B", timestamp=20, status="MAINTENANCE"))

    assert harness.cache.members(AssetStatus.IDLE) == []
    assert harness.cache.members(AssetStatus.MAINTENANCE) == ["B"]


@pytest.mark.asyncio
async def test_unknown_event_type_touches_nothing(harness: _Harness) -> None:
    result = await harness.pipeline.ingest(
        RecordKind.EVENT,
        _payload(assetId="A", timestamp=100, eventType="UNKNOWN_TYPE"),
    )
    await harness.dispatcher.drain()

    assert isinstance(result, Rejection)
    assert result.reason == RejectionReason.VALIDATION_ERROR
    assert harness.store.query_history("A", kind=RecordKind.EVENT) == []
    assert harness.cache.recent_events("A") == []
    assert harness.notifier.calls == []
    assert harness.pipeline.stats.rejected == 1


@pytest.mark.asyncio
async def test_malformed_payload_is_rejected_and_logged(
    harness: _Harness,
    caplog: pytest.LogCaptureFixture,
) -> None:
    with caplog.at_level(logging.WARNING, logger="pyfleet.ingestion.pipeline"):
        result = await harness.pipeline.ingest(RecordKind.LOCATION, b"{broken")

    assert isinstance(result, Rejection)
    assert result.reason == RejectionReason.DECODE_ERROR
    assert "decode_error" in caplog.text


@pytest.mark.asyncio
async def test_failed_notification_does_not_affect_history(harness: _Harness) -> None:
    harness.notifier.fail = True

    record = await harness.pipeline.ingest(
        RecordKind.EVENT,
        _payload(assetId="A", timestamp=100, eventType="MAINTENANCE_DUE", description="Oil change"),
    )
    await harness.dispatcher.drain()

    assert len(harness.notifier.calls) == 1
    assert harness.store.query_history("A", kind=RecordKind.EVENT) == [record]
    assert harness.cache.recent_events("A") == [record]


@pytest.mark.asyncio
async def test_redelivered_event_is_stored_and_dispatched_once(harness: _Harness) -> None:
    raw = _payload(assetId="A", timestamp=100, eventType="MAINTENANCE_DUE")

    await harness.pipeline.ingest(RecordKind.EVENT, raw)
    await harness.pipeline.ingest(RecordKind.EVENT, raw)
    await harness.dispatcher.drain()

    assert len(harness.store.query_history("A", kind=RecordKind.EVENT)) == 1
    assert len(harness.notifier.calls) == 1
    assert harness.pipeline.stats.duplicates == 1


@pytest.mark.asyncio
async def test_cache_failure_is_not_fatal(caplog: pytest.LogCaptureFixture) -> None:
    store = HistoryStore(":memory:")
    pipeline = IngestionPipeline(history=AsyncHistoryStore(store), cache=_BrokenCache())

    with caplog.at_level(logging.ERROR, logger="pyfleet.ingestion.pipeline"):
        record = await pipeline.ingest("location", _payload(assetId="A", timestamp=100, position=[1.0, 1.0]))

    assert store.query_history("A") == [record]
    assert pipeline.stats.cache_failures == 1
    assert "cache update failed" in caplog.text
    store.close()


@pytest.mark.asyncio
async def test_store_failure_propagates_and_skips_cache_and_dispatch() -> None:
    store = _BrokenStore(":memory:")
    cache = StateCache()
    notifier = _RecordingNotifier()
    dispatcher = EventDispatcher(notifier)
    pipeline = IngestionPipeline(history=AsyncHistoryStore(store), cache=cache, dispatcher=dispatcher)

    with pytest.raises(FleetStoreWriteError):
        await pipeline.ingest("event", _payload(assetId="A", timestamp=100, eventType="MAINTENANCE_DUE"))
    await dispatcher.drain()

    assert cache.get_latest("A", RecordKind.EVENT) is None
    assert notifier.calls == []
    store.close()


@pytest.mark.asyncio
async def test_stream_handlers_route_by_kind(harness: _Harness) -> None:
    handlers = harness.pipeline.handlers()
    assert set(handlers) == {"location", "status", "event"}

    message = StreamMessage(
        stream="event",
        topic="vehicle-events",
        payload=_payload(assetId="A", timestamp=100, eventType=EventType.IDLE_STARTED.value),
        mid=1,
        qos=1,
    )
    await handlers["event"](message)

    assert len(harness.store.query_history("A", kind=RecordKind.EVENT)) == 1
