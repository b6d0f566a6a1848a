from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

import aiohttp
import pytest
from aiohttp import web

from pyfleet._notify import DEFAULT_REASON, MaintenanceNotifier, build_maintenance_request
from pyfleet.dispatch import EventDispatcher, status_findings
from pyfleet.exceptions import FleetDispatchError
from pyfleet.models import AssetStatus, DomainEvent, EventType, StatusRecord, TripInfo


def _event(event_type: EventType, **kwargs: Any) -> DomainEvent:
    return DomainEvent(asset_id="truck-1", timestamp=1_767_268_800, event_type=event_type, **kwargs)


@dataclass
class _FakeNotifier:
    fail: bool = False
    delay: float = 0.0
    calls: list[DomainEvent] = field(default_factory=list)

    async def notify(self, event: DomainEvent) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        self.calls.append(event)
        if self.fail:
            raise FleetDispatchError("HTTP 503 from maintenance service", status_code=503, endpoint="http://x")


def test_routing_table() -> None:
    dispatcher = EventDispatcher(_FakeNotifier())

    routed = {event_type for event_type in EventType if dispatcher.route(event_type) is not None}

    assert routed == {
        EventType.MAINTENANCE_DUE,
        EventType.BATTERY_LOW,
        EventType.FUEL_LOW,
        EventType.TRIP_COMPLETED,
    }


@pytest.mark.asyncio
async def test_maintenance_due_notifies() -> None:
    notifier = _FakeNotifier()
    dispatcher = EventDispatcher(notifier)

    task = dispatcher.dispatch(_event(EventType.MAINTENANCE_DUE, description="Oil change"))
    assert task is not None
    await dispatcher.drain()

    assert [event.description for event in notifier.calls] == ["Oil change"]
    assert dispatcher.pending == 0


@pytest.mark.asyncio
async def test_unmapped_event_is_a_no_op() -> None:
    notifier = _FakeNotifier()
    dispatcher = EventDispatcher(notifier)

    assert dispatcher.dispatch(_event(EventType.GEOFENCE_ENTER)) is None
    await dispatcher.drain()
    assert notifier.calls == []


@pytest.mark.asyncio
async def test_dispatch_returns_before_side_effect_completes() -> None:
    notifier = _FakeNotifier(delay=0.05)
    dispatcher = EventDispatcher(notifier)

    dispatcher.dispatch(_event(EventType.MAINTENANCE_DUE))
    assert notifier.calls == []
    assert dispatcher.pending == 1

    await dispatcher.drain()
    assert len(notifier.calls) == 1


@pytest.mark.asyncio
async def test_failed_notification_is_logged_not_raised(caplog: pytest.LogCaptureFixture) -> None:
    dispatcher = EventDispatcher(_FakeNotifier(fail=True))

    with caplog.at_level(logging.ERROR, logger="pyfleet.dispatch"):
        task = dispatcher.dispatch(_event(EventType.MAINTENANCE_DUE))
        assert task is not None
        await task

    assert task.exception() is None
    assert "MAINTENANCE_DUE" in caplog.text
    assert "truck-1" in caplog.text


@pytest.mark.asyncio
async def test_alert_and_trip_hooks() -> None:
    dispatcher = EventDispatcher()
    alerts: list[EventType] = []
    trips: list[str | None] = []

    async def on_trip(event: DomainEvent) -> None:
        trips.append(event.trip_id)

    unsubscribe = dispatcher.add_alert_hook(lambda event: alerts.append(event.event_type))
    dispatcher.add_trip_hook(on_trip)

    dispatcher.dispatch(_event(EventType.BATTERY_LOW))
    dispatcher.dispatch(_event(EventType.FUEL_LOW))
    dispatcher.dispatch(_event(EventType.TRIP_COMPLETED, trip_info=TripInfo(trip_id="t-1", distance=12.5)))
    await dispatcher.drain()

    unsubscribe()
    dispatcher.dispatch(_event(EventType.BATTERY_LOW))
    await dispatcher.drain()

    assert alerts == [EventType.BATTERY_LOW, EventType.FUEL_LOW]
    assert trips == ["t-1"]


@pytest.mark.asyncio
async def test_failing_hook_does_not_break_other_hooks() -> None:
    dispatcher = EventDispatcher()
    seen: list[str] = []

    def broken(_event: DomainEvent) -> None:
        raise RuntimeError("boom")

    dispatcher.add_alert_hook(broken)
    dispatcher.add_alert_hook(lambda event: seen.append(event.asset_id))

    dispatcher.dispatch(_event(EventType.FUEL_LOW))
    await dispatcher.drain()

    assert seen == ["truck-1"]


@pytest.mark.asyncio
async def test_maintenance_without_notifier_is_skipped(caplog: pytest.LogCaptureFixture) -> None:
    dispatcher = EventDispatcher()

    with caplog.at_level(logging.WARNING, logger="pyfleet.dispatch"):
        dispatcher.dispatch(_event(EventType.MAINTENANCE_DUE))
        await dispatcher.drain()

    assert "no notifier" in caplog.text


def test_status_findings_thresholds() -> None:
    record = StatusRecord(
        asset_id="truck-1",
        timestamp=1,
        status=AssetStatus.ACTIVE,
        fuel_level=10,
        battery_level=19.5,
        odometer=30_250,
    )
    healthy = StatusRecord(
        asset_id="truck-1",
        timestamp=1,
        status=AssetStatus.ACTIVE,
        fuel_level=15,
        battery_level=20,
        odometer=30_600,
    )

    findings = status_findings(record)

    assert len(findings) == 3
    assert status_findings(healthy) == []
    assert EventDispatcher().inspect_status(record) == findings


# ----------------------------------------------------------------------
# HTTP notifier
# ----------------------------------------------------------------------


def test_maintenance_request_body() -> None:
    body = build_maintenance_request(_event(EventType.MAINTENANCE_DUE, metadata={"km": 10_000}))

    assert body == {
        "assetId": "truck-1",
        "reason": DEFAULT_REASON,
        "priority": "NORMAL",
        "metadata": {"km": 10_000},
    }


async def _serve(handler: Any) -> tuple[web.AppRunner, str]:
    app = web.Application()
    app.router.add_post("/schedule", handler)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "127.0.0.1", 0)
    await site.start()
    port = runner.addresses[0][1]
    return runner, f"http://127.0.0.1:{port}/schedule"


@pytest.mark.asyncio
async def test_notifier_posts_request() -> None:
    received: list[tuple[dict[str, Any], str | None]] = []

    async def handler(request: web.Request) -> web.Response:
        received.append((await request.json(), request.headers.get("X-Service-Name")))
        return web.json_response({"ok": True}, status=201)

    runner, url = await _serve(handler)
    try:
        async with aiohttp.ClientSession() as session:
            notifier = MaintenanceNotifier(url, session, timeout=2.0)
            await notifier.notify(_event(EventType.MAINTENANCE_DUE, description="Brake check"))
    finally:
        await runner.cleanup()

    assert received == [
        (
            {"assetId": "truck-1", "reason": "Brake check", "priority": "NORMAL", "metadata": {}},
            "tracking-service",
        )
    ]


@pytest.mark.asyncio
async def test_notifier_raises_on_non_2xx() -> None:
    async def handler(_request: web.Request) -> web.Response:
        return web.Response(status=500, text="down")

    runner, url = await _serve(handler)
    try:
        async with aiohttp.ClientSession() as session:
            notifier = MaintenanceNotifier(url, session)
            with pytest.raises(FleetDispatchError) as excinfo:
                await notifier.notify(_event(EventType.MAINTENANCE_DUE))
    finally:
        await runner.cleanup()

    assert excinfo.value.status_code == 500
    assert excinfo.value.endpoint == url


@pytest.mark.asyncio
async def test_notifier_raises_on_timeout() -> None:
    async def handler(_request: web.Request) -> web.Response:
        await asyncio.sleep(1.0)
        return web.Response(status=200)

    runner, url = await _serve(handler)
    try:
        async with aiohttp.ClientSession() as session:
            notifier = MaintenanceNotifier(url, session, timeout=0.1)
            with pytest.raises(FleetDispatchError):
                await notifier.notify(_event(EventType.MAINTENANCE_DUE))
    finally:
        await runner.cleanup()


@pytest.mark.asyncio
async def test_notifier_raises_on_connection_error() -> None:
    async with aiohttp.ClientSession() as session:
        notifier = MaintenanceNotifier("http://127.0.0.1:1/schedule", session, timeout=1.0)
        with pytest.raises(FleetDispatchError):
            await notifier.notify(_event(EventType.MAINTENANCE_DUE))
