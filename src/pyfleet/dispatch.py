"""Event side-effect dispatcher.

Routing is a pure table lookup on the event type. Side effects run as
detached tasks so they never hold up ingestion; their failures are logged
with event context and never retried.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from pyfleet._notify import Notifier
from pyfleet.exceptions import FleetDispatchError
from pyfleet.models import DomainEvent, EventType, StatusRecord

_logger = logging.getLogger(__name__)

SideEffect = Callable[[DomainEvent], Awaitable[None]]
EventHook = Callable[[DomainEvent], Any]

LOW_FUEL_THRESHOLD = 15.0
LOW_BATTERY_THRESHOLD = 20.0
SERVICE_INTERVAL_KM = 10_000.0
SERVICE_WINDOW_KM = 500.0


def status_findings(record: StatusRecord) -> list[str]:
    """Threshold findings worth flagging for a status report."""
    findings: list[str] = []
    if record.fuel_level is not None and record.fuel_level < LOW_FUEL_THRESHOLD:
        findings.append(f"low fuel level ({record.fuel_level:g}%)")
    if record.battery_level is not None and record.battery_level < LOW_BATTERY_THRESHOLD:
        findings.append(f"low battery level ({record.battery_level:g}%)")
    if record.odometer is not None and record.odometer % SERVICE_INTERVAL_KM < SERVICE_WINDOW_KM:
        findings.append(f"service interval reached (odometer {record.odometer:g} km)")
    return findings


class EventDispatcher:
    """Map domain events to side effects.

    Parameters
    ----------
    notifier : Notifier or None
        Receives ``MAINTENANCE_DUE`` events. Without one those events are
        logged and skipped.
    """

    def __init__(self, notifier: Notifier | None = None) -> None:
        self._notifier = notifier
        self._alert_hooks: list[EventHook] = []
        self._trip_hooks: list[EventHook] = []
        self._tasks: set[asyncio.Task[None]] = set()
        self._routes: dict[EventType, SideEffect] = {
            EventType.MAINTENANCE_DUE: self._schedule_maintenance,
            EventType.BATTERY_LOW: self._raise_alert,
            EventType.FUEL_LOW: self._raise_alert,
            EventType.TRIP_COMPLETED: self._summarize_trip,
        }

    @property
    def pending(self) -> int:
        """Number of side effects still running."""
        return len(self._tasks)

    def route(self, event_type: EventType) -> SideEffect | None:
        """Return the side effect for *event_type*, or ``None`` for a no-op."""
        return self._routes.get(event_type)

    def add_alert_hook(self, hook: EventHook) -> Callable[[], None]:
        """Register a callback for ``BATTERY_LOW``/``FUEL_LOW`` events.

        Hooks may be sync or async. Returns an unsubscribe callable.
        """
        self._alert_hooks.append(hook)
        return lambda: self._remove_hook(self._alert_hooks, hook)

    def add_trip_hook(self, hook: EventHook) -> Callable[[], None]:
        """Register a callback for ``TRIP_COMPLETED`` events."""
        self._trip_hooks.append(hook)
        return lambda: self._remove_hook(self._trip_hooks, hook)

    @staticmethod
    def _remove_hook(hooks: list[EventHook], hook: EventHook) -> None:
        if hook in hooks:
            hooks.remove(hook)

    def dispatch(self, event: DomainEvent) -> asyncio.Task[None] | None:
        """Schedule the side effect for *event* and return immediately.

        Must be called from a running event loop. Returns the detached task,
        or ``None`` when the event type has no side effect.
        """
        handler = self.route(event.event_type)
        if handler is None:
            _logger.debug("No side effect for %s event asset=%s", event.event_type, event.asset_id)
            return None
        task = asyncio.get_running_loop().create_task(
            self._run(handler, event),
            name=f"dispatch-{event.event_type}-{event.asset_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for every in-flight side effect to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def inspect_status(self, record: StatusRecord) -> list[str]:
        """Log threshold findings for a status record. Never raises."""
        findings = status_findings(record)
        for finding in findings:
            _logger.info("Asset %s: %s", record.asset_id, finding)
        return findings

    async def _run(self, handler: SideEffect, event: DomainEvent) -> None:
        try:
            await handler(event)
        except FleetDispatchError as exc:
            _logger.error(
                "Side effect for %s failed asset=%s endpoint=%s status=%s: %s",
                event.event_type,
                event.asset_id,
                exc.endpoint,
                exc.status_code,
                exc,
            )
        except Exception:
            _logger.exception(
                "Side effect for %s failed asset=%s",
                event.event_type,
                event.asset_id,
            )

    async def _call_hooks(self, hooks: list[EventHook], event: DomainEvent) -> None:
        for hook in list(hooks):
            try:
                result = hook(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                _logger.exception("Event hook failed for %s asset=%s", event.event_type, event.asset_id)

    async def _schedule_maintenance(self, event: DomainEvent) -> None:
        if self._notifier is None:
            _logger.warning("Maintenance due for asset %s but no notifier is configured", event.asset_id)
            return
        await self._notifier.notify(event)

    async def _raise_alert(self, event: DomainEvent) -> None:
        _logger.warning(
            "Alert %s for asset %s: %s",
            event.event_type,
            event.asset_id,
            event.description or "no description",
        )
        await self._call_hooks(self._alert_hooks, event)

    async def _summarize_trip(self, event: DomainEvent) -> None:
        trip = event.trip_info
        _logger.info(
            "Trip %s completed for asset %s: distance=%s km duration=%s min",
            trip.trip_id if trip is not None else "unknown",
            event.asset_id,
            trip.distance if trip is not None else None,
            trip.duration if trip is not None else None,
        )
        await self._call_hooks(self._trip_hooks, event)
