"""Tracking service composition.

Wires configuration into the cache, history store, dispatcher, ingestion
pipeline, stream consumers and read API, and owns their lifecycle.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable, Mapping
from datetime import timedelta
from typing import Any

import aiohttp

from pyfleet._notify import MaintenanceNotifier, Notifier
from pyfleet.config import FleetConfig
from pyfleet.consumer import ConsumerState, StreamConsumerManager, StreamRuntime
from pyfleet.dispatch import EventDispatcher
from pyfleet.history import AsyncHistoryStore, HistoryStore
from pyfleet.ingestion.decode import Rejection
from pyfleet.ingestion.pipeline import IngestionPipeline
from pyfleet.models import Record, RecordKind
from pyfleet.reader import TelemetryReader
from pyfleet.state import StateCache

_logger = logging.getLogger(__name__)


class TrackingService:
    """Real-time telemetry ingestion and state service.

    Usage::

        async with TrackingService(FleetConfig.from_env()) as service:
            await service.start()
            latest = await service.reader.get_latest("truck-1")

    Parameters
    ----------
    config : FleetConfig
        Service configuration.
    session : aiohttp.ClientSession or None
        Optional shared HTTP session for outbound notifications. When
        omitted, the service creates and owns one.
    history : HistoryStore or None
        Optional pre-built store; otherwise one is opened at
        ``config.store_path`` and closed on exit.
    cache : StateCache or None
        Optional pre-built cache.
    notifier : Notifier or None
        Overrides the HTTP maintenance notifier.
    runtime_factory : callable or None
        Builds a broker runtime from ``(stream, topic)``. Defaults to MQTT.
    housekeeping_interval : float
        Seconds between expired-cache purges.
    """

    def __init__(
        self,
        config: FleetConfig,
        *,
        session: aiohttp.ClientSession | None = None,
        history: HistoryStore | None = None,
        cache: StateCache | None = None,
        notifier: Notifier | None = None,
        runtime_factory: Callable[[str, str], StreamRuntime] | None = None,
        housekeeping_interval: float = 300.0,
    ) -> None:
        self._config = config
        self._external_session = session is not None
        self._http_session = session
        self._external_history = history is not None
        self._history_store = history
        self._cache = cache or StateCache(
            ttl=timedelta(seconds=config.cache_ttl_seconds),
            recent_events_limit=config.recent_events_limit,
        )
        self._notifier = notifier
        self._runtime_factory = runtime_factory
        self._housekeeping_interval = housekeeping_interval
        self._housekeeping: asyncio.Task[None] | None = None

        self._history: AsyncHistoryStore | None = None
        self._dispatcher: EventDispatcher | None = None
        self._pipeline: IngestionPipeline | None = None
        self._reader: TelemetryReader | None = None
        self._consumers: StreamConsumerManager | None = None

    async def __aenter__(self) -> TrackingService:
        if self._history_store is None:
            self._history_store = await asyncio.to_thread(HistoryStore, self._config.store_path)
        self._history = AsyncHistoryStore(self._history_store, timeout=self._config.store_timeout)

        notifier = self._notifier
        if notifier is None:
            if self._http_session is None:
                self._http_session = aiohttp.ClientSession()
            notifier = MaintenanceNotifier(
                self._config.maintenance_url,
                self._http_session,
                timeout=self._config.notification_timeout,
            )

        self._dispatcher = EventDispatcher(notifier)
        self._pipeline = IngestionPipeline(history=self._history, cache=self._cache, dispatcher=self._dispatcher)
        self._reader = TelemetryReader(
            cache=self._cache,
            history=self._history,
            geo_staleness=timedelta(seconds=self._config.geo_staleness_seconds),
        )
        self._consumers = StreamConsumerManager.from_config(
            self._config,
            self._pipeline.handlers(),
            runtime_factory=self._runtime_factory,
        )
        _logger.debug("Tracking service assembled store=%s", self._config.store_path)
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()
        if not self._external_history and self._history is not None:
            await self._history.aclose()
            self._history_store = None
        if not self._external_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None
        self._history = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> dict[str, bool]:
        """Start all stream consumers and cache housekeeping.

        Returns per-stream start results. A stream that failed to connect is
        left degraded while the others run.
        """
        consumers = self._require(self._consumers)
        results = await consumers.start_all()
        if self._housekeeping is None:
            self._housekeeping = asyncio.get_running_loop().create_task(
                self._housekeeping_loop(),
                name="cache-housekeeping",
            )
        degraded = consumers.degraded()
        if degraded:
            _logger.error("Tracking service running degraded; streams down: %s", ", ".join(degraded))
        else:
            _logger.info("Tracking service started")
        return results

    async def stop(self) -> None:
        """Stop consumers, then wait for in-flight side effects."""
        task = self._housekeeping
        self._housekeeping = None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if self._consumers is not None:
            await self._consumers.stop()
        if self._dispatcher is not None:
            await self._dispatcher.drain()

    async def _housekeeping_loop(self) -> None:
        while True:
            await asyncio.sleep(self._housekeeping_interval)
            removed = self._cache.purge_expired()
            if removed:
                _logger.debug("Purged %d expired cache entries", removed)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @staticmethod
    def _require(component: Any) -> Any:
        if component is None:
            raise RuntimeError("TrackingService is not open; use 'async with'")
        return component

    @property
    def config(self) -> FleetConfig:
        return self._config

    @property
    def cache(self) -> StateCache:
        return self._cache

    @property
    def reader(self) -> TelemetryReader:
        return self._require(self._reader)

    @property
    def pipeline(self) -> IngestionPipeline:
        return self._require(self._pipeline)

    @property
    def dispatcher(self) -> EventDispatcher:
        return self._require(self._dispatcher)

    @property
    def consumers(self) -> StreamConsumerManager:
        return self._require(self._consumers)

    def states(self) -> Mapping[str, ConsumerState]:
        return self.consumers.states()

    async def ingest(self, kind: RecordKind | str, raw: bytes | str | Mapping[str, Any]) -> Record | Rejection:
        """Push one payload through the pipeline without a broker."""
        return await self.pipeline.ingest(kind, raw)
