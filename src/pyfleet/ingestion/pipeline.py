"""Ingestion pipeline.

Every accepted message goes through the same steps, in order:

- decode and validate into a typed record (rejections stop here)
- durable history append (failures propagate to the consumer)
- latest-state cache update (failures are logged, never fatal)
- event side-effect dispatch / status threshold inspection

Keeping the ordering in one place means every stream kind honours the same
write path.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from pyfleet._mqtt import StreamMessage
from pyfleet._redact import payload_preview, redact_for_log
from pyfleet.consumer import MessageHandler
from pyfleet.dispatch import EventDispatcher
from pyfleet.exceptions import FleetCacheWriteError
from pyfleet.history import AsyncHistoryStore
from pyfleet.ingestion.decode import Rejection, decode
from pyfleet.models import DomainEvent, Record, RecordKind, StatusRecord
from pyfleet.state import StateCache

_logger = logging.getLogger(__name__)


@dataclass
class IngestionStats:
    accepted: int = 0
    duplicates: int = 0
    rejected: int = 0
    cache_failures: int = 0


def _preview(raw: bytes | str | Mapping[str, Any]) -> Any:
    if isinstance(raw, Mapping):
        return redact_for_log(raw)
    return payload_preview(raw)


class IngestionPipeline:
    """Decode, persist, cache and dispatch records.

    Parameters
    ----------
    history : AsyncHistoryStore
        Durable store. Its write errors propagate out of :meth:`ingest`.
    cache : StateCache
        Latest-state cache.
    dispatcher : EventDispatcher or None
        Side effects for events and status thresholds.
    """

    def __init__(
        self,
        *,
        history: AsyncHistoryStore,
        cache: StateCache,
        dispatcher: EventDispatcher | None = None,
    ) -> None:
        self._history = history
        self._cache = cache
        self._dispatcher = dispatcher
        self.stats = IngestionStats()

    async def ingest(self, kind: RecordKind | str, raw: bytes | str | Mapping[str, Any]) -> Record | Rejection:
        """Run one payload through the pipeline.

        Returns the accepted record, or the :class:`Rejection` explaining why
        it was dropped.

        Raises
        ------
        FleetStoreWriteError
            When the record could not be durably appended. Nothing else has
            been written in that case.
        """
        result = decode(kind, raw)
        if isinstance(result, Rejection):
            self.stats.rejected += 1
            _logger.warning(
                "Rejected %s message (%s) asset=%s: %s payload=%s",
                result.kind,
                result.reason,
                result.asset_id,
                result.detail,
                _preview(raw),
            )
            return result

        record = result
        inserted = await self._history.append(record)
        if inserted:
            self.stats.accepted += 1
        else:
            self.stats.duplicates += 1
            _logger.debug("Redelivered %s record asset=%s", record.kind, record.asset_id)

        self._apply_to_cache(record)

        # Side effects only fire for the first delivery of a record.
        if inserted and self._dispatcher is not None:
            if isinstance(record, DomainEvent):
                self._dispatcher.dispatch(record)
            elif isinstance(record, StatusRecord):
                self._dispatcher.inspect_status(record)
        return record

    def _apply_to_cache(self, record: Record) -> None:
        try:
            self._cache.apply(record)
        except Exception as exc:
            self.stats.cache_failures += 1
            error = FleetCacheWriteError(f"cache update failed for {record.kind} asset={record.asset_id}: {exc}")
            _logger.error("%s", error, exc_info=exc)

    def handler_for(self, kind: RecordKind | str) -> MessageHandler:
        """Adapt :meth:`ingest` to a stream consumer handler."""
        record_kind = RecordKind(kind)

        async def handle(message: StreamMessage) -> None:
            await self.ingest(record_kind, message.payload)

        return handle

    def handlers(self) -> dict[str, MessageHandler]:
        """Handlers for all three stream kinds, keyed by stream name."""
        return {str(kind): self.handler_for(kind) for kind in RecordKind}
