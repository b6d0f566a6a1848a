"""Stream consumers.

One generic :class:`StreamConsumer` per stream kind, parameterized by the
topic and an async handler. Broker network I/O runs on the MQTT client's
own thread; messages are handed to the event loop thread-safely and
processed one at a time per stream.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import secrets
from collections.abc import Awaitable, Callable, Iterable, Mapping
from typing import Protocol

from pyfleet._mqtt import MqttStreamRuntime, StreamMessage
from pyfleet._redact import payload_preview
from pyfleet.config import FleetConfig
from pyfleet.exceptions import FleetConnectionError, FleetDecodeError, FleetStoreWriteError, FleetValidationError

_logger = logging.getLogger(__name__)

MessageHandler = Callable[[StreamMessage], Awaitable[None]]


class ConsumerState(enum.StrEnum):
    IDLE = "idle"
    CONNECTING = "connecting"
    RUNNING = "running"
    DEGRADED = "degraded"
    STOPPED = "stopped"


class StreamRuntime(Protocol):
    """Broker connection used by a consumer.

    Production uses :class:`pyfleet._mqtt.MqttStreamRuntime`; tests pass a
    fake.
    """

    @property
    def is_running(self) -> bool:
        ...

    def start(self, on_message: Callable[[StreamMessage], None]) -> None:
        ...

    def ack(self, message: StreamMessage) -> bool:
        ...

    def stop(self) -> None:
        ...


_STOP = object()


class StreamConsumer:
    """Consume one stream with bounded startup retry and sequential handling.

    Parameters
    ----------
    stream : str
        Stream kind (``location``, ``status``, ``event``).
    topic : str
        Topic the runtime subscribes to.
    handler : MessageHandler
        Async callable run once per message. A message is acknowledged to
        the broker only after the handler returns or fails.
    runtime_factory : callable
        Builds the broker runtime.
    retry_attempts : int
        Connection attempts before the stream is marked degraded.
    retry_interval : float
        Seconds between attempts.
    """

    def __init__(
        self,
        *,
        stream: str,
        topic: str,
        handler: MessageHandler,
        runtime_factory: Callable[[], StreamRuntime],
        retry_attempts: int = 5,
        retry_interval: float = 10.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self.stream = stream
        self.topic = topic
        self._handler = handler
        self._runtime_factory = runtime_factory
        self._retry_attempts = max(1, retry_attempts)
        self._retry_interval = retry_interval
        self._logger = logger or _logger
        self._state = ConsumerState.IDLE
        self._runtime: StreamRuntime | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._queue: asyncio.Queue[object] | None = None
        self._worker: asyncio.Task[None] | None = None
        self._accepting = False
        self.processed = 0
        self.failed = 0

    @property
    def state(self) -> ConsumerState:
        return self._state

    async def start(self) -> bool:
        """Connect with bounded retry and start the worker.

        Returns ``True`` when running. On exhaustion the consumer is marked
        :attr:`ConsumerState.DEGRADED` and ``False`` is returned; no
        exception escapes.
        """
        if self._state == ConsumerState.RUNNING:
            return True

        loop = asyncio.get_running_loop()
        self._loop = loop
        self._queue = asyncio.Queue()
        self._state = ConsumerState.CONNECTING
        runtime = self._runtime_factory()

        for attempt in range(1, self._retry_attempts + 1):
            self._accepting = True
            try:
                await loop.run_in_executor(None, runtime.start, self._on_message)
            except FleetConnectionError as exc:
                self._accepting = False
                self._logger.warning(
                    "Stream %s connection attempt %d/%d failed: %s",
                    self.stream,
                    attempt,
                    self._retry_attempts,
                    exc,
                )
                if attempt < self._retry_attempts:
                    await asyncio.sleep(self._retry_interval)
                if self._state == ConsumerState.STOPPED:
                    return False
                continue

            if self._state == ConsumerState.STOPPED:
                # stop() ran while the connection was being established.
                self._accepting = False
                await loop.run_in_executor(None, runtime.stop)
                self._logger.info("Stream %s stopped during connect", self.stream)
                return False

            self._runtime = runtime
            self._worker = loop.create_task(self._work(), name=f"consumer-{self.stream}")
            self._state = ConsumerState.RUNNING
            self._logger.info("Stream %s consuming topic %s", self.stream, self.topic)
            return True

        self._logger.error(
            "Stream %s could not connect after %d attempts; marked degraded",
            self.stream,
            self._retry_attempts,
        )
        self._state = ConsumerState.DEGRADED
        return False

    async def stop(self) -> None:
        """Stop consuming.

        New deliveries are refused at once. Messages already queued are
        processed and acknowledged before the connection is closed, so
        nothing the broker handed over is dropped silently.
        """
        self._accepting = False
        queue = self._queue
        worker = self._worker
        self._worker = None
        if worker is not None and queue is not None:
            pending = queue.qsize()
            if pending:
                self._logger.info("Stream %s draining %d queued messages", self.stream, pending)
            queue.put_nowait(_STOP)
            await worker

        runtime = self._runtime
        self._runtime = None
        if runtime is not None:
            await asyncio.get_running_loop().run_in_executor(None, runtime.stop)

        if self._state != ConsumerState.IDLE or runtime is not None:
            self._state = ConsumerState.STOPPED
        self._logger.info("Stream %s stopped", self.stream)

    def _on_message(self, message: StreamMessage) -> None:
        # Called from the broker client thread.
        loop = self._loop
        if not self._accepting or loop is None or loop.is_closed():
            self._logger.warning(
                "Stream %s refused delivery mid=%s while stopped; left unacknowledged",
                self.stream,
                message.mid,
            )
            return
        loop.call_soon_threadsafe(self._enqueue, message)

    def _enqueue(self, message: StreamMessage) -> None:
        if self._accepting and self._queue is not None:
            self._queue.put_nowait(message)
        else:
            self._logger.warning(
                "Stream %s refused delivery mid=%s while stopping; left unacknowledged",
                self.stream,
                message.mid,
            )

    async def _work(self) -> None:
        queue = self._queue
        assert queue is not None
        while True:
            item = await queue.get()
            if item is _STOP:
                return
            assert isinstance(item, StreamMessage)
            await self._process(item)

    async def _process(self, message: StreamMessage) -> None:
        try:
            await self._handler(message)
            self.processed += 1
        except (FleetDecodeError, FleetValidationError) as exc:
            self.failed += 1
            self._logger.warning(
                "Rejected message stream=%s topic=%s mid=%s: %s",
                self.stream,
                message.topic,
                message.mid,
                exc,
            )
        except FleetStoreWriteError:
            self.failed += 1
            self._logger.error(
                "Message failed to persist stream=%s topic=%s mid=%s payload=%s",
                self.stream,
                message.topic,
                message.mid,
                payload_preview(message.payload),
                exc_info=True,
            )
        except Exception:
            self.failed += 1
            self._logger.exception(
                "Message handling failed stream=%s topic=%s mid=%s payload=%s",
                self.stream,
                message.topic,
                message.mid,
                payload_preview(message.payload),
            )

        runtime = self._runtime
        if runtime is not None:
            try:
                runtime.ack(message)
            except Exception:
                self._logger.warning("Ack failed stream=%s mid=%s", self.stream, message.mid, exc_info=True)


class StreamConsumerManager:
    """Own one consumer per stream and start/stop them together."""

    def __init__(self, consumers: Iterable[StreamConsumer]) -> None:
        self._consumers: dict[str, StreamConsumer] = {}
        for consumer in consumers:
            if consumer.stream in self._consumers:
                raise ValueError(f"duplicate consumer for stream {consumer.stream!r}")
            self._consumers[consumer.stream] = consumer

    @classmethod
    def from_config(
        cls,
        config: FleetConfig,
        handlers: Mapping[str, MessageHandler],
        *,
        runtime_factory: Callable[[str, str], StreamRuntime] | None = None,
    ) -> StreamConsumerManager:
        """Build consumers for each stream in *handlers*.

        *runtime_factory* receives ``(stream, topic)``; by default an
        :class:`MqttStreamRuntime` is built from *config*.
        """

        def default_factory(stream: str, topic: str) -> StreamRuntime:
            return MqttStreamRuntime(
                stream=stream,
                topic=topic,
                brokers=config.brokers,
                client_id=f"{config.client_id}-{stream}-{secrets.token_hex(4)}",
                group=config.consumer_group,
                qos=config.mqtt_qos,
                keepalive=config.mqtt_keepalive,
                connect_timeout=config.connect_timeout,
            )

        factory = runtime_factory or default_factory
        consumers = []
        for stream, handler in handlers.items():
            topic = config.topic_for(stream)
            consumers.append(
                StreamConsumer(
                    stream=stream,
                    topic=topic,
                    handler=handler,
                    runtime_factory=lambda stream=stream, topic=topic: factory(stream, topic),
                    retry_attempts=config.retry_attempts,
                    retry_interval=config.retry_interval,
                )
            )
        return cls(consumers)

    def get(self, stream: str) -> StreamConsumer:
        try:
            return self._consumers[stream]
        except KeyError as exc:
            raise KeyError(f"no consumer for stream {stream!r}") from exc

    async def start(self, stream: str) -> bool:
        return await self.get(stream).start()

    async def start_all(self) -> dict[str, bool]:
        """Start every stream concurrently. One stream's retries never delay another."""
        streams = list(self._consumers)
        results = await asyncio.gather(*(self._consumers[stream].start() for stream in streams))
        return dict(zip(streams, results, strict=True))

    async def stop(self) -> None:
        await asyncio.gather(*(consumer.stop() for consumer in self._consumers.values()))

    def states(self) -> dict[str, ConsumerState]:
        return {stream: consumer.state for stream, consumer in self._consumers.items()}

    def degraded(self) -> list[str]:
        """Streams that gave up connecting."""
        return [stream for stream, consumer in self._consumers.items() if consumer.state == ConsumerState.DEGRADED]
