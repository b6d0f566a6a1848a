"""Internal MQTT runtime for stream consumers."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any, cast

import paho.mqtt.client as mqtt

from pyfleet.exceptions import FleetConnectionError

DEFAULT_PORT = 1883


@dataclass(frozen=True)
class StreamMessage:
    """One delivered message, as handed to a stream consumer."""

    stream: str
    topic: str
    payload: bytes
    mid: int
    qos: int


def parse_broker(raw_broker: str) -> tuple[str, int]:
    """Split ``[scheme://]host[:port][/path]`` into host and port."""
    value = raw_broker.strip()
    if not value:
        raise ValueError("Broker value is empty")

    if "://" in value:
        value = value.split("://", 1)[1]
    if "/" in value:
        value = value.split("/", 1)[0]

    host, _, maybe_port = value.rpartition(":")
    if host and maybe_port.isdigit():
        return host, int(maybe_port)
    return value, DEFAULT_PORT


def shared_subscription(topic: str, group: str | None) -> str:
    """MQTT v5 shared subscription for a consumer group."""
    return f"$share/{group}/{topic}" if group else topic


class MqttStreamRuntime:
    """Threaded paho-mqtt runtime for one stream.

    Messages are delivered with manual acknowledgement: the broker only
    considers a message handled once :meth:`ack` is called for it.
    Successive :meth:`start` calls rotate through *brokers*.
    """

    def __init__(
        self,
        *,
        stream: str,
        topic: str,
        brokers: Sequence[str],
        client_id: str,
        group: str | None = None,
        qos: int = 1,
        keepalive: int = 60,
        connect_timeout: float = 10.0,
        logger: logging.Logger | None = None,
    ) -> None:
        if not brokers:
            raise ValueError("at least one broker is required")
        self._stream = stream
        self._topic = topic
        self._brokers = tuple(brokers)
        self._client_id = client_id
        self._group = group
        self._qos = qos
        self._keepalive = keepalive
        self._connect_timeout = connect_timeout
        self._logger = logger or logging.getLogger(__name__)
        self._client: mqtt.Client | None = None
        self._running = False
        self._attempt = 0

    @property
    def is_running(self) -> bool:
        """Whether the MQTT runtime is actively running."""
        return self._running

    @property
    def subscription(self) -> str:
        return shared_subscription(self._topic, self._group)

    def _next_broker(self) -> str:
        broker = self._brokers[self._attempt % len(self._brokers)]
        self._attempt += 1
        return broker

    def start(self, on_message: Callable[[StreamMessage], None]) -> None:
        """Connect, subscribe and start the network loop.

        Blocks until the broker acknowledges the connection or
        ``connect_timeout`` elapses. Run it in an executor from async code.

        Raises
        ------
        FleetConnectionError
            When the broker is unreachable, refuses the connection, or
            does not answer in time.
        """
        self.stop()
        broker = self._next_broker()
        try:
            host, port = parse_broker(broker)
        except ValueError as exc:
            raise FleetConnectionError(str(exc), stream=self._stream, broker=broker) from exc

        self._logger.debug(
            "MQTT runtime start requested stream=%s host=%s port=%s subscription=%s client_id=%s",
            self._stream,
            host,
            port,
            self.subscription,
            self._client_id,
        )

        client = mqtt.Client(
            callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
            client_id=self._client_id,
            protocol=mqtt.MQTTv5,
            manual_ack=True,
        )
        client.enable_logger(self._logger)

        connected = threading.Event()
        refusal: list[Any] = []

        def on_connect(
            c: mqtt.Client,
            _userdata: Any,
            _flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if reason_code.value != 0:
                self._logger.warning("MQTT connect refused stream=%s: %s", self._stream, reason_code)
                refusal.append(reason_code)
                connected.set()
                return
            # Runs again after every automatic reconnect.
            self._logger.debug("MQTT connected stream=%s subscribing %s", self._stream, self.subscription)
            c.subscribe(self.subscription, qos=self._qos)
            connected.set()

        def on_mqtt_message(_c: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
            on_message(
                StreamMessage(
                    stream=self._stream,
                    topic=msg.topic,
                    payload=bytes(msg.payload),
                    mid=msg.mid,
                    qos=msg.qos,
                )
            )

        def on_disconnect(
            _client: mqtt.Client,
            _userdata: Any,
            _disconnect_flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if self._running:
                self._logger.warning("MQTT disconnected stream=%s: %s", self._stream, reason_code)

        client.on_connect = on_connect
        client.on_message = on_mqtt_message
        client.on_disconnect = on_disconnect

        try:
            client.connect(host, port, keepalive=self._keepalive)
        except OSError as exc:
            raise FleetConnectionError(
                f"Cannot reach broker {host}:{port}: {exc}",
                stream=self._stream,
                broker=broker,
            ) from exc

        client.loop_start()
        if not connected.wait(self._connect_timeout) or refusal:
            try:
                client.disconnect()
            finally:
                client.loop_stop()
            reason = refusal[0] if refusal else f"no CONNACK within {self._connect_timeout}s"
            raise FleetConnectionError(
                f"Broker {host}:{port} connection failed: {reason}",
                stream=self._stream,
                broker=broker,
            )

        self._client = client
        self._running = True
        self._logger.debug("MQTT network loop started stream=%s", self._stream)

    def ack(self, message: StreamMessage) -> bool:
        """Acknowledge a handled message. Returns ``False`` when not connected."""
        client = self._client
        if client is None:
            return False
        client.ack(message.mid, message.qos)
        return True

    def stop(self) -> None:
        """Stop and disconnect current MQTT client if running."""
        client = self._client
        self._client = None
        was_running = self._running
        self._running = False

        if client is None:
            return
        try:
            if was_running:
                self._logger.debug("MQTT disconnect requested stream=%s", self._stream)
                client.disconnect()
        finally:
            client.loop_stop()
            self._logger.debug("MQTT network loop stopped stream=%s", self._stream)
