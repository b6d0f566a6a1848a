"""Pipeline configuration for pyfleet."""

from __future__ import annotations

import dataclasses
import os
from collections.abc import Callable
from typing import Any

from pyfleet.exceptions import FleetConfigError


def _env_brokers(value: str) -> tuple[str, ...]:
    brokers = tuple(part.strip() for part in value.split(",") if part.strip())
    if not brokers:
        raise FleetConfigError("FLEET_BROKERS must list at least one broker")
    return brokers


@dataclasses.dataclass(frozen=True)
class FleetConfig:
    """Pipeline configuration.

    Parameters
    ----------
    brokers : tuple of str
        Broker endpoints as ``host[:port]``. Tried round-robin across
        connection attempts.
    client_id : str
        Client identifier prefix; each stream appends its own suffix.
    consumer_group : str
        Consumer group shared by all instances of the service. Maps to an
        MQTT v5 shared subscription (``$share/<group>/<topic>``).
    location_topic : str
        Topic carrying location records.
    status_topic : str
        Topic carrying status records.
    event_topic : str
        Topic carrying domain events.
    cache_ttl_seconds : float
        Time-to-live of latest-state cache entries. Defaults to 24 hours.
    geo_staleness_seconds : float
        Positions older than this are ignored by proximity queries on the
        cache geo index.
    recent_events_limit : int
        Number of recent events kept per asset in the cache.
    retry_attempts : int
        Initial connection attempts per stream before it is marked degraded.
    retry_interval : float
        Seconds between initial connection attempts.
    connect_timeout : float
        Seconds to wait for the broker to acknowledge a connection.
    mqtt_keepalive : int
        MQTT keepalive in seconds.
    mqtt_qos : int
        Subscription QoS. ``1`` gives at-least-once delivery.
    maintenance_url : str
        Endpoint receiving maintenance notifications.
    notification_timeout : float
        Total timeout for the maintenance notification call.
    store_path : str
        DuckDB database path for the history store (``":memory:"`` for an
        ephemeral store).
    store_timeout : float
        Upper bound on a single history store call.
    """

    brokers: tuple[str, ...] = ("localhost:1883",)
    client_id: str = "tracking-service"
    consumer_group: str = "tracking-group"
    location_topic: str = "vehicle-location"
    status_topic: str = "vehicle-status"
    event_topic: str = "vehicle-events"
    cache_ttl_seconds: float = 24 * 3600
    geo_staleness_seconds: float = 24 * 3600
    recent_events_limit: int = 20
    retry_attempts: int = 5
    retry_interval: float = 10.0
    connect_timeout: float = 10.0
    mqtt_keepalive: int = 60
    mqtt_qos: int = 1
    maintenance_url: str = "http://maintenance-service:3003/api/maintenance/schedule"
    notification_timeout: float = 5.0
    store_path: str = "tracking.duckdb"
    store_timeout: float = 5.0

    def __post_init__(self) -> None:
        if not self.brokers:
            raise FleetConfigError("at least one broker is required")
        if self.retry_attempts < 1:
            raise FleetConfigError("retry_attempts must be >= 1")
        if self.mqtt_qos not in (0, 1, 2):
            raise FleetConfigError(f"mqtt_qos must be 0, 1 or 2, got {self.mqtt_qos}")

    @classmethod
    def from_env(cls, **overrides: Any) -> FleetConfig:
        """Create configuration from environment variables.

        Reads ``FLEET_*`` variables. Explicit keyword arguments override
        environment values.

        Parameters
        ----------
        **overrides
            Explicit field values that take precedence over env vars.

        Returns
        -------
        FleetConfig
            Populated configuration.

        Raises
        ------
        FleetConfigError
            When a numeric variable cannot be parsed.
        """
        env = os.environ

        _ENV_CONFIG_MAP: dict[str, tuple[str, Callable[[str], Any]]] = {
            "FLEET_BROKERS": ("brokers", _env_brokers),
            "FLEET_CLIENT_ID": ("client_id", str),
            "FLEET_CONSUMER_GROUP": ("consumer_group", str),
            "FLEET_LOCATION_TOPIC": ("location_topic", str),
            "FLEET_STATUS_TOPIC": ("status_topic", str),
            "FLEET_EVENT_TOPIC": ("event_topic", str),
            "FLEET_CACHE_TTL_SECONDS": ("cache_ttl_seconds", float),
            "FLEET_GEO_STALENESS_SECONDS": ("geo_staleness_seconds", float),
            "FLEET_RECENT_EVENTS_LIMIT": ("recent_events_limit", int),
            "FLEET_RETRY_ATTEMPTS": ("retry_attempts", int),
            "FLEET_RETRY_INTERVAL": ("retry_interval", float),
            "FLEET_CONNECT_TIMEOUT": ("connect_timeout", float),
            "FLEET_MQTT_KEEPALIVE": ("mqtt_keepalive", int),
            "FLEET_MQTT_QOS": ("mqtt_qos", int),
            "FLEET_MAINTENANCE_URL": ("maintenance_url", str),
            "FLEET_NOTIFICATION_TIMEOUT": ("notification_timeout", float),
            "FLEET_STORE_PATH": ("store_path", str),
            "FLEET_STORE_TIMEOUT": ("store_timeout", float),
        }

        config_kwargs: dict[str, Any] = {}
        for env_key, (field_name, convert) in _ENV_CONFIG_MAP.items():
            if field_name in overrides:
                continue
            val = env.get(env_key)
            if val is None:
                continue
            try:
                config_kwargs[field_name] = convert(val)
            except ValueError as exc:
                raise FleetConfigError(f"invalid value for {env_key}: {val!r}") from exc

        config_kwargs.update(overrides)

        return cls(**config_kwargs)

    def topic_for(self, stream: str) -> str:
        """Return the configured topic for a stream kind (``location``, ``status``, ``event``)."""
        topics = {
            "location": self.location_topic,
            "status": self.status_topic,
            "event": self.event_topic,
        }
        try:
            return topics[str(stream)]
        except KeyError as exc:
            raise FleetConfigError(f"unknown stream {stream!r}") from exc
