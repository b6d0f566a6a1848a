"""Custom exception hierarchy for pyfleet."""

from __future__ import annotations


class FleetError(Exception):
    """Base exception for all pyfleet errors."""


class FleetConfigError(FleetError):
    """Invalid or missing configuration."""


class FleetDecodeError(FleetError):
    """Message payload is not a well-formed JSON object."""


class FleetValidationError(FleetError):
    """Message parsed but a required field is missing or out of range."""


class FleetCacheWriteError(FleetError):
    """State cache update failed.

    Never fatal: the history store stays authoritative and ingestion
    continues.
    """


class FleetStoreError(FleetError):
    """History store failure."""


class FleetStoreWriteError(FleetStoreError):
    """A record could not be durably appended.

    Propagated to the stream consumer, which logs the message as
    failed-to-persist and drops it.
    """


class FleetStoreReadError(FleetStoreError):
    """A history query failed."""


class FleetDispatchError(FleetError):
    """Side-effect delivery failed (non-2xx, timeout, network error)."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        endpoint: str = "",
    ) -> None:
        self.status_code = status_code
        self.endpoint = endpoint
        super().__init__(message)


class FleetConnectionError(FleetError):
    """Broker connect/subscribe failure for a stream."""

    def __init__(
        self,
        message: str,
        *,
        stream: str = "",
        broker: str = "",
    ) -> None:
        self.stream = stream
        self.broker = broker
        super().__init__(message)
