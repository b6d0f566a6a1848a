"""HTTP notifier for the maintenance-scheduling service."""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol

import aiohttp

from pyfleet.exceptions import FleetDispatchError
from pyfleet.models import DomainEvent

_logger = logging.getLogger(__name__)

SERVICE_NAME = "tracking-service"
DEFAULT_REASON = "Scheduled maintenance"


class Notifier(Protocol):
    """Structural notifier interface used by the dispatcher.

    Tests pass a fake; production uses :class:`MaintenanceNotifier`.
    """

    async def notify(self, event: DomainEvent) -> None:
        ...


def build_maintenance_request(event: DomainEvent) -> dict[str, Any]:
    """Build the maintenance scheduling request body for *event*."""
    return {
        "assetId": event.asset_id,
        "reason": event.description or DEFAULT_REASON,
        "priority": "NORMAL",
        "metadata": dict(event.metadata),
    }


class MaintenanceNotifier:
    """POST maintenance requests to an external service.

    Parameters
    ----------
    url : str
        Scheduling endpoint.
    http_session : aiohttp.ClientSession
        Session owned by the caller.
    timeout : float
        Total request timeout in seconds.
    """

    def __init__(
        self,
        url: str,
        http_session: aiohttp.ClientSession,
        *,
        timeout: float = 5.0,
        service_name: str = SERVICE_NAME,
    ) -> None:
        self._url = url
        self._http = http_session
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._service_name = service_name

    async def notify(self, event: DomainEvent) -> None:
        """Send one maintenance request.

        Raises
        ------
        FleetDispatchError
            On a non-2xx response, a timeout, or a network error.
        """
        body = json.dumps(build_maintenance_request(event), separators=(",", ":"), default=str)
        headers = {
            "content-type": "application/json",
            "X-Service-Name": self._service_name,
        }

        _logger.debug("POST %s asset=%s", self._url, event.asset_id)

        try:
            async with self._http.post(self._url, data=body, headers=headers, timeout=self._timeout) as resp:
                if not 200 <= resp.status < 300:
                    text = await resp.text()
                    raise FleetDispatchError(
                        f"HTTP {resp.status} from maintenance service: {text[:200]}",
                        status_code=resp.status,
                        endpoint=self._url,
                    )
        except FleetDispatchError:
            raise
        except TimeoutError as exc:
            raise FleetDispatchError(
                f"Maintenance request for asset {event.asset_id} timed out",
                endpoint=self._url,
            ) from exc
        except aiohttp.ClientError as exc:
            raise FleetDispatchError(
                f"Maintenance request for asset {event.asset_id} failed: {exc}",
                endpoint=self._url,
            ) from exc

        _logger.info("Maintenance scheduled for asset %s", event.asset_id)


__all__ = [
    "DEFAULT_REASON",
    "MaintenanceNotifier",
    "Notifier",
    "build_maintenance_request",
]
