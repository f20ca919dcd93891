from __future__ import annotations

import logging
import time

import httpx

from smart_warehouse.application.ports import EventBusPort
from smart_warehouse.domain.errors import DeviceCommFailure, DeviceUnregistered, ValidationError
from smart_warehouse.domain.events import DeviceStatusChanged

log = logging.getLogger(__name__)


def normalize_base_url(address: str) -> str:
    text = address.strip().rstrip("/")
    if not text:
        raise ValidationError("device address must not be empty", details={"field": "ip"})
    if "://" not in text:
        text = f"http://{text}"
    return text


class HttpDeviceGateway:
    """
    Command channel to the arm controller: `GET <base>/cmd?c=<command>`.
    Moves opaque command strings only. A failed call marks the device
    disconnected until the next registration; nothing is retried.
    """

    def __init__(
        self,
        event_bus: EventBusPort | None = None,
        *,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._event_bus = event_bus
        self._timeout_seconds = timeout_seconds
        self._client = httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds), transport=transport)
        self._base_url: str | None = None
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def base_url(self) -> str | None:
        return self._base_url

    async def register(self, address: str) -> str:
        base_url = normalize_base_url(address)
        previous = self._base_url
        self._base_url = base_url
        log.info("Device registered url=%s previous=%s", base_url, previous)
        await self._set_connected(True, force=previous != base_url)
        return base_url

    async def send_command(self, command: str) -> str:
        if self._base_url is None:
            raise DeviceUnregistered("Device not registered. Use /api/esp32/register")
        url = f"{self._base_url}/cmd"
        started_at = time.perf_counter()
        log.info("Device command send url=%s command=%s", url, command)
        try:
            resp = await self._client.get(url, params={"c": command})
        except httpx.TimeoutException as exc:
            await self._set_connected(False)
            raise DeviceCommFailure(f"Device timeout after {self._timeout_seconds}s: {command}") from exc
        except httpx.HTTPError as exc:
            await self._set_connected(False)
            raise DeviceCommFailure(f"Device request failed: {exc!r}") from exc

        elapsed_ms = int((time.perf_counter() - started_at) * 1000)
        if not resp.is_success:
            log.warning(
                "Device command rejected status=%s elapsed_ms=%s command=%s body=%s",
                resp.status_code,
                elapsed_ms,
                command,
                resp.text[:200],
            )
            await self._set_connected(False)
            raise DeviceCommFailure(f"Device HTTP {resp.status_code}: {resp.text}")
        log.info("Device command done elapsed_ms=%s command=%s", elapsed_ms, command)
        return resp.text

    async def close(self) -> None:
        await self._client.aclose()

    async def _set_connected(self, connected: bool, *, force: bool = False) -> None:
        changed = self._connected != connected
        self._connected = connected
        if not changed and not force:
            return
        if not connected:
            log.warning("Device marked disconnected url=%s", self._base_url)
        if self._event_bus is not None:
            await self._event_bus.publish(DeviceStatusChanged(connected=connected, url=self._base_url))
