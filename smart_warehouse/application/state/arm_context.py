from __future__ import annotations

import asyncio
import logging

from smart_warehouse.domain.errors import ConcurrencyBusyError
from smart_warehouse.domain.models.arm import ArmMode, ArmState, DeviceStatus, InFlight

log = logging.getLogger(__name__)


class ArmModeContext:
    """
    Process-wide arm state: operating mode, device status text and the single
    in-flight holder. The in-flight slot is the mutual-exclusion gate in front
    of the device gateway.
    """

    def __init__(self, mode: ArmMode = ArmMode.MANUAL) -> None:
        self._mode = mode
        self._in_flight: InFlight | None = None
        self._released = asyncio.Event()
        self._released.set()

    @property
    def mode(self) -> ArmMode:
        return self._mode

    @property
    def in_flight(self) -> InFlight | None:
        return self._in_flight

    @property
    def device_status(self) -> DeviceStatus:
        return DeviceStatus.READY if self._in_flight is None else DeviceStatus.BUSY

    def set_mode(self, mode: ArmMode) -> bool:
        if self._mode is mode:
            return False
        log.info("Arm mode change old=%s new=%s", self._mode.value, mode.value)
        self._mode = mode
        return True

    def try_acquire(self, holder: InFlight) -> None:
        if self._in_flight is not None:
            raise ConcurrencyBusyError(
                "Arm is busy with another command",
                details={"in_flight": self._in_flight.to_dict()},
            )
        self._take(holder)

    async def acquire(self, holder: InFlight) -> None:
        while self._in_flight is not None:
            self._released.clear()
            await self._released.wait()
        self._take(holder)

    def bind(self, holder: InFlight) -> None:
        if self._in_flight is None:
            raise RuntimeError("Cannot bind in-flight holder while the gate is free")
        self._in_flight = holder

    def release(self) -> None:
        if self._in_flight is None:
            log.warning("Arm gate release requested while already free")
            return
        log.debug("Arm gate released holder=%s", self._in_flight)
        self._in_flight = None
        self._released.set()

    def state(self) -> ArmState:
        return ArmState(mode=self._mode, status=self.device_status, in_flight=self._in_flight)

    def _take(self, holder: InFlight) -> None:
        self._in_flight = holder
        log.debug("Arm gate acquired holder=%s", holder)
