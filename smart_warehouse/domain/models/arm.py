from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any


class ArmMode(StrEnum):
    MANUAL = "manual"
    AUTO = "auto"


class DeviceStatus(StrEnum):
    READY = "READY"
    BUSY = "BUSY"


@dataclass(slots=True, frozen=True)
class InFlight:
    kind: str
    ref_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "id": self.ref_id}


@dataclass(slots=True, frozen=True)
class ArmState:
    mode: ArmMode
    status: DeviceStatus
    in_flight: InFlight | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "status": self.status.value,
            "current_operation": self.in_flight.ref_id
            if self.in_flight is not None and self.in_flight.kind == "operation"
            else None,
            "in_flight": self.in_flight.to_dict() if self.in_flight else None,
        }
