from __future__ import annotations

from dataclasses import dataclass
from typing import TypeAlias

from smart_warehouse.domain.models.arm import ArmState
from smart_warehouse.domain.models.operation import Operation
from smart_warehouse.domain.models.task import AutoTask
from smart_warehouse.domain.models.warehouse import Cell, ConveyorStatus, LoadingZone, Product, SensorSnapshot


@dataclass(slots=True, frozen=True)
class OperationUpdated:
    operation: Operation


@dataclass(slots=True, frozen=True)
class TaskUpdated:
    task: AutoTask


@dataclass(slots=True, frozen=True)
class CellUpdated:
    cell: Cell


@dataclass(slots=True, frozen=True)
class LoadingZoneUpdated:
    loading_zone: LoadingZone


@dataclass(slots=True, frozen=True)
class ConveyorUpdated:
    conveyor: ConveyorStatus


@dataclass(slots=True, frozen=True)
class ProductUpdated:
    product: Product


@dataclass(slots=True, frozen=True)
class SensorUpdated:
    snapshot: SensorSnapshot


@dataclass(slots=True, frozen=True)
class RfidDetected:
    tag: str
    product: Product


@dataclass(slots=True, frozen=True)
class ModeChanged:
    arm: ArmState


@dataclass(slots=True, frozen=True)
class DeviceStatusChanged:
    connected: bool
    url: str | None


@dataclass(slots=True, frozen=True)
class WarehouseSnapshot:
    cells: list[Cell]
    loading_zone: LoadingZone


EntityEvent: TypeAlias = OperationUpdated | TaskUpdated | CellUpdated | LoadingZoneUpdated | ConveyorUpdated | ProductUpdated


@dataclass(slots=True, frozen=True)
class BatchUpdated:
    """Entity events committed together; observers apply them as one patch."""

    events: list[EntityEvent]


WarehouseEvent: TypeAlias = (
    EntityEvent
    | SensorUpdated
    | RfidDetected
    | ModeChanged
    | DeviceStatusChanged
    | WarehouseSnapshot
    | BatchUpdated
)
