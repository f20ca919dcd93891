from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from enum import StrEnum
from typing import Any, NewType

CellId = NewType("CellId", int)
ProductId = NewType("ProductId", int)


class CellStatus(StrEnum):
    EMPTY = "EMPTY"
    OCCUPIED = "OCCUPIED"
    RESERVED = "RESERVED"


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def cell_label(row: int, col: int) -> str:
    return f"R{row}C{col}"


@dataclass(slots=True)
class Product:
    id: ProductId
    name: str
    sku: str | None = None
    rfid_uid: str | None = None
    category: str | None = None
    created_at: datetime | None = None

    def clone(self) -> "Product":
        return replace(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": int(self.id),
            "name": self.name,
            "sku": self.sku,
            "rfid_uid": self.rfid_uid,
            "category": self.category,
            "created_at": _iso(self.created_at),
        }


@dataclass(slots=True)
class Cell:
    id: CellId
    row: int
    col: int
    label: str
    product_id: ProductId | None = None
    quantity: int = 0
    status: CellStatus = CellStatus.EMPTY
    updated_at: datetime | None = None

    def store(self, product_id: ProductId, quantity: int, at: datetime) -> None:
        self.product_id = product_id
        self.quantity = quantity
        self.status = CellStatus.OCCUPIED
        self.updated_at = at

    def clear(self, at: datetime) -> None:
        self.product_id = None
        self.quantity = 0
        self.status = CellStatus.EMPTY
        self.updated_at = at

    def clone(self) -> "Cell":
        return replace(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": int(self.id),
            "row": self.row,
            "col": self.col,
            "label": self.label,
            "product_id": int(self.product_id) if self.product_id is not None else None,
            "quantity": self.quantity,
            "status": self.status.value,
            "updated_at": _iso(self.updated_at),
        }


@dataclass(slots=True)
class LoadingZone:
    product_id: ProductId | None = None
    quantity: int = 0
    updated_at: datetime | None = None

    def clone(self) -> "LoadingZone":
        return replace(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": 1,
            "product_id": int(self.product_id) if self.product_id is not None else None,
            "quantity": self.quantity,
            "updated_at": _iso(self.updated_at),
        }


@dataclass(slots=True)
class ConveyorStatus:
    has_product: bool = False
    product_id: ProductId | None = None
    product_rfid: str | None = None
    last_detected_at: datetime | None = None

    def clone(self) -> "ConveyorStatus":
        return replace(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": 1,
            "has_product": self.has_product,
            "product_id": int(self.product_id) if self.product_id is not None else None,
            "product_rfid": self.product_rfid,
            "last_detected_at": _iso(self.last_detected_at),
        }


@dataclass(slots=True, frozen=True)
class SensorSnapshot:
    ldr1: bool
    ldr2: bool
    rfid: str | None
    conveyor_state: str
    received_at: datetime

    @property
    def product_present(self) -> bool:
        return self.ldr1 or self.ldr2

    def to_dict(self) -> dict[str, Any]:
        return {
            "ldr1": self.ldr1,
            "ldr2": self.ldr2,
            "rfid": self.rfid,
            "conveyor_state": self.conveyor_state,
            "last_update": self.received_at.isoformat(),
        }
