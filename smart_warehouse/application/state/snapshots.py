from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from smart_warehouse.domain.models.operation import (
    Operation,
    OperationId,
    OperationKind,
    OperationStatus,
    Priority,
)
from smart_warehouse.domain.models.task import AutoTask, TaskId, TaskStatus, TaskType
from smart_warehouse.domain.models.warehouse import (
    Cell,
    CellId,
    CellStatus,
    ConveyorStatus,
    LoadingZone,
    Product,
    ProductId,
)


@dataclass(slots=True)
class ChangeSet:
    """Rows touched by one store transaction, keyed by id."""

    cells: dict[int, Cell] = field(default_factory=dict)
    products: dict[int, Product] = field(default_factory=dict)
    operations: dict[int, Operation] = field(default_factory=dict)
    tasks: dict[int, AutoTask] = field(default_factory=dict)
    loading_zone: LoadingZone | None = None
    conveyor: ConveyorStatus | None = None

    def is_empty(self) -> bool:
        return not (
            self.cells
            or self.products
            or self.operations
            or self.tasks
            or self.loading_zone is not None
            or self.conveyor is not None
        )

    def row_count(self) -> int:
        return (
            len(self.cells)
            + len(self.products)
            + len(self.operations)
            + len(self.tasks)
            + int(self.loading_zone is not None)
            + int(self.conveyor is not None)
        )


@dataclass(slots=True, frozen=True)
class StoreSnapshot:
    created_at: datetime
    cells: list[Cell]
    products: list[Product]
    operations: list[Operation]
    tasks: list[AutoTask]
    loading_zone: LoadingZone
    conveyor: ConveyorStatus

    def to_dict(self) -> dict[str, Any]:
        return {
            "created_at": self.created_at.isoformat(),
            "cells": [cell.to_dict() for cell in self.cells],
            "products": [product.to_dict() for product in self.products],
            "operations": [operation.to_dict() for operation in self.operations],
            "tasks": [task.to_dict() for task in self.tasks],
            "loading_zone": self.loading_zone.to_dict(),
            "conveyor": self.conveyor.to_dict(),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "StoreSnapshot":
        return cls(
            created_at=parse_datetime(payload.get("created_at")) or datetime.now(),
            cells=[cell_from_row(row) for row in payload.get("cells") or []],
            products=[product_from_row(row) for row in payload.get("products") or []],
            operations=[operation_from_row(row) for row in payload.get("operations") or []],
            tasks=[task_from_row(row) for row in payload.get("tasks") or []],
            loading_zone=loading_zone_from_row(payload.get("loading_zone") or {}),
            conveyor=conveyor_from_row(payload.get("conveyor") or {}),
        )


def parse_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    text = str(value).strip()
    if not text:
        return None
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def _optional_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    return int(value)


def cell_from_row(row: dict[str, Any]) -> Cell:
    product_id = _optional_int(row.get("product_id"))
    return Cell(
        id=CellId(int(row["id"])),
        row=int(row["row"]),
        col=int(row["col"]),
        label=str(row["label"]),
        product_id=ProductId(product_id) if product_id is not None else None,
        quantity=int(row.get("quantity") or 0),
        status=CellStatus(row.get("status") or CellStatus.EMPTY.value),
        updated_at=parse_datetime(row.get("updated_at")),
    )


def product_from_row(row: dict[str, Any]) -> Product:
    return Product(
        id=ProductId(int(row["id"])),
        name=str(row["name"]),
        sku=row.get("sku"),
        rfid_uid=row.get("rfid_uid"),
        category=row.get("category"),
        created_at=parse_datetime(row.get("created_at")),
    )


def operation_from_row(row: dict[str, Any]) -> Operation:
    product_id = _optional_int(row.get("product_id"))
    cell_id = _optional_int(row.get("cell_id"))
    return Operation(
        id=OperationId(int(row["id"])),
        kind=OperationKind(row["op_type"]),
        command=str(row.get("cmd") or ""),
        product_id=ProductId(product_id) if product_id is not None else None,
        cell_id=CellId(cell_id) if cell_id is not None else None,
        status=OperationStatus(row.get("status") or OperationStatus.PENDING.value),
        priority=Priority(row.get("priority") or Priority.MEDIUM.value),
        created_at=parse_datetime(row.get("created_at")),
        started_at=parse_datetime(row.get("started_at")),
        completed_at=parse_datetime(row.get("completed_at")),
        error_message=row.get("error_message"),
        execution_time_ms=_optional_int(row.get("execution_time_ms")),
    )


def task_from_row(row: dict[str, Any]) -> AutoTask:
    product_id = _optional_int(row.get("product_id"))
    cell_id = _optional_int(row.get("cell_id"))
    return AutoTask(
        id=TaskId(int(row["id"])),
        task_type=TaskType(row["task_type"]),
        cell_id=CellId(cell_id) if cell_id is not None else None,
        product_id=ProductId(product_id) if product_id is not None else None,
        product_rfid=row.get("product_rfid"),
        quantity=int(row.get("quantity") or 1),
        priority=Priority(row.get("priority") or Priority.MEDIUM.value),
        status=TaskStatus(row.get("status") or TaskStatus.PENDING.value),
        created_at=parse_datetime(row.get("created_at")),
        started_at=parse_datetime(row.get("started_at")),
        completed_at=parse_datetime(row.get("completed_at")),
        error_message=row.get("error_message"),
    )


def loading_zone_from_row(row: dict[str, Any]) -> LoadingZone:
    product_id = _optional_int(row.get("product_id"))
    return LoadingZone(
        product_id=ProductId(product_id) if product_id is not None else None,
        quantity=int(row.get("quantity") or 0),
        updated_at=parse_datetime(row.get("updated_at")),
    )


def conveyor_from_row(row: dict[str, Any]) -> ConveyorStatus:
    product_id = _optional_int(row.get("product_id"))
    return ConveyorStatus(
        has_product=bool(row.get("has_product")),
        product_id=ProductId(product_id) if product_id is not None else None,
        product_rfid=row.get("product_rfid"),
        last_detected_at=parse_datetime(row.get("last_detected_at")),
    )
