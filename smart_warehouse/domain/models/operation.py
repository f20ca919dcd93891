from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from enum import StrEnum
from typing import Any, NewType

from smart_warehouse.domain.models.warehouse import CellId, ProductId

OperationId = NewType("OperationId", int)


class Priority(StrEnum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"

    @property
    def rank(self) -> int:
        """Lower rank runs first."""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    Priority.URGENT: 1,
    Priority.HIGH: 2,
    Priority.MEDIUM: 3,
    Priority.LOW: 4,
}


class OperationKind(StrEnum):
    HOME = "HOME"
    PICK_FROM_CONVEYOR = "PICK_FROM_CONVEYOR"
    PLACE_IN_CELL = "PLACE_IN_CELL"
    TAKE_FROM_CELL = "TAKE_FROM_CELL"
    GOTO_COLUMN = "GOTO_COLUMN"
    MANUAL_CMD = "MANUAL_CMD"
    MOVE_TO_LOADING = "MOVE_TO_LOADING"
    RETURN_TO_LOADING = "RETURN_TO_LOADING"
    AUTO_STOCK = "AUTO_STOCK"
    AUTO_RETRIEVE = "AUTO_RETRIEVE"


class OperationStatus(StrEnum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"
    CANCELLED = "CANCELLED"


@dataclass(slots=True)
class Operation:
    id: OperationId
    kind: OperationKind
    command: str
    product_id: ProductId | None = None
    cell_id: CellId | None = None
    status: OperationStatus = OperationStatus.PENDING
    priority: Priority = Priority.MEDIUM
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error_message: str | None = None
    execution_time_ms: int | None = None

    def clone(self) -> "Operation":
        return replace(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": int(self.id),
            "op_type": self.kind.value,
            "cmd": self.command,
            "product_id": int(self.product_id) if self.product_id is not None else None,
            "cell_id": int(self.cell_id) if self.cell_id is not None else None,
            "status": self.status.value,
            "priority": self.priority.value,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "error_message": self.error_message,
            "execution_time_ms": self.execution_time_ms,
        }
