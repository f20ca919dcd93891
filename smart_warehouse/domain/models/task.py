from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from enum import StrEnum
from typing import Any, NewType

from smart_warehouse.domain.models.operation import Priority
from smart_warehouse.domain.models.warehouse import CellId, ProductId

TaskId = NewType("TaskId", int)


class TaskType(StrEnum):
    STOCK = "STOCK"
    RETRIEVE = "RETRIEVE"
    MOVE = "MOVE"
    ORGANIZE = "ORGANIZE"
    INVENTORY_CHECK = "INVENTORY_CHECK"


class TaskStatus(StrEnum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


@dataclass(slots=True)
class AutoTask:
    id: TaskId
    task_type: TaskType
    cell_id: CellId | None = None
    product_id: ProductId | None = None
    product_rfid: str | None = None
    quantity: int = 1
    priority: Priority = Priority.MEDIUM
    status: TaskStatus = TaskStatus.PENDING
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error_message: str | None = None

    def clone(self) -> "AutoTask":
        return replace(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": int(self.id),
            "task_type": self.task_type.value,
            "cell_id": int(self.cell_id) if self.cell_id is not None else None,
            "product_id": int(self.product_id) if self.product_id is not None else None,
            "product_rfid": self.product_rfid,
            "quantity": self.quantity,
            "priority": self.priority.value,
            "status": self.status.value,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "error_message": self.error_message,
        }
