from __future__ import annotations

from datetime import datetime

from smart_warehouse.domain.errors import InvalidTransition
from smart_warehouse.domain.models.operation import Operation, OperationStatus
from smart_warehouse.domain.models.task import AutoTask, TaskStatus

_OPERATION_TRANSITIONS: dict[OperationStatus, frozenset[OperationStatus]] = {
    OperationStatus.PENDING: frozenset({OperationStatus.PROCESSING, OperationStatus.CANCELLED}),
    OperationStatus.PROCESSING: frozenset({OperationStatus.COMPLETED, OperationStatus.ERROR}),
    OperationStatus.COMPLETED: frozenset(),
    OperationStatus.ERROR: frozenset(),
    OperationStatus.CANCELLED: frozenset(),
}

_TASK_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.PROCESSING, TaskStatus.CANCELLED}),
    TaskStatus.PROCESSING: frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}


class OperationStateMachine:
    @staticmethod
    def can_advance(current: OperationStatus, target: OperationStatus) -> bool:
        return target in _OPERATION_TRANSITIONS[current]

    @staticmethod
    def advance(operation: Operation, target: OperationStatus, at: datetime) -> None:
        if not OperationStateMachine.can_advance(operation.status, target):
            raise InvalidTransition(
                f"Operation {operation.id} cannot move from {operation.status.value} to {target.value}",
                details={"id": int(operation.id), "from": operation.status.value, "to": target.value},
            )
        operation.status = target
        if target is OperationStatus.PROCESSING:
            operation.started_at = at
        else:
            operation.completed_at = at


class TaskStateMachine:
    @staticmethod
    def can_advance(current: TaskStatus, target: TaskStatus) -> bool:
        return target in _TASK_TRANSITIONS[current]

    @staticmethod
    def advance(task: AutoTask, target: TaskStatus, at: datetime) -> None:
        if not TaskStateMachine.can_advance(task.status, target):
            raise InvalidTransition(
                f"Task {task.id} cannot move from {task.status.value} to {target.value}",
                details={"id": int(task.id), "from": task.status.value, "to": target.value},
            )
        task.status = target
        if target is TaskStatus.PROCESSING:
            task.started_at = at
        elif target is not TaskStatus.CANCELLED:
            task.completed_at = at
