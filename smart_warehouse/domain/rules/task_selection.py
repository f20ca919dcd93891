from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime

from smart_warehouse.domain.models.task import AutoTask, TaskStatus


def task_queue_key(task: AutoTask) -> tuple[int, datetime, int]:
    # id breaks ties between tasks created within the same clock tick
    return (task.priority.rank, task.created_at or datetime.min, int(task.id))


def order_tasks(tasks: Iterable[AutoTask]) -> list[AutoTask]:
    return sorted(tasks, key=task_queue_key)


def select_next_task(tasks: Iterable[AutoTask]) -> AutoTask | None:
    pending = [task for task in tasks if task.status is TaskStatus.PENDING]
    if not pending:
        return None
    return min(pending, key=task_queue_key)
