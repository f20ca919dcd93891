from datetime import datetime, timedelta

from smart_warehouse.domain.models.operation import Priority
from smart_warehouse.domain.models.task import AutoTask, TaskId, TaskStatus, TaskType
from smart_warehouse.domain.rules.task_selection import order_tasks, select_next_task

T0 = datetime(2024, 5, 1, 8, 0, 0)


def _task(task_id: int, task_type: TaskType, priority: Priority, minute: int, status=TaskStatus.PENDING) -> AutoTask:
    return AutoTask(
        id=TaskId(task_id),
        task_type=task_type,
        priority=priority,
        status=status,
        created_at=T0 + timedelta(minutes=minute),
    )


def test_urgent_task_runs_before_older_medium_tasks():
    tasks = [
        _task(1, TaskType.STOCK, Priority.MEDIUM, 1),
        _task(2, TaskType.RETRIEVE, Priority.URGENT, 2),
        _task(3, TaskType.STOCK, Priority.MEDIUM, 3),
    ]

    ordered = order_tasks(tasks)

    assert [int(task.id) for task in ordered] == [2, 1, 3]
    assert int(select_next_task(tasks).id) == 2


def test_priority_ranks_follow_urgent_high_medium_low():
    assert [p.rank for p in (Priority.URGENT, Priority.HIGH, Priority.MEDIUM, Priority.LOW)] == [1, 2, 3, 4]


def test_same_priority_and_time_falls_back_to_id():
    tasks = [
        _task(9, TaskType.STOCK, Priority.HIGH, 0),
        _task(4, TaskType.STOCK, Priority.HIGH, 0),
    ]

    assert int(select_next_task(tasks).id) == 4


def test_selection_skips_tasks_that_left_pending():
    tasks = [
        _task(1, TaskType.STOCK, Priority.URGENT, 0, status=TaskStatus.PROCESSING),
        _task(2, TaskType.STOCK, Priority.LOW, 1, status=TaskStatus.CANCELLED),
        _task(3, TaskType.STOCK, Priority.LOW, 2),
    ]

    assert int(select_next_task(tasks).id) == 3


def test_later_lower_priority_insert_does_not_change_choice():
    tasks = [_task(1, TaskType.STOCK, Priority.HIGH, 5)]
    before = select_next_task(tasks)

    tasks.append(_task(2, TaskType.RETRIEVE, Priority.MEDIUM, 6))

    assert select_next_task(tasks).id == before.id


def test_empty_queue_has_no_next_task():
    assert select_next_task([]) is None
