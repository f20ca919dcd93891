from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from smart_warehouse.application.ports import ClockPort, EventBusPort, StateRepoPort
from smart_warehouse.application.state.reducers import Transaction, WarehouseState
from smart_warehouse.application.state.snapshots import ChangeSet, StoreSnapshot
from smart_warehouse.domain.errors import NotFoundError, PersistenceFailure, WarehouseError
from smart_warehouse.domain.events import (
    BatchUpdated,
    CellUpdated,
    ConveyorUpdated,
    EntityEvent,
    LoadingZoneUpdated,
    OperationUpdated,
    ProductUpdated,
    TaskUpdated,
)
from smart_warehouse.domain.models.operation import Operation, OperationStatus
from smart_warehouse.domain.models.task import AutoTask, TaskStatus
from smart_warehouse.domain.models.warehouse import Cell, CellStatus, ConveyorStatus, LoadingZone, Product
from smart_warehouse.domain.rules.task_selection import order_tasks, select_next_task

log = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class _ReadCommand:
    fn: Callable[[WarehouseState], Any]
    future: asyncio.Future[Any]


@dataclass(slots=True)
class _WriteCommand:
    fn: Callable[[Transaction], Any]
    label: str
    future: asyncio.Future[Any]


class _StopCommand:
    pass


class SingleWriterEntityStore:
    """
    Single writer store:
    every read and every transaction is serialized through one async command loop.
    A transaction commits all of its rows or none of them, and change
    notifications leave the loop in commit order.
    """

    def __init__(
        self,
        clock: ClockPort,
        event_bus: EventBusPort,
        *,
        queue_size: int,
        grid_rows: int,
        grid_cols: int,
        repo: StateRepoPort | None = None,
    ) -> None:
        self._clock = clock
        self._event_bus = event_bus
        self._repo = repo
        self._grid_rows = grid_rows
        self._grid_cols = grid_cols
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=queue_size)
        self._task: asyncio.Task | None = None
        self._state: WarehouseState | None = None

    async def start(self) -> None:
        if self._task is not None:
            log.debug("Entity store start skipped because writer loop already exists")
            return
        self._state = await self._load_state()
        self._task = asyncio.create_task(self._writer_loop(), name="warehouse-single-writer-loop")
        log.info(
            "Entity store writer loop started queue_size=%s cells=%s products=%s operations=%s tasks=%s",
            self._queue.maxsize,
            len(self._state.cells),
            len(self._state.products),
            len(self._state.operations),
            len(self._state.tasks),
        )

    async def stop(self) -> None:
        if self._task is None:
            log.debug("Entity store stop skipped because writer loop is None")
            return
        log.info("Entity store stopping writer loop")
        await self._queue.put(_StopCommand())
        await self._task
        self._task = None
        log.info("Entity store writer loop stopped")

    async def read(self, fn: Callable[[WarehouseState], T]) -> T:
        loop = asyncio.get_running_loop()
        fut: asyncio.Future[T] = loop.create_future()
        await self._queue.put(_ReadCommand(fn=fn, future=fut))
        return await fut

    async def transact(self, fn: Callable[[Transaction], T], *, label: str) -> T:
        loop = asyncio.get_running_loop()
        fut: asyncio.Future[T] = loop.create_future()
        log.debug("Entity store enqueue transaction label=%s", label)
        await self._queue.put(_WriteCommand(fn=fn, label=label, future=fut))
        return await fut

    async def cell(self, cell_id: int) -> Cell:
        return await self.read(lambda state: _require(state.cells, cell_id, "cell").clone())

    async def cells(self) -> list[Cell]:
        return await self.read(
            lambda state: [cell.clone() for cell in sorted(state.cells.values(), key=lambda c: (c.row, c.col))]
        )

    async def product(self, product_id: int) -> Product:
        return await self.read(lambda state: _require(state.products, product_id, "product").clone())

    async def products(self) -> list[Product]:
        return await self.read(
            lambda state: [p.clone() for p in sorted(state.products.values(), key=lambda p: (p.name, int(p.id)))]
        )

    async def product_by_rfid(self, rfid: str) -> Product | None:
        def _find(state: WarehouseState) -> Product | None:
            for product in state.products.values():
                if product.rfid_uid == rfid:
                    return product.clone()
            return None

        return await self.read(_find)

    async def loading_zone(self) -> LoadingZone:
        return await self.read(lambda state: state.loading_zone.clone())

    async def conveyor(self) -> ConveyorStatus:
        return await self.read(lambda state: state.conveyor.clone())

    async def operation(self, operation_id: int) -> Operation:
        return await self.read(lambda state: _require(state.operations, operation_id, "operation").clone())

    async def operations(self, limit: int | None = None) -> list[Operation]:
        def _recent(state: WarehouseState) -> list[Operation]:
            rows = sorted(state.operations.values(), key=lambda op: int(op.id), reverse=True)
            if limit is not None:
                rows = rows[:limit]
            return [op.clone() for op in rows]

        return await self.read(_recent)

    async def task(self, task_id: int) -> AutoTask:
        return await self.read(lambda state: _require(state.tasks, task_id, "task").clone())

    async def tasks(self, status: TaskStatus | None = None) -> list[AutoTask]:
        def _ordered(state: WarehouseState) -> list[AutoTask]:
            rows = [task for task in state.tasks.values() if status is None or task.status is status]
            return [task.clone() for task in order_tasks(rows)]

        return await self.read(_ordered)

    async def next_pending_task(self) -> AutoTask | None:
        def _next(state: WarehouseState) -> AutoTask | None:
            task = select_next_task(state.tasks.values())
            return task.clone() if task is not None else None

        return await self.read(_next)

    async def summary(self) -> dict[str, Any]:
        def _summary(state: WarehouseState) -> dict[str, Any]:
            occupied = sum(1 for cell in state.cells.values() if cell.status is CellStatus.OCCUPIED)
            return {
                "cells": {
                    "total": len(state.cells),
                    "occupied": occupied,
                    "available": len(state.cells) - occupied,
                },
                "products": len(state.products),
                "pending_operations": sum(
                    1 for op in state.operations.values() if op.status is OperationStatus.PENDING
                ),
                "pending_tasks": sum(1 for task in state.tasks.values() if task.status is TaskStatus.PENDING),
            }

        return await self.read(_summary)

    async def snapshot(self) -> StoreSnapshot:
        return await self.read(lambda state: state.view(ChangeSet(), self._clock.now()))

    async def _load_state(self) -> WarehouseState:
        if self._repo is not None:
            loaded = await self._repo.load()
            if loaded is not None and loaded.cells:
                log.info("Entity store restored persisted state created_at=%s", loaded.created_at.isoformat())
                return WarehouseState.from_snapshot(loaded)
        state = WarehouseState.seeded(self._grid_rows, self._grid_cols, self._clock.now())
        log.info("Entity store seeded grid rows=%s cols=%s", self._grid_rows, self._grid_cols)
        if self._repo is not None:
            changes = ChangeSet(
                cells=dict(state.cells),
                loading_zone=state.loading_zone,
                conveyor=state.conveyor,
            )
            await self._repo.save(state.view(ChangeSet(), self._clock.now()), changes)
        return state

    async def _writer_loop(self) -> None:
        log.debug("Entity store writer loop entered")
        while True:
            cmd = await self._queue.get()
            try:
                if isinstance(cmd, _ReadCommand):
                    cmd.future.set_result(cmd.fn(self._state))
                    continue
                if isinstance(cmd, _WriteCommand):
                    cmd.future.set_result(await self._run_transaction(cmd))
                    continue
                if isinstance(cmd, _StopCommand):
                    log.debug("Entity store writer loop received stop command")
                    break
            except WarehouseError as exc:
                log.info("Entity store command rejected error=%s message=%s", exc.code, exc.message)
                if not cmd.future.done():
                    cmd.future.set_exception(exc)
            except Exception as exc:  # noqa: BLE001
                log.exception("Entity store writer command failed")
                if hasattr(cmd, "future") and not cmd.future.done():
                    cmd.future.set_exception(exc)

        while not self._queue.empty():
            pending = self._queue.get_nowait()
            if hasattr(pending, "future") and not pending.future.done():
                pending.future.set_exception(RuntimeError("Entity store stopped"))
        log.debug("Entity store writer loop drained pending queue and exited")

    async def _run_transaction(self, cmd: _WriteCommand) -> Any:
        assert self._state is not None
        started_at = time.perf_counter()
        tx = Transaction(self._state, self._clock.now())
        result = cmd.fn(tx)
        if tx.changes.is_empty():
            return result
        if self._repo is not None:
            try:
                await self._repo.save(self._state.view(tx.changes, tx.at), tx.changes)
            except Exception as exc:  # noqa: BLE001
                log.exception("Entity store persistence failed label=%s rows=%s", cmd.label, tx.changes.row_count())
                raise PersistenceFailure(f"Failed to persist {cmd.label}: {exc}") from exc
        self._state.commit(tx.changes)
        await self._publish_changes(tx.changes)
        log.debug(
            "Entity store committed label=%s rows=%s elapsed_ms=%s",
            cmd.label,
            tx.changes.row_count(),
            int((time.perf_counter() - started_at) * 1000),
        )
        return result

    async def _publish_changes(self, changes: ChangeSet) -> None:
        events: list[EntityEvent] = []
        events.extend(ProductUpdated(product=p.clone()) for p in changes.products.values())
        events.extend(CellUpdated(cell=c.clone()) for c in changes.cells.values())
        if changes.loading_zone is not None:
            events.append(LoadingZoneUpdated(loading_zone=changes.loading_zone.clone()))
        if changes.conveyor is not None:
            events.append(ConveyorUpdated(conveyor=changes.conveyor.clone()))
        events.extend(TaskUpdated(task=t.clone()) for t in changes.tasks.values())
        events.extend(OperationUpdated(operation=op.clone()) for op in changes.operations.values())
        if len(events) == 1:
            await self._event_bus.publish(events[0])
        else:
            await self._event_bus.publish(BatchUpdated(events=events))


def _require(rows: dict[int, T], key: int, entity: str) -> T:
    found = rows.get(int(key))
    if found is None:
        raise NotFoundError(entity, int(key))
    return found
