from __future__ import annotations

import asyncio
import logging
from enum import StrEnum

from smart_warehouse.application.ports import DeviceGatewayPort, SleepFn
from smart_warehouse.application.state.arm_context import ArmModeContext
from smart_warehouse.application.state.entity_store import SingleWriterEntityStore
from smart_warehouse.application.state.reducers import Transaction
from smart_warehouse.domain import commands
from smart_warehouse.domain.errors import DeviceError, InvalidTransition, NotFoundError, WarehouseError
from smart_warehouse.domain.models.arm import ArmMode, InFlight
from smart_warehouse.domain.models.task import AutoTask, TaskId, TaskStatus, TaskType
from smart_warehouse.domain.state_machine import TaskStateMachine

log = logging.getLogger(__name__)


class SchedulerOutcome(StrEnum):
    COMPLETED = "completed"
    NOOP = "noop"
    FAILED = "failed"
    SKIPPED = "skipped"


class AutoTaskScheduler:
    """
    Drains PENDING auto tasks one at a time while the arm is in auto mode.

    The loop parks on a wake signal and is woken by task creation and by the
    switch to auto mode. Mode is re-checked before each task; a task already
    dispatched always runs to its terminal status.
    """

    def __init__(
        self,
        store: SingleWriterEntityStore,
        gateway: DeviceGatewayPort,
        arm: ArmModeContext,
        *,
        sleep: SleepFn = asyncio.sleep,
        success_delay_seconds: float = 2.0,
        noop_delay_seconds: float = 1.0,
        failure_delay_seconds: float = 2.0,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._arm = arm
        self._sleep = sleep
        self._delays = {
            SchedulerOutcome.COMPLETED: success_delay_seconds,
            SchedulerOutcome.NOOP: noop_delay_seconds,
            SchedulerOutcome.FAILED: failure_delay_seconds,
            SchedulerOutcome.SKIPPED: 0.0,
        }
        self._wake_event = asyncio.Event()
        self._unsettled: dict[TaskId, str] = {}
        self._running = False
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._task is not None:
            log.warning("Scheduler already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="warehouse-auto-task-loop")
        log.info("Scheduler loop started")

    async def stop(self) -> None:
        if self._task is None:
            log.debug("Scheduler stop skipped because loop is not running")
            return
        log.info("Scheduler loop stopping")
        self._running = False
        self._wake_event.set()
        await self._task
        self._task = None
        log.info("Scheduler loop stopped")

    def wake(self) -> None:
        self._wake_event.set()

    async def run_once(self) -> SchedulerOutcome | None:
        """Process the next pending task. None means there was nothing to do."""
        await self._settle_unsettled()
        if self._arm.mode is not ArmMode.AUTO:
            return None
        candidate = await self._store.next_pending_task()
        if candidate is None:
            return None

        await self._arm.acquire(InFlight(kind="task", ref_id=int(candidate.id)))
        try:
            if self._arm.mode is not ArmMode.AUTO:
                log.info("Scheduler yielded task id=%s because mode changed", candidate.id)
                return None
            try:
                task, command = await self._store.transact(
                    lambda tx: _start_task(tx, candidate.id),
                    label=f"task.start id={candidate.id}",
                )
            except InvalidTransition:
                log.info("Scheduler skipped task id=%s because it left PENDING", candidate.id)
                return SchedulerOutcome.SKIPPED

            log.info(
                "Scheduler task started id=%s type=%s priority=%s command=%s",
                task.id,
                task.task_type.value,
                task.priority.value,
                command,
            )
            if command is None:
                await self._complete(task.id)
                log.info("Scheduler task had no device command id=%s type=%s", task.id, task.task_type.value)
                return SchedulerOutcome.NOOP

            try:
                await self._gateway.send_command(command)
            except DeviceError as exc:
                log.warning("Scheduler task failed id=%s error=%s message=%s", task.id, exc.code, exc.message)
                await self._mark_failed(task.id, exc.message)
                return SchedulerOutcome.FAILED

            await self._complete(task.id)
            log.info("Scheduler task completed id=%s", task.id)
            return SchedulerOutcome.COMPLETED
        finally:
            self._arm.release()

    async def _finish(self, task_id: TaskId, status: TaskStatus, error_message: str | None = None) -> AutoTask:
        return await self._store.transact(
            lambda tx: _finish_task(tx, task_id, status, error_message),
            label=f"task.finish id={task_id} status={status.value}",
        )

    async def _complete(self, task_id: TaskId) -> None:
        try:
            await self._finish(task_id, TaskStatus.COMPLETED)
        except WarehouseError as exc:
            log.error("Scheduler task completion not committed id=%s error=%s message=%s", task_id, exc.code, exc.message)
            await self._mark_failed(task_id, exc.message)
            raise

    async def _mark_failed(self, task_id: TaskId, message: str) -> None:
        try:
            await self._finish(task_id, TaskStatus.FAILED, message)
        except Exception:  # noqa: BLE001
            log.exception("Scheduler task failure not persisted id=%s; will retry", task_id)
            self._unsettled[task_id] = message

    async def _settle_unsettled(self) -> None:
        """Retry FAILED writes for tasks whose terminal status could not be stored."""
        for task_id, message in list(self._unsettled.items()):
            try:
                await self._finish(task_id, TaskStatus.FAILED, message)
            except InvalidTransition:
                log.info("Scheduler dropped settle for task id=%s because it already left PROCESSING", task_id)
            except WarehouseError as exc:
                log.warning("Scheduler settle retry failed id=%s message=%s", task_id, exc.message)
                continue
            else:
                log.info("Scheduler settled task id=%s status=FAILED", task_id)
            del self._unsettled[task_id]

    async def _loop(self) -> None:
        log.debug("Scheduler loop entered")
        while self._running:
            await self._wake_event.wait()
            self._wake_event.clear()
            while self._running:
                try:
                    outcome = await self.run_once()
                except Exception:  # noqa: BLE001
                    log.exception("Scheduler iteration failed")
                    outcome = SchedulerOutcome.FAILED
                if outcome is None:
                    break
                delay = self._delays[outcome]
                if delay > 0:
                    await self._sleep(delay)
        log.debug("Scheduler loop exited")


def resolve_task_command(tx: Transaction, task: AutoTask) -> str | None:
    """Device command for an auto task, or None when the task has nothing to send."""
    if task.task_type is TaskType.STOCK:
        rfid = task.product_rfid
        if not rfid and task.product_id is not None:
            try:
                rfid = tx.require_product(task.product_id).rfid_uid
            except NotFoundError:
                rfid = None
        return commands.auto_stock(rfid) if rfid else None
    if task.task_type is TaskType.RETRIEVE and task.cell_id is not None:
        try:
            cell = tx.require_cell(task.cell_id)
        except NotFoundError:
            return None
        return commands.take(cell.col, cell.row)
    return None


def _start_task(tx: Transaction, task_id: TaskId) -> tuple[AutoTask, str | None]:
    task = tx.task(task_id)
    TaskStateMachine.advance(task, TaskStatus.PROCESSING, tx.at)
    return task.clone(), resolve_task_command(tx, task)


def _finish_task(tx: Transaction, task_id: TaskId, status: TaskStatus, error_message: str | None) -> AutoTask:
    task = tx.task(task_id)
    TaskStateMachine.advance(task, status, tx.at)
    task.error_message = error_message
    return task.clone()
