from __future__ import annotations

import asyncio
import logging
from typing import Any

from smart_warehouse.application.ports import ClockPort, DeviceGatewayPort, EventBusPort, SleepFn
from smart_warehouse.application.services.scheduler import AutoTaskScheduler
from smart_warehouse.application.state.arm_context import ArmModeContext
from smart_warehouse.application.state.entity_store import SingleWriterEntityStore
from smart_warehouse.application.state.reducers import Transaction, assign_cell, set_loading_zone
from smart_warehouse.application.use_cases.execute_operation import ExecuteOperationUseCase, OperationRequest, validate_request
from smart_warehouse.application.use_cases.ingest_sensors import IngestResult, IngestSensorsUseCase
from smart_warehouse.domain import commands
from smart_warehouse.domain.errors import ValidationError
from smart_warehouse.domain.events import ModeChanged, WarehouseSnapshot
from smart_warehouse.domain.models.arm import ArmMode, ArmState, InFlight
from smart_warehouse.domain.models.operation import Operation, OperationId, OperationKind, OperationStatus, Priority
from smart_warehouse.domain.models.task import AutoTask, TaskId, TaskStatus, TaskType
from smart_warehouse.domain.models.warehouse import (
    Cell,
    CellId,
    ConveyorStatus,
    LoadingZone,
    Product,
    ProductId,
    SensorSnapshot,
)
from smart_warehouse.domain.state_machine import TaskStateMachine

log = logging.getLogger(__name__)


class WarehouseService:
    """
    Entry point for every inbound intent. Owns the lifecycle of the entity
    store, the auto-task scheduler and the periodic warehouse snapshot.
    """

    def __init__(
        self,
        store: SingleWriterEntityStore,
        gateway: DeviceGatewayPort,
        arm: ArmModeContext,
        event_bus: EventBusPort,
        clock: ClockPort,
        scheduler: AutoTaskScheduler,
        *,
        auto_start_delay_seconds: float = 1.0,
        snapshot_interval_seconds: float = 3.0,
        operations_default_limit: int = 20,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._arm = arm
        self._event_bus = event_bus
        self._clock = clock
        self._scheduler = scheduler
        self._auto_start_delay_seconds = auto_start_delay_seconds
        self._snapshot_interval_seconds = snapshot_interval_seconds
        self._operations_default_limit = operations_default_limit
        self._sleep = sleep

        self._executor = ExecuteOperationUseCase(store=store, gateway=gateway, arm=arm)
        self._ingest = IngestSensorsUseCase(store=store, event_bus=event_bus, clock=clock)

        self._running = False
        self._stop_event = asyncio.Event()
        self._snapshot_task: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()

    @property
    def arm(self) -> ArmModeContext:
        return self._arm

    async def start(self) -> None:
        if self._running:
            log.warning("Warehouse service already running")
            return
        log.info("Warehouse service start begin")
        await self._store.start()
        await self._scheduler.start()
        self._running = True
        self._stop_event.clear()
        if self._snapshot_interval_seconds > 0:
            self._snapshot_task = asyncio.create_task(self._snapshot_loop(), name="warehouse-snapshot-loop")
        if self._arm.mode is ArmMode.AUTO:
            self._scheduler.wake()
        log.info("Warehouse service start completed mode=%s", self._arm.mode.value)

    async def stop(self) -> None:
        if not self._running:
            log.debug("Warehouse service stop skipped because it is not running")
            return
        log.info("Warehouse service stop begin")
        self._running = False
        self._stop_event.set()
        if self._snapshot_task is not None:
            await self._snapshot_task
            self._snapshot_task = None
        await self.wait_for_background()
        await self._scheduler.stop()
        await self._store.stop()
        await _maybe_close(self._gateway)
        log.info("Warehouse service stop completed")

    async def wait_for_background(self) -> None:
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # Operations

    async def create_operation(
        self,
        kind: OperationKind,
        command: str | None = None,
        *,
        product_id: int | None = None,
        cell_id: int | None = None,
        priority: Priority = Priority.MEDIUM,
    ) -> Operation:
        request = OperationRequest(
            kind=kind,
            command=command,
            product_id=product_id,
            cell_id=cell_id,
            priority=priority,
        )
        validate_request(request)
        self._arm.try_acquire(InFlight(kind="operation"))
        return await self._executor.execute(request)

    async def operations(self, limit: int | None = None) -> list[Operation]:
        return await self._store.operations(limit or self._operations_default_limit)

    async def operation(self, operation_id: int) -> Operation:
        return await self._store.operation(operation_id)

    # Auto tasks

    async def create_auto_task(
        self,
        task_type: TaskType,
        *,
        cell_id: int | None = None,
        product_id: int | None = None,
        product_rfid: str | None = None,
        quantity: int = 1,
        priority: Priority = Priority.MEDIUM,
    ) -> AutoTask:
        if quantity <= 0:
            raise ValidationError("quantity must be > 0", details={"quantity": quantity})
        rfid = (product_rfid or "").strip() or None

        def _create(tx: Transaction) -> AutoTask:
            if cell_id is not None:
                tx.require_cell(cell_id)
            if product_id is not None:
                tx.require_product(product_id)
            task = AutoTask(
                id=TaskId(0),
                task_type=task_type,
                cell_id=CellId(int(cell_id)) if cell_id is not None else None,
                product_id=ProductId(int(product_id)) if product_id is not None else None,
                product_rfid=rfid,
                quantity=quantity,
                priority=priority,
            )
            return tx.add_task(task).clone()

        task = await self._store.transact(_create, label=f"task.create type={task_type.value}")
        log.info(
            "Auto task created id=%s type=%s priority=%s mode=%s",
            task.id,
            task.task_type.value,
            task.priority.value,
            self._arm.mode.value,
        )
        if self._arm.mode is ArmMode.AUTO:
            self._scheduler.wake()
        return task

    async def cancel_auto_task(self, task_id: int) -> AutoTask:
        def _cancel(tx: Transaction) -> AutoTask:
            task = tx.task(task_id)
            TaskStateMachine.advance(task, TaskStatus.CANCELLED, tx.at)
            return task.clone()

        task = await self._store.transact(_cancel, label=f"task.cancel id={task_id}")
        log.info("Auto task cancelled id=%s", task.id)
        return task

    async def tasks(self, status: TaskStatus | None = TaskStatus.PENDING) -> list[AutoTask]:
        return await self._store.tasks(status)

    async def task(self, task_id: int) -> AutoTask:
        return await self._store.task(task_id)

    # Mode

    async def set_mode(self, mode: ArmMode) -> ArmState:
        changed = self._arm.set_mode(mode)
        state = self._arm.state()
        await self._event_bus.publish(ModeChanged(arm=state))
        self._spawn(self._notify_mode(mode), name=f"mode-notify-{mode.value}")
        log.info("Mode set mode=%s changed=%s", mode.value, changed)
        return state

    async def _notify_mode(self, mode: ArmMode) -> None:
        await self._arm.acquire(InFlight(kind="mode"))
        try:
            for command in commands.mode_commands(mode):
                await self._gateway.send_command(command)
        except Exception as exc:  # noqa: BLE001
            log.warning("Mode notification failed mode=%s error=%r", mode.value, exc)
        finally:
            self._arm.release()
        if mode is ArmMode.AUTO and self._arm.mode is ArmMode.AUTO:
            await self._sleep(self._auto_start_delay_seconds)
            if self._arm.mode is ArmMode.AUTO:
                self._scheduler.wake()

    def arm_state(self) -> ArmState:
        return self._arm.state()

    # Cells, products and zones

    async def assign_cell(self, cell_id: int, product_id: int | None = None, quantity: int | None = None) -> Cell:
        def _assign(tx: Transaction) -> Cell:
            cell = assign_cell(tx, cell_id, product_id, quantity)
            record = tx.add_operation(
                Operation(
                    id=OperationId(0),
                    kind=OperationKind.MANUAL_CMD,
                    command=f"ASSIGN_CELL:{int(cell_id)}",
                    product_id=ProductId(int(product_id)) if product_id is not None else None,
                    cell_id=CellId(int(cell_id)),
                    status=OperationStatus.COMPLETED,
                )
            )
            record.started_at = tx.at
            record.completed_at = tx.at
            record.execution_time_ms = 0
            return cell.clone()

        cell = await self._store.transact(_assign, label=f"cell.assign id={cell_id}")
        log.info("Cell assigned id=%s product_id=%s quantity=%s", cell.id, cell.product_id, cell.quantity)
        return cell

    async def cells(self) -> list[Cell]:
        return await self._store.cells()

    async def create_product(
        self,
        name: str,
        *,
        sku: str | None = None,
        rfid_uid: str | None = None,
        category: str | None = None,
    ) -> Product:
        clean_name = name.strip()
        if not clean_name:
            raise ValidationError("name must not be empty", details={"field": "name"})
        product = await self._store.transact(
            lambda tx: tx.add_product(
                name=clean_name,
                sku=(sku or "").strip() or None,
                rfid_uid=(rfid_uid or "").strip() or None,
                category=(category or "").strip() or None,
            ).clone(),
            label="product.create",
        )
        log.info("Product created id=%s name=%s rfid=%s", product.id, product.name, product.rfid_uid)
        return product

    async def products(self) -> list[dict[str, Any]]:
        products = await self._store.products()
        cells = await self._store.cells()
        rows: list[dict[str, Any]] = []
        for product in products:
            held = [cell for cell in cells if cell.product_id == product.id]
            payload = product.to_dict()
            payload["occupied_cells"] = len(held)
            payload["total_quantity"] = sum(cell.quantity for cell in held)
            rows.append(payload)
        return rows

    async def set_loading_zone(self, product_id: int | None, quantity: int = 0) -> LoadingZone:
        zone = await self._store.transact(
            lambda tx: set_loading_zone(tx, product_id, quantity).clone(),
            label="loading_zone.set",
        )
        log.info("Loading zone set product_id=%s quantity=%s", zone.product_id, zone.quantity)
        return zone

    async def loading_zone(self) -> LoadingZone:
        return await self._store.loading_zone()

    async def set_conveyor_status(
        self,
        has_product: bool,
        product_id: int | None = None,
        product_rfid: str | None = None,
    ) -> ConveyorStatus:
        def _set(tx: Transaction) -> ConveyorStatus:
            if product_id is not None:
                tx.require_product(product_id)
            conveyor = tx.conveyor()
            conveyor.has_product = bool(has_product)
            conveyor.product_id = ProductId(int(product_id)) if product_id is not None else None
            conveyor.product_rfid = (product_rfid or "").strip() or None
            conveyor.last_detected_at = tx.at
            return conveyor.clone()

        return await self._store.transact(_set, label="conveyor.set")

    async def conveyor(self) -> ConveyorStatus:
        return await self._store.conveyor()

    # Device and sensors

    async def register_device(self, address: str) -> str:
        return await self._gateway.register(address)

    def device_status(self) -> dict[str, Any]:
        latest = self._ingest.latest
        return {
            "connected": self._gateway.connected,
            "url": self._gateway.base_url,
            "last_sensor_update": latest.received_at.isoformat() if latest else None,
        }

    async def ingest_sensor_snapshot(
        self,
        *,
        ldr1: bool,
        ldr2: bool,
        rfid: str | None = None,
        conveyor_state: str | None = None,
    ) -> IngestResult:
        return await self._ingest.execute(ldr1=ldr1, ldr2=ldr2, rfid=rfid, conveyor_state=conveyor_state)

    def latest_sensor_snapshot(self) -> SensorSnapshot | None:
        return self._ingest.latest

    # Status and snapshots

    async def status(self) -> dict[str, Any]:
        summary = await self._store.summary()
        latest = self._ingest.latest
        summary.update(
            {
                "arm": self._arm.state().to_dict(),
                "sensors": latest.to_dict() if latest else None,
                "esp32": {"connected": self._gateway.connected, "url": self._gateway.base_url},
                "scheduler_running": self._scheduler.running,
                "timestamp": self._clock.now().isoformat(),
            }
        )
        return summary

    async def publish_snapshot(self) -> None:
        cells = await self._store.cells()
        zone = await self._store.loading_zone()
        await self._event_bus.publish(WarehouseSnapshot(cells=cells, loading_zone=zone))

    async def _snapshot_loop(self) -> None:
        log.info("Snapshot loop started interval_seconds=%s", self._snapshot_interval_seconds)
        while self._running:
            try:
                await self.publish_snapshot()
            except Exception:  # noqa: BLE001
                log.exception("Snapshot loop failed")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._snapshot_interval_seconds)
            except asyncio.TimeoutError:
                pass
        log.info("Snapshot loop stopped")

    def _spawn(self, coro: Any, *, name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error("Background task failed name=%s", task.get_name(), exc_info=exc)


async def _maybe_close(obj: object) -> None:
    method = getattr(obj, "close", None)
    if callable(method):
        await method()
