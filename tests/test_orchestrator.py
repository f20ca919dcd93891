from unittest.mock import Mock

import pytest

from smart_warehouse.application.services.orchestrator import WarehouseService
from smart_warehouse.domain.errors import ConcurrencyBusyError, InvalidTransition, NotFoundError, ValidationError
from smart_warehouse.domain.events import ModeChanged, RfidDetected, SensorUpdated, WarehouseSnapshot
from smart_warehouse.domain.models.arm import ArmMode, InFlight
from smart_warehouse.domain.models.operation import OperationKind, OperationStatus, Priority
from smart_warehouse.domain.models.task import TaskStatus, TaskType


@pytest.fixture
def service(store, gateway, arm, bus, clock, scheduler, sleep) -> WarehouseService:
    scheduler.wake = Mock()
    return WarehouseService(
        store,
        gateway,
        arm,
        bus,
        clock,
        scheduler,
        auto_start_delay_seconds=0.5,
        snapshot_interval_seconds=0,
        operations_default_limit=2,
        sleep=sleep,
    )


@pytest.mark.asyncio
async def test_manual_operation_round_trip(service, gateway):
    op = await service.create_operation(OperationKind.HOME)

    assert op.status is OperationStatus.COMPLETED
    assert gateway.sent == ["HOME"]
    assert (await service.operation(op.id)).status is OperationStatus.COMPLETED
    assert service.arm_state().to_dict()["status"] == "READY"


@pytest.mark.asyncio
async def test_operation_refused_while_arm_busy(service, arm, gateway, store):
    arm.try_acquire(InFlight("task", 1))

    with pytest.raises(ConcurrencyBusyError):
        await service.create_operation(OperationKind.HOME)

    assert gateway.sent == []
    assert await store.operations() == []
    assert arm.in_flight == InFlight("task", 1)


@pytest.mark.asyncio
async def test_bad_request_is_rejected_before_the_gate(service, arm):
    arm.try_acquire(InFlight("task", 1))

    with pytest.raises(ValidationError):
        await service.create_operation(OperationKind.PLACE_IN_CELL, cell_id=1)


@pytest.mark.asyncio
async def test_operations_use_default_limit(service):
    for _ in range(3):
        await service.create_operation(OperationKind.HOME)

    assert [int(op.id) for op in await service.operations()] == [3, 2]
    assert len(await service.operations(limit=10)) == 3


@pytest.mark.asyncio
async def test_assign_cell_is_logged_as_completed_operation(service, make_product):
    product = await make_product("Pallet")

    cell = await service.assign_cell(4, product.id, 3)

    assert (cell.product_id, cell.quantity) == (product.id, 3)
    [record] = await service.operations()
    assert record.command == "ASSIGN_CELL:4"
    assert record.kind is OperationKind.MANUAL_CMD
    assert record.status is OperationStatus.COMPLETED
    assert record.execution_time_ms == 0


@pytest.mark.asyncio
async def test_assign_cell_without_product_clears_it(service, make_product):
    product = await make_product("Pallet")
    await service.assign_cell(4, product.id, 3)

    cell = await service.assign_cell(4)

    assert cell.product_id is None and cell.quantity == 0


@pytest.mark.asyncio
async def test_assign_cell_quantity_defaults_to_one_but_rejects_zero(service, make_product):
    product = await make_product("Pallet")

    cell = await service.assign_cell(5, product.id)
    with pytest.raises(ValidationError):
        await service.assign_cell(6, product.id, 0)

    assert cell.quantity == 1
    assert (await service.cells())[5].product_id is None
    assert len(await service.operations(limit=10)) == 1


@pytest.mark.asyncio
async def test_switch_to_auto_notifies_device_then_wakes_scheduler(service, gateway, bus, sleep, scheduler):
    state = await service.set_mode(ArmMode.AUTO)
    await service.wait_for_background()

    assert state.mode is ArmMode.AUTO
    assert bus.of_type(ModeChanged)[0].arm.mode is ArmMode.AUTO
    assert gateway.sent == ["MODE AUTO", "AUTO START"]
    assert sleep.delays == [0.5]
    scheduler.wake.assert_called_once()


@pytest.mark.asyncio
async def test_mode_switch_survives_device_failure(service, gateway, arm, scheduler):
    gateway.failing.add("MODE MANUAL")

    await service.set_mode(ArmMode.MANUAL)
    await service.wait_for_background()

    assert gateway.sent == ["MODE MANUAL"]
    assert arm.in_flight is None
    scheduler.wake.assert_not_called()


@pytest.mark.asyncio
async def test_auto_task_wakes_scheduler_only_in_auto(service, arm, scheduler):
    await service.create_auto_task(TaskType.STOCK, product_rfid="RF-1")
    scheduler.wake.assert_not_called()

    arm.set_mode(ArmMode.AUTO)
    task = await service.create_auto_task(TaskType.RETRIEVE, cell_id=2, priority=Priority.HIGH)

    scheduler.wake.assert_called_once()
    assert task.status is TaskStatus.PENDING
    assert [t.id for t in await service.tasks()] == [task.id, 1]


@pytest.mark.asyncio
async def test_auto_task_input_is_checked(service):
    with pytest.raises(ValidationError):
        await service.create_auto_task(TaskType.STOCK, quantity=0)
    with pytest.raises(NotFoundError):
        await service.create_auto_task(TaskType.RETRIEVE, cell_id=77)


@pytest.mark.asyncio
async def test_cancel_only_pending_tasks(service):
    task = await service.create_auto_task(TaskType.STOCK, product_rfid="RF-1")

    cancelled = await service.cancel_auto_task(task.id)

    assert cancelled.status is TaskStatus.CANCELLED
    assert await service.tasks() == []
    with pytest.raises(InvalidTransition):
        await service.cancel_auto_task(task.id)


@pytest.mark.asyncio
async def test_sensor_update_detects_known_tag(service, bus, make_product):
    product = await make_product("Crate", rfid="RF-9")

    result = await service.ingest_sensor_snapshot(ldr1=True, ldr2=False, rfid="RF-9", conveyor_state="RUNNING")

    assert result.product.id == product.id
    conveyor = await service.conveyor()
    assert conveyor.has_product is True
    assert (conveyor.product_id, conveyor.product_rfid) == (product.id, "RF-9")
    assert bus.of_type(SensorUpdated)[0].snapshot.conveyor_state == "RUNNING"
    assert bus.of_type(RfidDetected)[0].tag == "RF-9"
    assert service.device_status()["last_sensor_update"] is not None


@pytest.mark.asyncio
async def test_sensor_update_with_unknown_tag_is_quiet(service, bus):
    result = await service.ingest_sensor_snapshot(ldr1=False, ldr2=True, rfid="NOPE")

    assert result.product is None
    assert result.conveyor.has_product is True
    assert result.conveyor.product_id is None
    assert bus.of_type(RfidDetected) == []


@pytest.mark.asyncio
async def test_clear_sensors_mark_conveyor_empty(service):
    await service.ingest_sensor_snapshot(ldr1=True, ldr2=False)

    result = await service.ingest_sensor_snapshot(ldr1=False, ldr2=False)

    assert result.conveyor.has_product is False
    assert service.latest_sensor_snapshot().product_present is False


@pytest.mark.asyncio
async def test_products_report_cell_usage(service):
    product = await service.create_product("  Bin  ", rfid_uid="RF-2")
    await service.assign_cell(1, product.id, 2)
    await service.assign_cell(2, product.id, 5)

    [row] = await service.products()

    assert row["name"] == "Bin"
    assert (row["occupied_cells"], row["total_quantity"]) == (2, 7)


@pytest.mark.asyncio
async def test_empty_product_name_is_rejected(service):
    with pytest.raises(ValidationError):
        await service.create_product("   ")


@pytest.mark.asyncio
async def test_loading_zone_with_quantity_needs_product(service, make_product):
    with pytest.raises(ValidationError):
        await service.set_loading_zone(None, 2)

    product = await make_product("Crate")
    zone = await service.set_loading_zone(product.id, 2)

    assert (zone.product_id, zone.quantity) == (product.id, 2)


@pytest.mark.asyncio
async def test_status_and_snapshot(service, bus):
    status = await service.status()
    await service.publish_snapshot()

    assert status["cells"]["total"] == 12
    assert status["arm"]["mode"] == "manual"
    assert status["esp32"] == {"connected": True, "url": "http://device.test"}
    assert status["scheduler_running"] is False
    snapshot = bus.of_type(WarehouseSnapshot)[0]
    assert len(snapshot.cells) == 12
