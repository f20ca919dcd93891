import pytest

from smart_warehouse.application.state.reducers import assign_cell
from smart_warehouse.application.use_cases.execute_operation import ExecuteOperationUseCase, OperationRequest
from smart_warehouse.domain.errors import DeviceCommFailure, DeviceUnregistered, NotFoundError, PersistenceFailure, ValidationError
from smart_warehouse.domain.events import OperationUpdated
from smart_warehouse.domain.models.arm import InFlight
from smart_warehouse.domain.models.operation import OperationKind, OperationStatus
from smart_warehouse.domain.models.warehouse import CellStatus

from conftest import FakeGateway


@pytest.fixture
def executor(store, gateway, arm) -> ExecuteOperationUseCase:
    return ExecuteOperationUseCase(store=store, gateway=gateway, arm=arm)


async def _run(executor, arm, request: OperationRequest):
    arm.try_acquire(InFlight("operation"))
    return await executor.execute(request)


@pytest.mark.asyncio
async def test_move_to_loading_updates_cell_and_zone(store, gateway, arm, executor, make_product):
    product = await make_product("Crate")
    await store.transact(lambda tx: assign_cell(tx, 6, product.id, 1), label="test.assign")

    op = await _run(executor, arm, OperationRequest(OperationKind.MOVE_TO_LOADING, cell_id=6, product_id=product.id))

    assert op.status is OperationStatus.COMPLETED
    assert op.command == "LOADING_TAKE 2 2"
    assert op.execution_time_ms is not None and op.execution_time_ms >= 0
    assert gateway.sent == ["LOADING_TAKE 2 2"]
    cell = await store.cell(6)
    assert cell.product_id is None and cell.status is CellStatus.EMPTY
    zone = await store.loading_zone()
    assert (zone.product_id, zone.quantity) == (product.id, 1)
    assert arm.in_flight is None


@pytest.mark.asyncio
async def test_status_updates_reach_observers_in_order(bus, executor, arm):
    await _run(executor, arm, OperationRequest(OperationKind.HOME))

    statuses = [e.operation.status for e in bus.of_type(OperationUpdated)]

    assert statuses == [OperationStatus.PENDING, OperationStatus.PROCESSING, OperationStatus.COMPLETED]


@pytest.mark.asyncio
async def test_device_failure_leaves_entities_unchanged(store, gateway, arm, executor, make_product):
    product = await make_product("Crate")
    await store.transact(lambda tx: assign_cell(tx, 6, product.id, 1), label="test.assign")
    gateway.failing.add("LOADING_TAKE 2 2")

    with pytest.raises(DeviceCommFailure) as exc_info:
        await _run(executor, arm, OperationRequest(OperationKind.MOVE_TO_LOADING, cell_id=6, product_id=product.id))

    failed = exc_info.value.operation
    assert failed.status is OperationStatus.ERROR
    assert "500" in failed.error_message
    assert (await store.operation(failed.id)).status is OperationStatus.ERROR
    assert (await store.cell(6)).product_id == product.id
    assert (await store.loading_zone()).product_id is None
    assert arm.in_flight is None


@pytest.mark.asyncio
async def test_unregistered_device_records_error(store, arm):
    executor = ExecuteOperationUseCase(store=store, gateway=FakeGateway(base_url=None), arm=arm)

    with pytest.raises(DeviceUnregistered) as exc_info:
        await _run(executor, arm, OperationRequest(OperationKind.HOME))

    assert exc_info.value.operation.status is OperationStatus.ERROR
    assert arm.in_flight is None


@pytest.mark.asyncio
async def test_place_overwrites_occupied_cell(store, arm, executor, make_product):
    old = await make_product("Old")
    new = await make_product("New")
    await store.transact(lambda tx: assign_cell(tx, 3, old.id, 5), label="test.assign")

    op = await _run(executor, arm, OperationRequest(OperationKind.PLACE_IN_CELL, cell_id=3, product_id=new.id))

    assert op.command == "PLACE 3 1"
    cell = await store.cell(3)
    assert (cell.product_id, cell.quantity) == (new.id, 1)


@pytest.mark.asyncio
async def test_take_from_cell_clears_it(store, arm, executor, make_product):
    product = await make_product("Crate")
    await store.transact(lambda tx: assign_cell(tx, 12, product.id, 2), label="test.assign")

    op = await _run(executor, arm, OperationRequest(OperationKind.TAKE_FROM_CELL, cell_id=12))

    assert op.command == "TAKE 4 3"
    assert (await store.cell(12)).quantity == 0


@pytest.mark.asyncio
async def test_explicit_command_is_sent_verbatim(gateway, arm, executor):
    op = await _run(executor, arm, OperationRequest(OperationKind.MANUAL_CMD, command="  CALIBRATE  "))

    assert op.command == "CALIBRATE"
    assert gateway.sent == ["CALIBRATE"]


@pytest.mark.asyncio
async def test_unknown_cell_is_rejected_without_device_call(gateway, arm, executor):
    with pytest.raises(NotFoundError):
        await _run(executor, arm, OperationRequest(OperationKind.TAKE_FROM_CELL, cell_id=404))

    assert gateway.sent == []
    assert arm.in_flight is None


@pytest.mark.asyncio
async def test_missing_reference_is_a_validation_error(arm, executor):
    with pytest.raises(ValidationError):
        await _run(executor, arm, OperationRequest(OperationKind.PLACE_IN_CELL, cell_id=1))


@pytest.mark.asyncio
async def test_persistence_failure_on_completion_reports_operation(store, repo, gateway, arm, executor):
    async def _fail_after_send(command: str) -> str:
        gateway.sent.append(command)
        repo.fail = True
        return "OK"

    gateway.send_command = _fail_after_send

    with pytest.raises(PersistenceFailure) as exc_info:
        await _run(executor, arm, OperationRequest(OperationKind.HOME))

    assert gateway.sent == ["HOME"]
    assert exc_info.value.operation.status is OperationStatus.ERROR
    assert arm.in_flight is None
    repo.fail = False
    # the stored row never got past PROCESSING
    assert (await store.operation(exc_info.value.operation.id)).status is OperationStatus.PROCESSING
