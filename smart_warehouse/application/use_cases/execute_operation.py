from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from smart_warehouse.application.ports import DeviceGatewayPort
from smart_warehouse.application.state.arm_context import ArmModeContext
from smart_warehouse.application.state.entity_store import SingleWriterEntityStore
from smart_warehouse.application.state.reducers import Transaction, apply_operation_side_effects
from smart_warehouse.domain.commands import default_command
from smart_warehouse.domain.errors import DeviceError, PersistenceFailure, ValidationError, WarehouseError
from smart_warehouse.domain.models.arm import InFlight
from smart_warehouse.domain.models.operation import Operation, OperationId, OperationKind, OperationStatus, Priority
from smart_warehouse.domain.models.warehouse import CellId, ProductId
from smart_warehouse.domain.state_machine import OperationStateMachine

log = logging.getLogger(__name__)

_REQUIRED_REFS: dict[OperationKind, tuple[str, ...]] = {
    OperationKind.PLACE_IN_CELL: ("cell_id", "product_id"),
    OperationKind.TAKE_FROM_CELL: ("cell_id",),
    OperationKind.MOVE_TO_LOADING: ("cell_id", "product_id"),
}


@dataclass(slots=True, frozen=True)
class OperationRequest:
    kind: OperationKind
    command: str | None = None
    product_id: int | None = None
    cell_id: int | None = None
    priority: Priority = Priority.MEDIUM


class ExecuteOperationUseCase:
    """
    Runs one operator command end to end.

    The caller must already hold the arm gate. The executor binds it to the new
    operation id and releases it when `execute` returns or raises. Entity side
    effects are committed in the same transaction that marks the operation
    COMPLETED, so a device failure never touches cells or the loading zone.
    """

    def __init__(
        self,
        store: SingleWriterEntityStore,
        gateway: DeviceGatewayPort,
        arm: ArmModeContext,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._arm = arm

    async def execute(self, request: OperationRequest) -> Operation:
        try:
            return await self._execute(request)
        finally:
            self._arm.release()

    async def _execute(self, request: OperationRequest) -> Operation:
        operation = await self._store.transact(
            lambda tx: _create_pending(tx, request),
            label=f"operation.create kind={request.kind.value}",
        )
        operation_id = operation.id
        operation = await self._store.transact(
            lambda tx: _advance(tx, operation_id, OperationStatus.PROCESSING),
            label=f"operation.start id={operation_id}",
        )
        self._arm.bind(InFlight(kind="operation", ref_id=int(operation_id)))
        log.info(
            "Operation dispatch id=%s kind=%s command=%s cell_id=%s product_id=%s",
            operation_id,
            operation.kind.value,
            operation.command,
            operation.cell_id,
            operation.product_id,
        )

        started_at = time.perf_counter()
        try:
            await self._gateway.send_command(operation.command)
        except DeviceError as exc:
            elapsed_ms = _elapsed_ms(started_at)
            log.warning(
                "Operation device failure id=%s error=%s elapsed_ms=%s message=%s",
                operation_id,
                exc.code,
                elapsed_ms,
                exc.message,
            )
            exc.operation = await self._mark_error(operation, exc.message, elapsed_ms)
            raise

        elapsed_ms = _elapsed_ms(started_at)
        try:
            completed = await self._store.transact(
                lambda tx: _complete(tx, operation_id, elapsed_ms),
                label=f"operation.complete id={operation_id}",
            )
        except WarehouseError as exc:
            log.error(
                "Operation completion not committed id=%s error=%s message=%s",
                operation_id,
                exc.code,
                exc.message,
            )
            failed = await self._mark_error(operation, exc.message, elapsed_ms)
            if isinstance(exc, PersistenceFailure):
                exc.operation = failed
                raise
            raise PersistenceFailure(f"Operation {operation_id} side effects failed: {exc.message}", operation=failed) from exc

        log.info("Operation completed id=%s elapsed_ms=%s", operation_id, elapsed_ms)
        return completed

    async def _mark_error(self, operation: Operation, message: str, elapsed_ms: int) -> Operation:
        operation_id = operation.id
        try:
            return await self._store.transact(
                lambda tx: _fail(tx, operation_id, message, elapsed_ms),
                label=f"operation.error id={operation_id}",
            )
        except Exception:  # noqa: BLE001
            log.exception("Operation error status not persisted id=%s", operation_id)
            fallback = operation.clone()
            fallback.status = OperationStatus.ERROR
            fallback.error_message = message
            fallback.execution_time_ms = elapsed_ms
            return fallback


def validate_request(request: OperationRequest) -> None:
    """Shape checks that need no store access."""
    for field_name in _REQUIRED_REFS.get(request.kind, ()):
        if getattr(request, field_name) is None:
            raise ValidationError(
                f"{request.kind.value} requires {field_name}",
                details={"kind": request.kind.value, "field": field_name},
            )
    if request.kind is OperationKind.MANUAL_CMD and not (request.command or "").strip():
        raise ValidationError("MANUAL_CMD requires a command", details={"field": "cmd"})


def build_operation(tx: Transaction, request: OperationRequest) -> Operation:
    """Validate references and resolve the device command for a new operation."""
    validate_request(request)
    cell = tx.require_cell(request.cell_id) if request.cell_id is not None else None
    if request.product_id is not None:
        tx.require_product(request.product_id)

    command = (request.command or "").strip()
    if not command:
        command = default_command(request.kind, cell)
    return Operation(
        id=OperationId(0),
        kind=request.kind,
        command=command,
        product_id=ProductId(int(request.product_id)) if request.product_id is not None else None,
        cell_id=CellId(int(request.cell_id)) if request.cell_id is not None else None,
        priority=request.priority,
    )


def _create_pending(tx: Transaction, request: OperationRequest) -> Operation:
    return tx.add_operation(build_operation(tx, request)).clone()


def _advance(tx: Transaction, operation_id: OperationId, target: OperationStatus) -> Operation:
    operation = tx.operation(operation_id)
    OperationStateMachine.advance(operation, target, tx.at)
    return operation.clone()


def _complete(tx: Transaction, operation_id: OperationId, elapsed_ms: int) -> Operation:
    operation = tx.operation(operation_id)
    OperationStateMachine.advance(operation, OperationStatus.COMPLETED, tx.at)
    operation.execution_time_ms = elapsed_ms
    apply_operation_side_effects(tx, operation)
    return operation.clone()


def _fail(tx: Transaction, operation_id: OperationId, message: str, elapsed_ms: int) -> Operation:
    operation = tx.operation(operation_id)
    OperationStateMachine.advance(operation, OperationStatus.ERROR, tx.at)
    operation.error_message = message
    operation.execution_time_ms = elapsed_ms
    return operation.clone()


def _elapsed_ms(started_at: float) -> int:
    return int((time.perf_counter() - started_at) * 1000)
