from __future__ import annotations

from datetime import datetime

from smart_warehouse.application.state.snapshots import ChangeSet, StoreSnapshot
from smart_warehouse.domain.errors import NotFoundError, ValidationError
from smart_warehouse.domain.models.operation import Operation, OperationId, OperationKind
from smart_warehouse.domain.models.task import AutoTask, TaskId
from smart_warehouse.domain.models.warehouse import (
    Cell,
    CellId,
    ConveyorStatus,
    LoadingZone,
    Product,
    ProductId,
    cell_label,
)
from smart_warehouse.domain.rules.classifier import classify_cell_status


class WarehouseState:
    """In-memory rows owned by the entity store. Only the writer loop touches it."""

    def __init__(
        self,
        *,
        cells: dict[int, Cell],
        products: dict[int, Product],
        operations: dict[int, Operation],
        tasks: dict[int, AutoTask],
        loading_zone: LoadingZone,
        conveyor: ConveyorStatus,
    ) -> None:
        self.cells = cells
        self.products = products
        self.operations = operations
        self.tasks = tasks
        self.loading_zone = loading_zone
        self.conveyor = conveyor
        self._next_ids = {
            "product": max(products, default=0) + 1,
            "operation": max(operations, default=0) + 1,
            "task": max(tasks, default=0) + 1,
        }

    @classmethod
    def seeded(cls, rows: int, cols: int, at: datetime) -> "WarehouseState":
        cells: dict[int, Cell] = {}
        cell_id = 1
        for row in range(1, rows + 1):
            for col in range(1, cols + 1):
                cells[cell_id] = Cell(id=CellId(cell_id), row=row, col=col, label=cell_label(row, col), updated_at=at)
                cell_id += 1
        return cls(
            cells=cells,
            products={},
            operations={},
            tasks={},
            loading_zone=LoadingZone(updated_at=at),
            conveyor=ConveyorStatus(),
        )

    @classmethod
    def from_snapshot(cls, snapshot: StoreSnapshot) -> "WarehouseState":
        cells = {int(cell.id): cell for cell in snapshot.cells}
        for cell in cells.values():
            cell.status = classify_cell_status(cell)
        return cls(
            cells=cells,
            products={int(product.id): product for product in snapshot.products},
            operations={int(operation.id): operation for operation in snapshot.operations},
            tasks={int(task.id): task for task in snapshot.tasks},
            loading_zone=snapshot.loading_zone,
            conveyor=snapshot.conveyor,
        )

    def reserve_id(self, kind: str) -> int:
        value = self._next_ids[kind]
        self._next_ids[kind] = value + 1
        return value

    def view(self, changes: ChangeSet, at: datetime) -> StoreSnapshot:
        """State as it will be once `changes` commit. Rows are shared, not copied."""
        return StoreSnapshot(
            created_at=at,
            cells=list({**self.cells, **changes.cells}.values()),
            products=list({**self.products, **changes.products}.values()),
            operations=list({**self.operations, **changes.operations}.values()),
            tasks=list({**self.tasks, **changes.tasks}.values()),
            loading_zone=changes.loading_zone or self.loading_zone,
            conveyor=changes.conveyor or self.conveyor,
        )

    def commit(self, changes: ChangeSet) -> None:
        self.cells.update(changes.cells)
        self.products.update(changes.products)
        self.operations.update(changes.operations)
        self.tasks.update(changes.tasks)
        if changes.loading_zone is not None:
            self.loading_zone = changes.loading_zone
        if changes.conveyor is not None:
            self.conveyor = changes.conveyor


class Transaction:
    """
    Copy-on-write view over the state.
    Writable accessors hand out clones registered in `changes`; nothing reaches
    the state until the store commits the whole change set.
    """

    def __init__(self, state: WarehouseState, at: datetime) -> None:
        self._state = state
        self.at = at
        self.changes = ChangeSet()

    def cell(self, cell_id: int) -> Cell:
        key = int(cell_id)
        if key not in self.changes.cells:
            current = self._state.cells.get(key)
            if current is None:
                raise NotFoundError("cell", key)
            self.changes.cells[key] = current.clone()
        return self.changes.cells[key]

    def require_cell(self, cell_id: int) -> Cell:
        key = int(cell_id)
        found = self.changes.cells.get(key) or self._state.cells.get(key)
        if found is None:
            raise NotFoundError("cell", key)
        return found

    def require_product(self, product_id: int) -> Product:
        key = int(product_id)
        found = self.changes.products.get(key) or self._state.products.get(key)
        if found is None:
            raise NotFoundError("product", key)
        return found

    def find_product_by_rfid(self, rfid: str) -> Product | None:
        for product in (*self.changes.products.values(), *self._state.products.values()):
            if product.rfid_uid == rfid:
                return product
        return None

    def operation(self, operation_id: int) -> Operation:
        key = int(operation_id)
        if key not in self.changes.operations:
            current = self._state.operations.get(key)
            if current is None:
                raise NotFoundError("operation", key)
            self.changes.operations[key] = current.clone()
        return self.changes.operations[key]

    def task(self, task_id: int) -> AutoTask:
        key = int(task_id)
        if key not in self.changes.tasks:
            current = self._state.tasks.get(key)
            if current is None:
                raise NotFoundError("task", key)
            self.changes.tasks[key] = current.clone()
        return self.changes.tasks[key]

    def loading_zone(self) -> LoadingZone:
        if self.changes.loading_zone is None:
            self.changes.loading_zone = self._state.loading_zone.clone()
        return self.changes.loading_zone

    def conveyor(self) -> ConveyorStatus:
        if self.changes.conveyor is None:
            self.changes.conveyor = self._state.conveyor.clone()
        return self.changes.conveyor

    def add_product(self, *, name: str, sku: str | None, rfid_uid: str | None, category: str | None) -> Product:
        if rfid_uid and self.find_product_by_rfid(rfid_uid) is not None:
            raise ValidationError(f"RFID tag already assigned: {rfid_uid}", details={"rfid_uid": rfid_uid})
        product = Product(
            id=ProductId(self._state.reserve_id("product")),
            name=name,
            sku=sku,
            rfid_uid=rfid_uid,
            category=category,
            created_at=self.at,
        )
        self.changes.products[int(product.id)] = product
        return product

    def add_operation(self, operation: Operation) -> Operation:
        operation.id = OperationId(self._state.reserve_id("operation"))
        operation.created_at = self.at
        self.changes.operations[int(operation.id)] = operation
        return operation

    def add_task(self, task: AutoTask) -> AutoTask:
        task.id = TaskId(self._state.reserve_id("task"))
        task.created_at = self.at
        self.changes.tasks[int(task.id)] = task
        return task


def place_in_cell(tx: Transaction, cell_id: int, product_id: int) -> None:
    # overwrites whatever the cell holds; occupancy is not checked
    tx.require_product(product_id)
    tx.cell(cell_id).store(ProductId(int(product_id)), 1, tx.at)


def take_from_cell(tx: Transaction, cell_id: int) -> None:
    tx.cell(cell_id).clear(tx.at)


def move_to_loading(tx: Transaction, cell_id: int, product_id: int) -> None:
    tx.require_product(product_id)
    take_from_cell(tx, cell_id)
    zone = tx.loading_zone()
    zone.product_id = ProductId(int(product_id))
    zone.quantity = 1
    zone.updated_at = tx.at


def assign_cell(tx: Transaction, cell_id: int, product_id: int | None, quantity: int | None) -> Cell:
    cell = tx.cell(cell_id)
    if product_id is None:
        cell.clear(tx.at)
        return cell
    tx.require_product(product_id)
    if quantity is not None and quantity <= 0:
        raise ValidationError("quantity must be > 0 when a product is assigned", details={"quantity": quantity})
    qty = 1 if quantity is None else quantity
    cell.store(ProductId(int(product_id)), qty, tx.at)
    return cell


def set_loading_zone(tx: Transaction, product_id: int | None, quantity: int) -> LoadingZone:
    if quantity < 0:
        raise ValidationError("quantity must be >= 0", details={"quantity": quantity})
    if quantity > 0 and product_id is None:
        raise ValidationError("a loading zone with quantity needs a product", details={"quantity": quantity})
    if product_id is not None:
        tx.require_product(product_id)
    zone = tx.loading_zone()
    zone.product_id = ProductId(int(product_id)) if product_id is not None else None
    zone.quantity = quantity
    zone.updated_at = tx.at
    return zone


def apply_operation_side_effects(tx: Transaction, operation: Operation) -> None:
    if operation.kind is OperationKind.PLACE_IN_CELL:
        place_in_cell(tx, _required(operation.cell_id, "cell_id"), _required(operation.product_id, "product_id"))
    elif operation.kind is OperationKind.TAKE_FROM_CELL:
        take_from_cell(tx, _required(operation.cell_id, "cell_id"))
    elif operation.kind is OperationKind.MOVE_TO_LOADING:
        move_to_loading(tx, _required(operation.cell_id, "cell_id"), _required(operation.product_id, "product_id"))


def _required(value: int | None, field_name: str) -> int:
    if value is None:
        raise ValidationError(f"{field_name} is required", details={"field": field_name})
    return int(value)
