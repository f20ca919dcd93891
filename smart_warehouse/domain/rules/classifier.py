from __future__ import annotations

from smart_warehouse.domain.models.warehouse import Cell, CellStatus


def classify_cell_status(cell: Cell) -> CellStatus:
    if cell.product_id is not None:
        return CellStatus.OCCUPIED
    if cell.status is CellStatus.RESERVED:
        return CellStatus.RESERVED
    return CellStatus.EMPTY
