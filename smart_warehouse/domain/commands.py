from __future__ import annotations

from smart_warehouse.domain.errors import ValidationError
from smart_warehouse.domain.models.arm import ArmMode
from smart_warehouse.domain.models.operation import OperationKind
from smart_warehouse.domain.models.warehouse import Cell

HOME = "HOME"
PICK = "PICK"
RETURN_TO_LOADING = "RETURN_TO_LOADING"


def place(col: int, row: int) -> str:
    return f"PLACE {col} {row}"


def take(col: int, row: int) -> str:
    return f"TAKE {col} {row}"


def goto(col: int) -> str:
    return f"GOTO {col}"


def loading_take(col: int, row: int) -> str:
    return f"LOADING_TAKE {col} {row}"


def auto_stock(rfid: str) -> str:
    return f"AUTO_STOCK:{rfid}"


def mode_commands(mode: ArmMode) -> list[str]:
    if mode is ArmMode.AUTO:
        return ["MODE AUTO", "AUTO START"]
    return ["MODE MANUAL", "AUTO STOP"]


def default_command(kind: OperationKind, cell: Cell | None) -> str:
    """Device command an operator button issues for `kind` when no raw text is given."""
    if kind is OperationKind.HOME:
        return HOME
    if kind is OperationKind.PICK_FROM_CONVEYOR:
        return PICK
    if kind is OperationKind.RETURN_TO_LOADING:
        return RETURN_TO_LOADING
    if cell is None:
        raise ValidationError(f"{kind.value} needs either a command or a cell_id", details={"kind": kind.value})
    if kind is OperationKind.PLACE_IN_CELL:
        return place(cell.col, cell.row)
    if kind is OperationKind.TAKE_FROM_CELL:
        return take(cell.col, cell.row)
    if kind is OperationKind.GOTO_COLUMN:
        return goto(cell.col)
    if kind is OperationKind.MOVE_TO_LOADING:
        return loading_take(cell.col, cell.row)
    raise ValidationError(f"{kind.value} requires an explicit command", details={"kind": kind.value})
