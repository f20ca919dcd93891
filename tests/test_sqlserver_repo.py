import asyncio
from contextlib import asynccontextmanager
from datetime import datetime

import pytest

from smart_warehouse.application.state.snapshots import ChangeSet
from smart_warehouse.config import Settings
from smart_warehouse.domain.models.operation import Operation, OperationId, OperationKind, OperationStatus
from smart_warehouse.domain.models.warehouse import Cell, CellId, CellStatus, ConveyorStatus, ProductId
from smart_warehouse.infrastructure.sqlserver.connection import SQLServerConnection, SqlTransaction
from smart_warehouse.infrastructure.sqlserver.state_repo import SqlServerStateRepository


class FakeCursor:
    def __init__(self, rowcounts: dict[str, int] | None = None, fail_on: str | None = None) -> None:
        self.executed: list[tuple[str, list]] = []
        self.rowcounts = rowcounts or {}
        self.fail_on = fail_on
        self.rowcount = 0
        self.timeout = None
        self.description = []
        self._rows: list[tuple] = []

    async def execute(self, query: str, params=None) -> None:
        self.executed.append((query, list(params or [])))
        if self.fail_on and query.startswith(self.fail_on):
            raise RuntimeError("constraint violated")
        self.rowcount = next((count for prefix, count in self.rowcounts.items() if query.startswith(prefix)), 0)

    async def fetchall(self) -> list[tuple]:
        return self._rows

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc) -> None:
        return None


class FakeDbConnection:
    def __init__(self, cursor: FakeCursor) -> None:
        self._cursor = cursor

    def cursor(self) -> FakeCursor:
        return self._cursor


class FakePool:
    def __init__(self, cursor: FakeCursor) -> None:
        self._conn = FakeDbConnection(cursor)

    @asynccontextmanager
    async def acquire(self):
        yield self._conn


class FakeSqlConnection:
    """Connection double that answers SELECTs from canned tables and records writes."""

    def __init__(self, tables: dict[str, list[dict]] | None = None, update_rowcount: int = 0) -> None:
        self.tables = tables or {}
        self.update_rowcount = update_rowcount
        self.cursor = FakeCursor({"UPDATE": update_rowcount})
        self.started = 0
        self.closed = False

    async def start(self) -> None:
        self.started += 1

    async def close(self) -> None:
        self.closed = True

    def table_name(self, table: str) -> str:
        return f"[dbo].[{table}]"

    @staticmethod
    def column_name(name: str) -> str:
        return SQLServerConnection.column_name(name)

    async def query_rows(self, query: str, params: list) -> list[dict]:
        for table, rows in self.tables.items():
            if f"[dbo].[{table}] " in query:
                return rows
        return []

    @asynccontextmanager
    async def transaction(self):
        yield SqlTransaction(self.cursor, preview_chars=120)


@pytest.mark.asyncio
async def test_new_rows_are_inserted_after_empty_update():
    conn = FakeSqlConnection(update_rowcount=0)
    repo = SqlServerStateRepository(conn)
    cell = Cell(id=CellId(5), row=2, col=1, label="R2C1", product_id=ProductId(3), quantity=1, status=CellStatus.OCCUPIED)

    await repo.save(None, ChangeSet(cells={5: cell}))

    (update_sql, update_params), (insert_sql, insert_params) = conn.cursor.executed
    assert update_sql.startswith("UPDATE [dbo].[cells] SET [row_num] = ?")
    assert update_params[-1] == 5
    assert insert_sql.startswith("INSERT INTO [dbo].[cells] ([id], [row_num], [col_num]")
    assert insert_params[:7] == [5, 2, 1, "R2C1", 3, 1, "OCCUPIED"]


@pytest.mark.asyncio
async def test_existing_rows_are_only_updated():
    conn = FakeSqlConnection(update_rowcount=1)
    repo = SqlServerStateRepository(conn)
    op = Operation(id=OperationId(2), kind=OperationKind.HOME, command="HOME", status=OperationStatus.COMPLETED)

    await repo.save(None, ChangeSet(operations={2: op}, conveyor=ConveyorStatus(has_product=True)))

    assert [sql.split()[0] for sql, _ in conn.cursor.executed] == ["UPDATE", "UPDATE"]
    conveyor_sql, conveyor_params = conn.cursor.executed[0]
    assert "[conveyor_status]" in conveyor_sql
    assert conveyor_params[0] is True and conveyor_params[-1] == 1
    op_sql, op_params = conn.cursor.executed[1]
    assert "[operations]" in op_sql
    assert op_params[:2] == ["HOME", "HOME"]


@pytest.mark.asyncio
async def test_empty_change_set_touches_nothing():
    conn = FakeSqlConnection()

    await SqlServerStateRepository(conn).save(None, ChangeSet())

    assert conn.cursor.executed == []


@pytest.mark.asyncio
async def test_load_maps_grid_columns():
    conn = FakeSqlConnection(
        tables={
            "cells": [
                {"id": 1, "row_num": 1, "col_num": 1, "label": "R1C1", "product_id": None, "quantity": 0, "status": "EMPTY", "updated_at": None},
                {"id": 2, "row_num": 1, "col_num": 2, "label": "R1C2", "product_id": 7, "quantity": 2, "status": "EMPTY", "updated_at": datetime(2024, 5, 1)},
            ],
            "products": [{"id": 7, "name": "Crate", "sku": None, "rfid_uid": "RF-7", "category": None, "created_at": None}],
            "loading_zone": [{"id": 1, "product_id": None, "quantity": 0, "updated_at": None}],
        }
    )
    repo = SqlServerStateRepository(conn)

    snapshot = await repo.load()

    assert conn.started == 1
    assert [(c.row, c.col) for c in snapshot.cells] == [(1, 1), (1, 2)]
    assert snapshot.cells[1].product_id == 7
    assert snapshot.products[0].rfid_uid == "RF-7"
    assert snapshot.conveyor.has_product is False


@pytest.mark.asyncio
async def test_load_without_cells_means_fresh_database():
    assert await SqlServerStateRepository(FakeSqlConnection()).load() is None


@pytest.mark.asyncio
async def test_transaction_commits_or_rolls_back():
    conn = SQLServerConnection(Settings(sql_schema="dbo"))
    cursor = FakeCursor({"UPDATE": 1}, fail_on="INSERT")
    conn._pool = FakePool(cursor)
    conn._query_semaphore = asyncio.Semaphore(1)

    async with conn.transaction() as tx:
        assert await tx.execute("UPDATE [dbo].[cells] SET [quantity] = ? WHERE [id] = ?", [1, 1]) == 1

    with pytest.raises(RuntimeError):
        async with conn.transaction() as tx:
            await tx.execute("INSERT INTO [dbo].[cells] ([id]) VALUES (?)", [9])

    assert [sql.split(" ")[0] for sql, _ in cursor.executed] == [
        "BEGIN",
        "UPDATE",
        "COMMIT",
        "BEGIN",
        "INSERT",
        "ROLLBACK",
    ]


def test_identifiers_are_validated():
    conn = SQLServerConnection(Settings(sql_schema="dbo"))

    assert conn.table_name("auto_tasks") == "[dbo].[auto_tasks]"
    with pytest.raises(ValueError):
        conn.table_name("cells; DROP TABLE x")
    with pytest.raises(ValueError):
        SQLServerConnection.column_name("bad name")
