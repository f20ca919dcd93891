from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from smart_warehouse.application.state.snapshots import (
    ChangeSet,
    StoreSnapshot,
    cell_from_row,
    conveyor_from_row,
    loading_zone_from_row,
    operation_from_row,
    product_from_row,
    task_from_row,
)
from smart_warehouse.infrastructure.sqlserver.connection import SQLServerConnection, SqlTransaction

log = logging.getLogger(__name__)

_SINGLETON_ID = 1


@dataclass(slots=True, frozen=True)
class _TableSpec:
    table: str
    # (sql column, entity attribute); the first pair is the key
    columns: tuple[tuple[str, str], ...]

    @property
    def key(self) -> tuple[str, str]:
        return self.columns[0]


_CELLS = _TableSpec(
    "cells",
    (
        ("id", "id"),
        ("row_num", "row"),
        ("col_num", "col"),
        ("label", "label"),
        ("product_id", "product_id"),
        ("quantity", "quantity"),
        ("status", "status"),
        ("updated_at", "updated_at"),
    ),
)
_PRODUCTS = _TableSpec(
    "products",
    (
        ("id", "id"),
        ("name", "name"),
        ("sku", "sku"),
        ("rfid_uid", "rfid_uid"),
        ("category", "category"),
        ("created_at", "created_at"),
    ),
)
_OPERATIONS = _TableSpec(
    "operations",
    (
        ("id", "id"),
        ("op_type", "kind"),
        ("cmd", "command"),
        ("product_id", "product_id"),
        ("cell_id", "cell_id"),
        ("status", "status"),
        ("priority", "priority"),
        ("created_at", "created_at"),
        ("started_at", "started_at"),
        ("completed_at", "completed_at"),
        ("error_message", "error_message"),
        ("execution_time_ms", "execution_time_ms"),
    ),
)
_TASKS = _TableSpec(
    "auto_tasks",
    (
        ("id", "id"),
        ("task_type", "task_type"),
        ("cell_id", "cell_id"),
        ("product_id", "product_id"),
        ("product_rfid", "product_rfid"),
        ("quantity", "quantity"),
        ("priority", "priority"),
        ("status", "status"),
        ("created_at", "created_at"),
        ("started_at", "started_at"),
        ("completed_at", "completed_at"),
        ("error_message", "error_message"),
    ),
)
_LOADING_ZONE = _TableSpec(
    "loading_zone",
    (("id", "__singleton__"), ("product_id", "product_id"), ("quantity", "quantity"), ("updated_at", "updated_at")),
)
_CONVEYOR = _TableSpec(
    "conveyor_status",
    (
        ("id", "__singleton__"),
        ("has_product", "has_product"),
        ("product_id", "product_id"),
        ("product_rfid", "product_rfid"),
        ("last_detected_at", "last_detected_at"),
    ),
)


class SqlServerStateRepository:
    """
    Row-level persistence on SQL Server. Each change set is written inside one
    transaction: UPDATE by id, INSERT when no row matched. Tables are expected
    to exist with store-assigned integer ids.
    """

    def __init__(self, connection: SQLServerConnection) -> None:
        self._conn = connection

    async def start(self) -> None:
        await self._conn.start()

    async def close(self) -> None:
        await self._conn.close()

    async def load(self) -> StoreSnapshot | None:
        await self._conn.start()
        started_at = time.perf_counter()
        cells = await self._select(_CELLS, order_by="row_num, col_num")
        if not cells:
            log.info("SQL state load found no cells table=%s", self._conn.table_name(_CELLS.table))
            return None
        products = await self._select(_PRODUCTS)
        operations = await self._select(_OPERATIONS)
        tasks = await self._select(_TASKS)
        zones = await self._select(_LOADING_ZONE)
        conveyors = await self._select(_CONVEYOR)
        snapshot = StoreSnapshot(
            created_at=datetime.now(),
            cells=[cell_from_row({**row, "row": row["row_num"], "col": row["col_num"]}) for row in cells],
            products=[product_from_row(row) for row in products],
            operations=[operation_from_row(row) for row in operations],
            tasks=[task_from_row(row) for row in tasks],
            loading_zone=loading_zone_from_row(zones[0] if zones else {}),
            conveyor=conveyor_from_row(conveyors[0] if conveyors else {}),
        )
        log.info(
            "SQL state loaded elapsed_ms=%s cells=%s products=%s operations=%s tasks=%s",
            int((time.perf_counter() - started_at) * 1000),
            len(snapshot.cells),
            len(snapshot.products),
            len(snapshot.operations),
            len(snapshot.tasks),
        )
        return snapshot

    async def save(self, snapshot: StoreSnapshot, changes: ChangeSet) -> None:
        if changes.is_empty():
            return
        async with self._conn.transaction() as tx:
            for product in changes.products.values():
                await self._upsert(tx, _PRODUCTS, product)
            for cell in changes.cells.values():
                await self._upsert(tx, _CELLS, cell)
            if changes.loading_zone is not None:
                await self._upsert(tx, _LOADING_ZONE, changes.loading_zone)
            if changes.conveyor is not None:
                await self._upsert(tx, _CONVEYOR, changes.conveyor)
            for task in changes.tasks.values():
                await self._upsert(tx, _TASKS, task)
            for operation in changes.operations.values():
                await self._upsert(tx, _OPERATIONS, operation)
        log.debug("SQL state saved rows=%s statements=%s", changes.row_count(), tx.statements)

    async def _select(self, spec: _TableSpec, *, order_by: str = "id") -> list[dict[str, Any]]:
        columns = ", ".join(self._conn.column_name(column) for column, _ in spec.columns)
        query = f"SELECT {columns} FROM {self._conn.table_name(spec.table)} ORDER BY {order_by}"
        return await self._conn.query_rows(query, [])

    async def _upsert(self, tx: SqlTransaction, spec: _TableSpec, entity: Any) -> None:
        key_column, _ = spec.key
        values = [_column_value(entity, attr) for _, attr in spec.columns]
        key_value, data_values = values[0], values[1:]
        data_columns = [column for column, _ in spec.columns[1:]]
        table = self._conn.table_name(spec.table)

        assignments = ", ".join(f"{self._conn.column_name(column)} = ?" for column in data_columns)
        updated = await tx.execute(
            f"UPDATE {table} SET {assignments} WHERE {self._conn.column_name(key_column)} = ?",
            [*data_values, key_value],
        )
        if updated > 0:
            return
        all_columns = ", ".join(self._conn.column_name(column) for column, _ in spec.columns)
        placeholders = ", ".join("?" for _ in spec.columns)
        await tx.execute(f"INSERT INTO {table} ({all_columns}) VALUES ({placeholders})", values)


def _column_value(entity: Any, attr: str) -> Any:
    if attr == "__singleton__":
        return _SINGLETON_ID
    value = getattr(entity, attr)
    if isinstance(value, Enum):
        return value.value
    return value
