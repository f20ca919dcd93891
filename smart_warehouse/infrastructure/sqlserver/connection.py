from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import aioodbc

from smart_warehouse.config import Settings

log = logging.getLogger(__name__)
_DRIVER_VERSION_PATTERN = re.compile(r"^ODBC Driver (\d+) for SQL Server$", re.IGNORECASE)
_VALID_SQL_IDENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_SLOW_QUERY_MS = 2000


class SqlTransaction:
    """Statements issued on one pooled connection between BEGIN and COMMIT."""

    def __init__(self, cursor: Any, *, preview_chars: int) -> None:
        self._cursor = cursor
        self._preview_chars = preview_chars
        self.statements = 0

    async def execute(self, query: str, params: list[Any]) -> int:
        self.statements += 1
        log.debug(
            "SQL tx statement=%s params=%s sql=%s",
            self.statements,
            len(params),
            _compact_sql(query, max_chars=self._preview_chars),
        )
        await self._cursor.execute(query, params)
        return int(self._cursor.rowcount)

    async def query_rows(self, query: str, params: list[Any]) -> list[dict[str, Any]]:
        await self._cursor.execute(query, params)
        rows = await self._cursor.fetchall()
        cols = [col[0] for col in self._cursor.description]
        return [dict(zip(cols, row, strict=True)) for row in rows]


class SQLServerConnection:
    def __init__(self, config: Settings) -> None:
        self._config = config
        self._pool: aioodbc.pool.Pool | None = None
        self._query_semaphore: asyncio.Semaphore | None = None

    @property
    def schema(self) -> str:
        return self._config.sql_schema

    async def start(self) -> None:
        if self._pool is not None:
            log.debug("SQL pool already started")
            return
        candidates = build_driver_candidates(self._config.sql_driver)
        if not candidates:
            raise RuntimeError("No SQL Server ODBC driver detected. Set SQL_DRIVER to an installed SQL Server driver.")
        log.info("SQL pool start driver_candidates=%s database=%s", candidates, self._config.sql_database)

        last_error: Exception | None = None
        for driver in candidates:
            limit = self._concurrency_limit(driver)
            try:
                self._pool = await aioodbc.create_pool(
                    dsn=self._config.build_odbc_dsn(driver=driver),
                    autocommit=True,
                    minsize=1,
                    maxsize=max(1, min(8, limit)),
                )
            except Exception as exc:  # noqa: BLE001
                last_error = exc
                log.warning("SQL pool create failed driver=%s error=%r", driver, exc)
                continue
            self._query_semaphore = asyncio.Semaphore(limit)
            if driver != self._config.sql_driver:
                log.warning("SQL driver fallback configured=%s using=%s", self._config.sql_driver, driver)
            log.info("SQL pool started driver=%s concurrency=%s", driver, limit)
            return

        installed = ", ".join(list_sql_server_drivers()) or "<none>"
        raise RuntimeError(
            f"Cannot connect to SQL Server. Attempted: [{', '.join(candidates)}]. Installed SQL drivers: [{installed}]"
        ) from last_error

    async def close(self) -> None:
        if self._pool is None:
            log.debug("SQL pool close skipped because pool is None")
            return
        log.info("Closing SQL pool")
        self._pool.close()
        await self._pool.wait_closed()
        self._pool = None
        self._query_semaphore = None
        log.info("SQL pool closed")

    async def query_rows(self, query: str, params: list[Any]) -> list[dict[str, Any]]:
        pool, semaphore = self._require_started()
        preview = _compact_sql(query, max_chars=self._config.log_sql_preview_chars)
        started_at = time.perf_counter()
        async with semaphore:
            async with pool.acquire() as conn:
                try:
                    async with conn.cursor() as cur:
                        cur.timeout = self._config.sql_query_timeout_seconds
                        rows = await SqlTransaction(cur, preview_chars=self._config.log_sql_preview_chars).query_rows(
                            query, params
                        )
                except Exception:  # noqa: BLE001
                    log.exception("SQL query failed elapsed_ms=%s sql=%s", _elapsed_ms(started_at), preview)
                    raise
        self._log_elapsed("query", started_at, len(rows), preview)
        return rows

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[SqlTransaction]:
        """
        Explicit T-SQL transaction on one pooled connection. The block commits
        on normal exit and rolls back when it raises.
        """
        pool, semaphore = self._require_started()
        started_at = time.perf_counter()
        async with semaphore:
            async with pool.acquire() as conn:
                async with conn.cursor() as cur:
                    cur.timeout = self._config.sql_query_timeout_seconds
                    await cur.execute("BEGIN TRANSACTION")
                    tx = SqlTransaction(cur, preview_chars=self._config.log_sql_preview_chars)
                    try:
                        yield tx
                    except BaseException:
                        log.warning("SQL transaction rollback statements=%s", tx.statements)
                        await cur.execute("ROLLBACK TRANSACTION")
                        raise
                    await cur.execute("COMMIT TRANSACTION")
        self._log_elapsed("transaction", started_at, tx.statements, "<commit>")

    def table_name(self, table: str) -> str:
        if not _VALID_SQL_IDENT.match(self.schema) or not _VALID_SQL_IDENT.match(table):
            raise ValueError("Invalid schema/table name")
        return f"[{self.schema}].[{table}]"

    @staticmethod
    def column_name(name: str) -> str:
        if not _VALID_SQL_IDENT.match(name):
            raise ValueError(f"Invalid column name: {name}")
        return f"[{name}]"

    def _require_started(self) -> tuple[Any, asyncio.Semaphore]:
        if self._pool is None or self._query_semaphore is None:
            raise RuntimeError("SQL connection has not started")
        return self._pool, self._query_semaphore

    def _concurrency_limit(self, driver: str) -> int:
        limit = max(1, int(self._config.sql_max_concurrent_queries))
        # Legacy "SQL Server" driver is not stable under concurrency.
        if driver.strip().lower() == "sql server" and limit != 1:
            log.warning("SQL concurrency forced to 1 for legacy driver configured=%s", limit)
            return 1
        return limit

    def _log_elapsed(self, kind: str, started_at: float, rows: int, preview: str) -> None:
        elapsed_ms = _elapsed_ms(started_at)
        if elapsed_ms >= _SLOW_QUERY_MS:
            log.warning("SQL %s slow elapsed_ms=%s rows=%s sql=%s", kind, elapsed_ms, rows, preview)
        else:
            log.debug("SQL %s done elapsed_ms=%s rows=%s", kind, elapsed_ms, rows)


def list_sql_server_drivers() -> list[str]:
    try:
        import pyodbc
    except ImportError:
        return []
    return [driver for driver in pyodbc.drivers() if "SQL Server" in driver]


def build_driver_candidates(preferred_driver: str) -> list[str]:
    preferred = preferred_driver.strip()
    out = [preferred] if preferred else []
    for driver in sorted(list_sql_server_drivers(), key=_driver_sort_key, reverse=True):
        if driver not in out:
            out.append(driver)
    return out


def _driver_sort_key(driver: str) -> tuple[int, str]:
    match = _DRIVER_VERSION_PATTERN.match(driver.strip())
    if match:
        return int(match.group(1)), driver
    return -1, driver


def _elapsed_ms(started_at: float) -> int:
    return int((time.perf_counter() - started_at) * 1000)


def _compact_sql(sql: str, *, max_chars: int) -> str:
    single_line = " ".join(sql.split())
    if len(single_line) <= max_chars:
        return single_line
    return f"{single_line[: max_chars - 3]}..."
