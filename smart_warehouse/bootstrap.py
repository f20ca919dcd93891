from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path

import httpx
from fastapi import FastAPI

from smart_warehouse.application.ports import ClockPort, SleepFn, StateRepoPort
from smart_warehouse.application.services.orchestrator import WarehouseService
from smart_warehouse.application.services.scheduler import AutoTaskScheduler
from smart_warehouse.application.state.arm_context import ArmModeContext
from smart_warehouse.application.state.entity_store import SingleWriterEntityStore
from smart_warehouse.config import Settings
from smart_warehouse.infrastructure.device.http_gateway import HttpDeviceGateway
from smart_warehouse.infrastructure.messaging.event_bus import AsyncEventBus
from smart_warehouse.infrastructure.persistence.state_repo import JsonStateRepository
from smart_warehouse.infrastructure.realtime.ws_server import WebSocketServerAdapter
from smart_warehouse.infrastructure.sqlserver.connection import SQLServerConnection
from smart_warehouse.infrastructure.sqlserver.state_repo import SqlServerStateRepository
from smart_warehouse.presentation.api.http import build_http_router, install_error_handlers
from smart_warehouse.presentation.api.ws import WsRuntime, build_ws_router

log = logging.getLogger(__name__)


class SystemClock:
    def now(self) -> datetime:
        return datetime.now()


def build_state_repo(config: Settings) -> StateRepoPort | None:
    backend = config.persistence_backend
    if backend == "memory":
        log.info("Persistence disabled backend=memory")
        return None
    if backend == "sqlserver":
        log.info("Persistence backend=sqlserver database=%s schema=%s", config.sql_database, config.sql_schema)
        return SqlServerStateRepository(SQLServerConnection(config))
    log.info("Persistence backend=json path=%s", Path(config.state_file).resolve())
    return JsonStateRepository(config.state_file)


class WarehouseRuntime:
    """Builds and owns every long-lived component of one warehouse process."""

    def __init__(
        self,
        config: Settings,
        *,
        clock: ClockPort | None = None,
        repo: StateRepoPort | None = None,
        device_transport: httpx.AsyncBaseTransport | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.config = config
        self.clock = clock or SystemClock()
        self.event_bus = AsyncEventBus(default_queue_size=config.event_queue_size)
        self.repo = repo if repo is not None else build_state_repo(config)
        self.store = SingleWriterEntityStore(
            self.clock,
            self.event_bus,
            queue_size=config.store_queue_size,
            grid_rows=config.grid_rows,
            grid_cols=config.grid_cols,
            repo=self.repo,
        )
        self.arm = ArmModeContext()
        self.gateway = HttpDeviceGateway(
            self.event_bus,
            timeout_seconds=config.device_timeout_seconds,
            transport=device_transport,
        )
        self.scheduler = AutoTaskScheduler(
            self.store,
            self.gateway,
            self.arm,
            sleep=sleep,
            success_delay_seconds=config.scheduler_success_delay_seconds,
            noop_delay_seconds=config.scheduler_noop_delay_seconds,
            failure_delay_seconds=config.scheduler_failure_delay_seconds,
        )
        self.service = WarehouseService(
            self.store,
            self.gateway,
            self.arm,
            self.event_bus,
            self.clock,
            self.scheduler,
            auto_start_delay_seconds=config.auto_start_delay_seconds,
            snapshot_interval_seconds=config.snapshot_broadcast_interval_seconds,
            operations_default_limit=config.operations_default_limit,
            sleep=sleep,
        )
        self.ws_server = WebSocketServerAdapter()
        self.ws_runtime = WsRuntime(self.event_bus, self.ws_server, queue_size=config.ws_queue_size)

    def realtime_status(self) -> dict[str, int]:
        return {"ws_connections": self.ws_server.connection_count, **self.event_bus.stats()}

    async def start(self) -> None:
        log.info("Runtime start begin app=%s", self.config.app_name)
        if self.config.device_base_url.strip():
            await self.gateway.register(self.config.device_base_url)
        await self.ws_runtime.start()
        await self.service.start()
        log.info("Runtime start completed")

    async def stop(self) -> None:
        log.info("Runtime shutdown sequence started")
        try:
            await self.service.stop()
        finally:
            await self.ws_runtime.stop()
            close = getattr(self.repo, "close", None)
            if callable(close):
                await close()
        log.info("Runtime shutdown sequence completed")


def create_app(runtime: WarehouseRuntime) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await runtime.start()
        try:
            yield
        finally:
            await runtime.stop()

    app = FastAPI(title=runtime.config.app_name, lifespan=lifespan)
    install_error_handlers(app)
    app.include_router(build_http_router(runtime.service, realtime_status=runtime.realtime_status))
    app.include_router(build_ws_router(runtime.ws_server, runtime.service))
    app.state.runtime = runtime
    return app
