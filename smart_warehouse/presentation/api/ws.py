from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from smart_warehouse.application.ports import EventBusPort
from smart_warehouse.application.services.orchestrator import WarehouseService
from smart_warehouse.infrastructure.realtime.ws_server import WebSocketServerAdapter

log = logging.getLogger(__name__)


class WsRuntime:
    def __init__(self, event_bus: EventBusPort, ws_server: WebSocketServerAdapter, queue_size: int) -> None:
        self._event_bus = event_bus
        self._ws_server = ws_server
        self._queue_size = queue_size
        self._queue: asyncio.Queue[Any] | None = None
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        if self._task is not None:
            log.debug("WsRuntime start skipped because task already exists")
            return
        self._queue = await self._event_bus.subscribe(maxsize=self._queue_size)
        self._task = asyncio.create_task(self._ws_server.event_pump(self._queue), name="ws-event-pump")
        log.info("WsRuntime started queue_size=%s", self._queue_size)

    async def stop(self) -> None:
        if self._task is None:
            log.debug("WsRuntime stop skipped because task is None")
            return
        log.info("WsRuntime stopping")
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        if self._queue is not None:
            await self._event_bus.unsubscribe(self._queue)
            self._queue = None
        log.info("WsRuntime stopped")


def init_payload(service: WarehouseService) -> dict[str, Any]:
    latest = service.latest_sensor_snapshot()
    device = service.device_status()
    return {
        "type": "init",
        "armState": service.arm_state().to_dict(),
        "sensorData": latest.to_dict() if latest else None,
        "esp32Connected": device["connected"],
        "timestamp": datetime.now().isoformat(),
    }


async def handle_client_message(
    ws: WebSocket,
    ws_server: WebSocketServerAdapter,
    service: WarehouseService,
    raw: str,
) -> None:
    try:
        message = json.loads(raw)
    except json.JSONDecodeError:
        log.warning("WS client message is not JSON client=%s", ws.client)
        return
    kind = message.get("type") if isinstance(message, dict) else None
    if kind in ("request_sensor_data", "request_sensor_update"):
        latest = service.latest_sensor_snapshot()
        await ws_server.send(ws, {"type": "sensor_update", "data": latest.to_dict() if latest else None})
        return
    if kind == "refresh_data":
        await service.publish_snapshot()
        return
    log.info("WS unknown client message client=%s type=%s", ws.client, kind)


def build_ws_router(ws_server: WebSocketServerAdapter, service: WarehouseService) -> APIRouter:
    router = APIRouter()

    @router.websocket("/ws")
    async def ws_warehouse(ws: WebSocket) -> None:
        log.info("WS /ws connect request client=%s", ws.client)
        await ws_server.connect(ws)
        try:
            await ws_server.send(ws, init_payload(service))
            while True:
                raw = await ws.receive_text()
                await handle_client_message(ws, ws_server, service, raw)
        except WebSocketDisconnect:
            log.info("WS /ws disconnected client=%s", ws.client)
        finally:
            await ws_server.disconnect(ws)

    return router
