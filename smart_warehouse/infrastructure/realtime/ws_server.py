from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any

from fastapi import WebSocket

from smart_warehouse.domain.events import (
    BatchUpdated,
    CellUpdated,
    ConveyorUpdated,
    DeviceStatusChanged,
    LoadingZoneUpdated,
    ModeChanged,
    OperationUpdated,
    ProductUpdated,
    RfidDetected,
    SensorUpdated,
    TaskUpdated,
    WarehouseSnapshot,
)

log = logging.getLogger(__name__)


class WebSocketServerAdapter:
    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._connections: set[WebSocket] = set()

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        async with self._lock:
            self._connections.add(ws)
            count = len(self._connections)
        log.info("WS client connected client=%s connections=%s", ws.client, count)

    async def disconnect(self, ws: WebSocket) -> None:
        async with self._lock:
            self._connections.discard(ws)
            count = len(self._connections)
        log.info("WS client disconnected client=%s connections=%s", ws.client, count)

    async def send(self, ws: WebSocket, payload: dict[str, Any]) -> bool:
        try:
            await ws.send_json(payload)
        except Exception:  # noqa: BLE001
            log.debug("WS send failed client=%s type=%s", ws.client, payload.get("type"))
            await self.disconnect(ws)
            return False
        return True

    async def broadcast(self, payload: dict[str, Any]) -> None:
        async with self._lock:
            targets = list(self._connections)
        dead: list[WebSocket] = []
        for ws in targets:
            try:
                await ws.send_json(payload)
            except Exception:  # noqa: BLE001
                dead.append(ws)
        if dead:
            async with self._lock:
                for ws in dead:
                    self._connections.discard(ws)
            log.info("WS pruned dead connections count=%s", len(dead))

    async def event_pump(self, queue: asyncio.Queue[Any]) -> None:
        while True:
            event = await queue.get()
            payload = event_to_payload(event)
            if payload is None:
                log.debug("WS event skipped event_type=%s", type(event).__name__)
                continue
            await self.broadcast(payload)


def event_to_payload(event: Any) -> dict[str, Any] | None:
    if isinstance(event, OperationUpdated):
        return {"type": "operation_update", "id": int(event.operation.id), "operation": event.operation.to_dict()}
    if isinstance(event, TaskUpdated):
        return {"type": "task_update", "id": int(event.task.id), "task": event.task.to_dict()}
    if isinstance(event, CellUpdated):
        return {"type": "cell_update", "id": int(event.cell.id), "cell": event.cell.to_dict()}
    if isinstance(event, LoadingZoneUpdated):
        return {"type": "loading_zone_update", "id": 1, "data": event.loading_zone.to_dict()}
    if isinstance(event, ConveyorUpdated):
        return {"type": "conveyor_update", "id": 1, "product": event.conveyor.to_dict()}
    if isinstance(event, ProductUpdated):
        return {"type": "product_update", "id": int(event.product.id), "product": event.product.to_dict()}
    if isinstance(event, SensorUpdated):
        return {"type": "sensor_update", "data": event.snapshot.to_dict()}
    if isinstance(event, RfidDetected):
        name = event.product.name or ""
        return {
            "type": "rfid_detected",
            "tag": event.tag,
            "symbol": name[:1].upper() or "?",
            "product": event.product.to_dict(),
            "targetCell": None,
        }
    if isinstance(event, ModeChanged):
        return {"type": "mode_update", "mode": event.arm.mode.value, "armState": event.arm.to_dict()}
    if isinstance(event, DeviceStatusChanged):
        return {"type": "esp32_status", "connected": event.connected, "url": event.url}
    if isinstance(event, WarehouseSnapshot):
        return {
            "type": "warehouse_data",
            "cells": [cell.to_dict() for cell in event.cells],
            "loadingZone": event.loading_zone.to_dict(),
            "timestamp": datetime.now().isoformat(),
        }
    if isinstance(event, BatchUpdated):
        updates = [payload for payload in (event_to_payload(item) for item in event.events) if payload is not None]
        return {"type": "batch_update", "updates": updates}
    return None
