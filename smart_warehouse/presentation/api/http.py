from __future__ import annotations

import logging
from collections.abc import Callable

from fastapi import APIRouter, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from smart_warehouse.application.services.orchestrator import WarehouseService
from smart_warehouse.domain.errors import (
    ConcurrencyBusyError,
    DeviceCommFailure,
    DeviceUnregistered,
    NotFoundError,
    PersistenceFailure,
    ValidationError,
    WarehouseError,
)
from smart_warehouse.domain.models.arm import ArmMode
from smart_warehouse.domain.models.operation import OperationKind, Priority
from smart_warehouse.domain.models.task import TaskStatus, TaskType

log = logging.getLogger(__name__)

_STATUS_BY_ERROR: tuple[tuple[type[WarehouseError], int], ...] = (
    (ValidationError, 400),
    (NotFoundError, 404),
    (ConcurrencyBusyError, 409),
    (DeviceUnregistered, 503),
    (DeviceCommFailure, 502),
    (PersistenceFailure, 500),
)


class SensorUpdateRequest(BaseModel):
    ldr1: bool = False
    ldr2: bool = False
    rfid: str | None = None
    conveyorState: str | None = None


class ConveyorStatusRequest(BaseModel):
    has_product: bool
    product_id: int | None = Field(default=None, ge=1)
    product_rfid: str | None = None


class LoadingZoneRequest(BaseModel):
    product_id: int | None = Field(default=None, ge=1)
    quantity: int = Field(default=0, ge=0)


class AssignCellRequest(BaseModel):
    product_id: int | None = Field(default=None, ge=1)
    quantity: int | None = Field(default=None, ge=0)


class CreateProductRequest(BaseModel):
    name: str = Field(min_length=1)
    sku: str | None = None
    rfid_uid: str | None = None
    category: str | None = None


class CreateOperationRequest(BaseModel):
    op_type: OperationKind
    cmd: str | None = None
    product_id: int | None = Field(default=None, ge=1)
    cell_id: int | None = Field(default=None, ge=1)
    priority: Priority = Priority.MEDIUM


class CreateAutoTaskRequest(BaseModel):
    task_type: TaskType
    cell_id: int | None = Field(default=None, ge=1)
    product_id: int | None = Field(default=None, ge=1)
    product_rfid: str | None = None
    quantity: int = Field(default=1, ge=1)
    priority: Priority = Priority.MEDIUM


class ModeRequest(BaseModel):
    mode: ArmMode


def status_for_error(exc: WarehouseError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 500


def install_error_handlers(app: FastAPI) -> None:
    async def _warehouse_error(request: Request, exc: WarehouseError) -> JSONResponse:
        status_code = status_for_error(exc)
        if status_code >= 500:
            log.warning(
                "HTTP %s %s failed status=%s error=%s message=%s",
                request.method,
                request.url.path,
                status_code,
                exc.code,
                exc.message,
            )
        else:
            log.info("HTTP %s %s rejected status=%s error=%s", request.method, request.url.path, status_code, exc.code)
        return JSONResponse(status_code=status_code, content={"success": False, "error": exc.to_dict()})

    app.add_exception_handler(WarehouseError, _warehouse_error)


def build_http_router(service: WarehouseService, realtime_status: Callable[[], dict[str, int]] | None = None) -> APIRouter:
    router = APIRouter()

    @router.get("/health")
    async def health() -> dict:
        log.debug("HTTP GET /health")
        return {"status": "ok", "arm": service.arm_state().to_dict()}

    @router.get("/api/esp32/register")
    async def register_device(ip: str = Query(min_length=1)) -> dict:
        log.info("HTTP GET /api/esp32/register ip=%s", ip)
        base_url = await service.register_device(ip)
        return {"success": True, "esp32_base_url": base_url, "message": "ESP32 registered successfully"}

    @router.get("/api/esp32/status")
    async def device_status() -> dict:
        return service.device_status()

    @router.post("/api/sensors/update")
    async def sensors_update(req: SensorUpdateRequest) -> dict:
        log.debug("HTTP POST /api/sensors/update ldr1=%s ldr2=%s rfid=%s", req.ldr1, req.ldr2, req.rfid)
        await service.ingest_sensor_snapshot(
            ldr1=req.ldr1,
            ldr2=req.ldr2,
            rfid=req.rfid,
            conveyor_state=req.conveyorState,
        )
        return {"success": True}

    @router.get("/api/sensors")
    async def sensors() -> dict:
        latest = service.latest_sensor_snapshot()
        return latest.to_dict() if latest else {}

    @router.get("/api/conveyor-status")
    async def conveyor_status() -> dict:
        return (await service.conveyor()).to_dict()

    @router.post("/api/conveyor-status")
    async def set_conveyor_status(req: ConveyorStatusRequest) -> dict:
        log.info("HTTP POST /api/conveyor-status has_product=%s product_id=%s", req.has_product, req.product_id)
        conveyor = await service.set_conveyor_status(req.has_product, req.product_id, req.product_rfid)
        return conveyor.to_dict()

    @router.get("/api/loading-zone")
    async def loading_zone() -> dict:
        return (await service.loading_zone()).to_dict()

    @router.post("/api/loading-zone")
    async def set_loading_zone(req: LoadingZoneRequest) -> dict:
        log.info("HTTP POST /api/loading-zone product_id=%s quantity=%s", req.product_id, req.quantity)
        zone = await service.set_loading_zone(req.product_id, req.quantity)
        return zone.to_dict()

    @router.get("/api/cells")
    async def cells() -> list[dict]:
        return [cell.to_dict() for cell in await service.cells()]

    @router.post("/api/cells/{cell_id}/assign")
    async def assign_cell(cell_id: int, req: AssignCellRequest) -> dict:
        log.info("HTTP POST /api/cells/%s/assign product_id=%s quantity=%s", cell_id, req.product_id, req.quantity)
        cell = await service.assign_cell(cell_id, req.product_id, req.quantity)
        return {"success": True, "cell": cell.to_dict()}

    @router.get("/api/products")
    async def products() -> list[dict]:
        return await service.products()

    @router.post("/api/products")
    async def create_product(req: CreateProductRequest) -> dict:
        log.info("HTTP POST /api/products name=%s rfid=%s", req.name, req.rfid_uid)
        product = await service.create_product(req.name, sku=req.sku, rfid_uid=req.rfid_uid, category=req.category)
        return {"success": True, "product": product.to_dict()}

    @router.get("/api/operations")
    async def operations(limit: int | None = Query(default=None, ge=1, le=1000)) -> list[dict]:
        return [op.to_dict() for op in await service.operations(limit)]

    @router.get("/api/operations/{operation_id}")
    async def operation(operation_id: int) -> dict:
        return (await service.operation(operation_id)).to_dict()

    @router.post("/api/operations")
    async def create_operation(req: CreateOperationRequest) -> dict:
        log.info(
            "HTTP POST /api/operations op_type=%s cmd=%s cell_id=%s product_id=%s",
            req.op_type.value,
            req.cmd,
            req.cell_id,
            req.product_id,
        )
        operation = await service.create_operation(
            req.op_type,
            req.cmd,
            product_id=req.product_id,
            cell_id=req.cell_id,
            priority=req.priority,
        )
        return {"success": True, "operation": operation.to_dict()}

    @router.get("/api/auto-tasks")
    async def auto_tasks(status: TaskStatus = TaskStatus.PENDING) -> list[dict]:
        return [task.to_dict() for task in await service.tasks(status)]

    @router.post("/api/auto-tasks")
    async def create_auto_task(req: CreateAutoTaskRequest) -> dict:
        log.info(
            "HTTP POST /api/auto-tasks task_type=%s priority=%s cell_id=%s product_id=%s",
            req.task_type.value,
            req.priority.value,
            req.cell_id,
            req.product_id,
        )
        task = await service.create_auto_task(
            req.task_type,
            cell_id=req.cell_id,
            product_id=req.product_id,
            product_rfid=req.product_rfid,
            quantity=req.quantity,
            priority=req.priority,
        )
        return {"success": True, "task": task.to_dict()}

    @router.post("/api/auto-tasks/{task_id}/cancel")
    async def cancel_auto_task(task_id: int) -> dict:
        log.info("HTTP POST /api/auto-tasks/%s/cancel", task_id)
        task = await service.cancel_auto_task(task_id)
        return {"success": True, "task": task.to_dict()}

    @router.post("/api/mode")
    async def set_mode(req: ModeRequest) -> dict:
        log.info("HTTP POST /api/mode mode=%s", req.mode.value)
        state = await service.set_mode(req.mode)
        return {"success": True, "mode": state.mode.value, "armState": state.to_dict()}

    @router.get("/api/status")
    async def status() -> dict:
        body = await service.status()
        if realtime_status is not None:
            body["realtime"] = realtime_status()
        return body

    return router
