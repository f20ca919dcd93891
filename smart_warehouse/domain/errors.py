from __future__ import annotations

from typing import Any


class WarehouseError(Exception):
    """Base class for errors surfaced to callers of the warehouse core."""

    code = "warehouse_error"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.code, "message": self.message, "details": self.details}


class ValidationError(WarehouseError):
    code = "validation"


class InvalidTransition(ValidationError):
    code = "invalid_transition"


class NotFoundError(WarehouseError):
    code = "not_found"

    def __init__(self, entity: str, entity_id: object) -> None:
        super().__init__(f"{entity} not found: {entity_id}", details={"entity": entity, "id": entity_id})
        self.entity = entity
        self.entity_id = entity_id


class ConcurrencyBusyError(WarehouseError):
    code = "busy"


class DeviceError(WarehouseError):
    """Device dispatch failed. `operation` is the finalized record when one exists."""

    code = "device_error"

    def __init__(self, message: str, *, operation: Any = None) -> None:
        super().__init__(message)
        self.operation = operation

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        if self.operation is not None:
            payload["operation"] = self.operation.to_dict()
        return payload


class DeviceUnregistered(DeviceError):
    code = "device_unregistered"


class DeviceCommFailure(DeviceError):
    code = "device_comm_failure"


class PersistenceFailure(WarehouseError):
    code = "persistence_failure"

    def __init__(self, message: str, *, operation: Any = None) -> None:
        super().__init__(message)
        self.operation = operation
