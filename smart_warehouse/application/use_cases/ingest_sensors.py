from __future__ import annotations

import logging
from dataclasses import dataclass

from smart_warehouse.application.ports import ClockPort, EventBusPort
from smart_warehouse.application.state.entity_store import SingleWriterEntityStore
from smart_warehouse.application.state.reducers import Transaction
from smart_warehouse.domain.events import RfidDetected, SensorUpdated
from smart_warehouse.domain.models.warehouse import ConveyorStatus, Product, SensorSnapshot

log = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class IngestResult:
    snapshot: SensorSnapshot
    conveyor: ConveyorStatus
    product: Product | None


class IngestSensorsUseCase:
    def __init__(self, store: SingleWriterEntityStore, event_bus: EventBusPort, clock: ClockPort) -> None:
        self._store = store
        self._event_bus = event_bus
        self._clock = clock
        self._latest: SensorSnapshot | None = None

    @property
    def latest(self) -> SensorSnapshot | None:
        return self._latest

    async def execute(
        self,
        *,
        ldr1: bool,
        ldr2: bool,
        rfid: str | None = None,
        conveyor_state: str | None = None,
    ) -> IngestResult:
        tag = (rfid or "").strip() or None
        snapshot = SensorSnapshot(
            ldr1=bool(ldr1),
            ldr2=bool(ldr2),
            rfid=tag,
            conveyor_state=conveyor_state or "IDLE",
            received_at=self._clock.now(),
        )
        self._latest = snapshot
        await self._event_bus.publish(SensorUpdated(snapshot=snapshot))

        conveyor, product = await self._store.transact(
            lambda tx: _apply_snapshot(tx, snapshot),
            label="sensor.ingest",
        )
        if product is not None and tag is not None:
            await self._event_bus.publish(RfidDetected(tag=tag, product=product))
        log.debug(
            "Sensor ingest ldr1=%s ldr2=%s rfid=%s has_product=%s product_id=%s",
            snapshot.ldr1,
            snapshot.ldr2,
            tag,
            conveyor.has_product,
            conveyor.product_id,
        )
        return IngestResult(snapshot=snapshot, conveyor=conveyor, product=product)


def _apply_snapshot(tx: Transaction, snapshot: SensorSnapshot) -> tuple[ConveyorStatus, Product | None]:
    if not snapshot.product_present:
        conveyor = tx.conveyor()
        conveyor.has_product = False
        conveyor.last_detected_at = snapshot.received_at
        return conveyor.clone(), None

    product = tx.find_product_by_rfid(snapshot.rfid) if snapshot.rfid else None
    conveyor = tx.conveyor()
    conveyor.has_product = True
    conveyor.last_detected_at = snapshot.received_at
    if product is not None:
        conveyor.product_id = product.id
        conveyor.product_rfid = snapshot.rfid
    return conveyor.clone(), product.clone() if product is not None else None
