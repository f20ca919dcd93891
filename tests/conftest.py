from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Any

import pytest

from smart_warehouse.application.services.scheduler import AutoTaskScheduler
from smart_warehouse.application.state.arm_context import ArmModeContext
from smart_warehouse.application.state.entity_store import SingleWriterEntityStore
from smart_warehouse.application.state.snapshots import ChangeSet, StoreSnapshot
from smart_warehouse.domain.errors import DeviceCommFailure, DeviceUnregistered
from smart_warehouse.domain.events import BatchUpdated


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2024, 5, 1, 8, 0, 0)

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float = 1.0) -> datetime:
        self.current += timedelta(seconds=seconds)
        return self.current


class RecordingBus:
    def __init__(self) -> None:
        self.events: list[Any] = []

    async def publish(self, event: Any) -> None:
        self.events.append(event)

    async def subscribe(self, maxsize: int | None = None) -> asyncio.Queue[Any]:
        return asyncio.Queue()

    async def unsubscribe(self, queue: asyncio.Queue[Any]) -> None:
        return None

    def flat(self) -> list[Any]:
        out: list[Any] = []
        for event in self.events:
            if isinstance(event, BatchUpdated):
                out.extend(event.events)
            else:
                out.append(event)
        return out

    def of_type(self, event_type: type) -> list[Any]:
        return [event for event in self.flat() if isinstance(event, event_type)]


class FakeGateway:
    """Records dispatched commands and how many were in flight at once."""

    def __init__(self, base_url: str | None = "http://device.test") -> None:
        self._base_url = base_url
        self._connected = base_url is not None
        self.sent: list[str] = []
        self.failing: set[str] = set()
        self.release: asyncio.Event | None = None
        self.active = 0
        self.max_active = 0

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def base_url(self) -> str | None:
        return self._base_url

    async def register(self, address: str) -> str:
        self._base_url = address if "://" in address else f"http://{address}"
        self._connected = True
        return self._base_url

    async def send_command(self, command: str) -> str:
        if self._base_url is None:
            raise DeviceUnregistered("Device not registered")
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            self.sent.append(command)
            if self.release is not None:
                await self.release.wait()
            if command in self.failing:
                self._connected = False
                raise DeviceCommFailure(f"Device HTTP 500: {command}")
            return "OK"
        finally:
            self.active -= 1


class FakeRepo:
    def __init__(self, snapshot: StoreSnapshot | None = None) -> None:
        self.snapshot = snapshot
        self.saved: list[ChangeSet] = []
        self.fail = False
        self.fail_next = 0

    async def load(self) -> StoreSnapshot | None:
        return self.snapshot

    async def save(self, snapshot: StoreSnapshot, changes: ChangeSet) -> None:
        if self.fail_next:
            self.fail_next -= 1
            raise RuntimeError("disk full")
        if self.fail:
            raise RuntimeError("disk full")
        self.snapshot = snapshot
        self.saved.append(changes)


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        await asyncio.sleep(0)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def bus() -> RecordingBus:
    return RecordingBus()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def repo() -> FakeRepo:
    return FakeRepo()


@pytest.fixture
def arm() -> ArmModeContext:
    return ArmModeContext()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
async def store(clock: FakeClock, bus: RecordingBus, repo: FakeRepo):
    entity_store = SingleWriterEntityStore(clock, bus, queue_size=100, grid_rows=3, grid_cols=4, repo=repo)
    await entity_store.start()
    yield entity_store
    await entity_store.stop()


@pytest.fixture
def scheduler(store, gateway: FakeGateway, arm: ArmModeContext, sleep: RecordingSleep) -> AutoTaskScheduler:
    return AutoTaskScheduler(
        store,
        gateway,
        arm,
        sleep=sleep,
        success_delay_seconds=2.0,
        noop_delay_seconds=1.0,
        failure_delay_seconds=2.0,
    )


@pytest.fixture
def make_product(store: SingleWriterEntityStore):
    async def _make(name: str = "Widget", rfid: str | None = None):
        return await store.transact(
            lambda tx: tx.add_product(name=name, sku=None, rfid_uid=rfid, category=None).clone(),
            label="test.product",
        )

    return _make
