from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, Protocol

from smart_warehouse.application.state.snapshots import ChangeSet, StoreSnapshot


class ClockPort(Protocol):
    def now(self) -> datetime: ...


SleepFn = Callable[[float], Awaitable[None]]


class EventBusPort(Protocol):
    async def publish(self, event: Any) -> None: ...

    async def subscribe(self, maxsize: int | None = None) -> asyncio.Queue[Any]: ...

    async def unsubscribe(self, queue: asyncio.Queue[Any]) -> None: ...


class DeviceGatewayPort(Protocol):
    @property
    def connected(self) -> bool: ...

    @property
    def base_url(self) -> str | None: ...

    async def register(self, address: str) -> str: ...

    async def send_command(self, command: str) -> str: ...


class StateRepoPort(Protocol):
    async def load(self) -> StoreSnapshot | None: ...

    async def save(self, snapshot: StoreSnapshot, changes: ChangeSet) -> None: ...
