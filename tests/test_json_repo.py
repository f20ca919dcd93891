import json
from datetime import datetime

import pytest

from smart_warehouse.application.state.entity_store import SingleWriterEntityStore
from smart_warehouse.application.state.reducers import assign_cell
from smart_warehouse.application.state.snapshots import ChangeSet
from smart_warehouse.infrastructure.persistence.state_repo import JsonStateRepository

from conftest import FakeClock, RecordingBus


@pytest.mark.asyncio
async def test_missing_file_loads_nothing(tmp_path):
    repo = JsonStateRepository(str(tmp_path / "state.json"))

    assert await repo.load() is None


@pytest.mark.asyncio
async def test_garbage_file_is_ignored(tmp_path):
    path = tmp_path / "state.json"
    path.write_text("{not json", encoding="utf-8")

    assert await JsonStateRepository(str(path)).load() is None

    path.write_text("[1, 2]", encoding="utf-8")
    assert await JsonStateRepository(str(path)).load() is None


@pytest.mark.asyncio
async def test_store_state_survives_restart(tmp_path):
    path = tmp_path / "data" / "state.json"
    clock = FakeClock(datetime(2024, 5, 1, 8, 0, 0))

    first = SingleWriterEntityStore(
        clock, RecordingBus(), queue_size=10, grid_rows=2, grid_cols=2, repo=JsonStateRepository(str(path))
    )
    await first.start()
    product = await first.transact(
        lambda tx: tx.add_product(name="Crate", sku="C-1", rfid_uid="RF-1", category=None).clone(),
        label="test.product",
    )
    await first.transact(lambda tx: assign_cell(tx, 3, product.id, 4), label="test.assign")
    await first.stop()

    document = json.loads(path.read_text(encoding="utf-8"))
    assert document["version"] == 1
    assert list(path.parent.glob("*.tmp")) == []

    second = SingleWriterEntityStore(
        clock, RecordingBus(), queue_size=10, grid_rows=9, grid_cols=9, repo=JsonStateRepository(str(path))
    )
    await second.start()
    try:
        cells = await second.cells()
        restored = await second.product_by_rfid("RF-1")
    finally:
        await second.stop()

    assert len(cells) == 4
    assert (cells[2].label, cells[2].product_id, cells[2].quantity) == ("R2C1", product.id, 4)
    assert restored.name == "Crate"


@pytest.mark.asyncio
async def test_save_replaces_whole_document(tmp_path):
    path = tmp_path / "state.json"
    repo = JsonStateRepository(str(path))
    clock = FakeClock()
    store = SingleWriterEntityStore(clock, RecordingBus(), queue_size=10, grid_rows=1, grid_cols=2, repo=repo)
    await store.start()
    try:
        snapshot = await store.snapshot()
    finally:
        await store.stop()

    await repo.save(snapshot, ChangeSet())

    loaded = await repo.load()
    assert [c.label for c in loaded.cells] == ["R1C1", "R1C2"]
    assert loaded.created_at == clock.now()
