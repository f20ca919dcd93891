from __future__ import annotations

import asyncio
import json
import logging
import os
import uuid
from pathlib import Path
from typing import Any

from smart_warehouse.application.state.snapshots import ChangeSet, StoreSnapshot

log = logging.getLogger(__name__)

_DOCUMENT_VERSION = 1


class JsonStateRepository:
    """
    Whole-state JSON document. Every save rewrites the document through a
    temp file and `os.replace`, so readers see the previous or the next state,
    never a partial one.
    """

    def __init__(self, file_path: str) -> None:
        self._path = Path(file_path)

    @property
    def path(self) -> Path:
        return self._path

    async def load(self) -> StoreSnapshot | None:
        document = await asyncio.to_thread(self._read_document_sync)
        if document is None:
            return None
        snapshot = StoreSnapshot.from_dict(document)
        log.info(
            "Warehouse state loaded path=%s cells=%s products=%s operations=%s tasks=%s",
            self._path,
            len(snapshot.cells),
            len(snapshot.products),
            len(snapshot.operations),
            len(snapshot.tasks),
        )
        return snapshot

    async def save(self, snapshot: StoreSnapshot, changes: ChangeSet) -> None:
        payload = snapshot.to_dict()
        payload["version"] = _DOCUMENT_VERSION
        await asyncio.to_thread(self._atomic_write_json_sync, payload)
        log.debug("Warehouse state saved path=%s changed_rows=%s", self._path, changes.row_count())

    def _read_document_sync(self) -> dict[str, Any] | None:
        if not self._path.exists():
            return None
        try:
            loaded = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            log.exception("Warehouse state file is not valid JSON path=%s", self._path)
            return None
        if not isinstance(loaded, dict):
            log.warning("Warehouse state file ignored because root is not an object path=%s", self._path)
            return None
        return loaded

    def _atomic_write_json_sync(self, payload: dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_name = f".{self._path.name}.{uuid.uuid4().hex}.tmp"
        tmp_path = self._path.with_name(tmp_name)
        tmp_path.write_text(
            json.dumps(payload, ensure_ascii=True, separators=(",", ":")),
            encoding="utf-8",
        )
        os.replace(tmp_path, self._path)
