from __future__ import annotations

import json
import logging
from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from typing import Any, Generic, TypeVar

from pydantic import BaseModel
from pydantic_core import to_jsonable_python

from crm_store.crm.errors import NotFoundError
from crm_store.crm.kv import KeyValueStore
from crm_store.crm.schemas import IDENTITY_FIELDS, EntityRecord
from crm_store.metrics import observe_ledger_write


logger = logging.getLogger("crm_store.ledger")

T = TypeVar("T", bound=EntityRecord)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LocalLedger(Generic[T]):
    """Client-side collection persisted as one JSON array under a fixed key.

    Every mutation is a full read-modify-write of the stored array followed by
    a re-read into memory. Ids are millisecond timestamps, kept strictly
    increasing within this process only.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        key: str,
        model: type[T],
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.kv = kv
        self.key = key
        self.model = model
        self.clock = clock or utcnow
        self.items: list[T] = []
        self.loaded = False
        self.last_error: str | None = None
        self._last_id = 0

    def load(self) -> list[T]:
        """Read the slot into memory.

        An unreadable slot leaves an empty, unloaded view; mutations still
        refuse to overwrite it.
        """
        try:
            items = [self.model.model_validate(row) for row in self._read()]
        except ValueError as exc:
            self.items = []
            self.loaded = False
            self.last_error = str(exc)
            logger.warning("ledger.load.failed", extra={"storage_key": self.key, "error": str(exc)})
            return self.items
        self.items = items
        self.loaded = True
        self.last_error = None
        for item in self.items:
            if item.id.isdigit():
                self._last_id = max(self._last_id, int(item.id))
        return self.items

    def get(self, entity_id: str) -> T | None:
        for item in self.items:
            if item.id == entity_id:
                return item
        return None

    def __len__(self) -> int:
        return len(self.items)

    def add(self, data: Mapping[str, Any] | BaseModel) -> T:
        now = self.clock().isoformat()
        entity_id = self._next_id()
        record = {**self._payload(data), "id": entity_id, "created_at": now, "updated_at": now}

        rows = self._read()
        rows.append(record)
        self._write(rows, "add")
        self.load()
        logger.info("ledger.added", extra={"storage_key": self.key, "entity_id": entity_id, "count": len(self.items)})
        return self._require(entity_id, "add")

    def update(self, entity_id: str, partial: Mapping[str, Any] | BaseModel) -> T:
        rows = self._read()
        index = next((position for position, row in enumerate(rows) if str(row.get("id")) == entity_id), None)
        if index is None:
            raise NotFoundError(entity_id, entity_type=self.model.__name__.lower(), operation="update")

        rows[index] = {**rows[index], **self._payload(partial), "updated_at": self.clock().isoformat()}
        self._write(rows, "update")
        self.load()
        return self._require(entity_id, "update")

    def remove(self, entity_id: str) -> None:
        rows = self._read()
        remaining = [row for row in rows if str(row.get("id")) != entity_id]
        if len(remaining) != len(rows):
            self._write(remaining, "remove")
        self.load()

    def _next_id(self) -> str:
        candidate = int(self.clock().timestamp() * 1000)
        if candidate <= self._last_id:
            candidate = self._last_id + 1
        self._last_id = candidate
        return str(candidate)

    def _payload(self, data: Mapping[str, Any] | BaseModel) -> dict[str, Any]:
        if isinstance(data, BaseModel):
            payload = data.model_dump(exclude_unset=True)
        else:
            payload = dict(data)
        for field in IDENTITY_FIELDS:
            payload.pop(field, None)
        return to_jsonable_python(payload)

    def _read(self) -> list[dict[str, Any]]:
        stored = self.kv.get(self.key)
        if not stored:
            return []
        rows = json.loads(stored)
        if not isinstance(rows, list):
            raise ValueError(f"ledger slot {self.key!r} does not hold a JSON array")
        return [row for row in rows if isinstance(row, dict)]

    def _write(self, rows: list[dict[str, Any]], operation: str) -> None:
        self.kv.set(self.key, json.dumps(rows, default=str))
        observe_ledger_write(storage_key=self.key, operation=operation)

    def _require(self, entity_id: str, operation: str) -> T:
        item = self.get(entity_id)
        if item is None:
            raise NotFoundError(entity_id, entity_type=self.model.__name__.lower(), operation=operation)
        return item
