from __future__ import annotations

import asyncio
import copy
import uuid
from collections import Counter
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, Protocol

from opentelemetry import trace

from crm_store.context import get_correlation_id
from crm_store.crm.schemas import EntityType, Envelope


tracer = trace.get_tracer("crm_store.crm.client")

NOT_FOUND = "not_found"
DUPLICATE = "duplicate"
TRANSPORT = "transport"

SETTINGS_RESOURCE = "settings"


class Backend(Protocol):
    async def list(self, entity_type: EntityType, filters: Mapping[str, Any] | None = None) -> Envelope: ...

    async def get(self, entity_type: EntityType, entity_id: str) -> Envelope: ...

    async def create(self, entity_type: EntityType, payload: Mapping[str, Any]) -> Envelope: ...

    async def update(self, entity_type: EntityType, entity_id: str, payload: Mapping[str, Any]) -> Envelope: ...

    async def delete(self, entity_type: EntityType, entity_id: str) -> Envelope: ...

    async def contacts_by_company(self, company_id: str) -> Envelope: ...

    async def import_batch(self, entity_type: EntityType, records: list[Mapping[str, Any]]) -> Envelope: ...

    async def get_settings(self) -> Envelope: ...

    async def update_settings(self, payload: Mapping[str, Any]) -> Envelope: ...


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_object_id() -> str:
    return uuid.uuid4().hex[:24]


class StubBackend:
    """In-memory backend speaking the remote API's wire format.

    Records are keyed by ``_id`` and contacts come back with ``company_id``
    populated as an embedded object, the way the remote service returns them.
    """

    duplicate_keys: dict[EntityType, str] = {
        EntityType.COMPANY: "name",
        EntityType.CONTACT: "email",
        EntityType.COMPETITOR: "name",
    }

    def __init__(self, seed: Mapping[EntityType, list[Mapping[str, Any]]] | None = None) -> None:
        self.records: dict[EntityType, list[dict[str, Any]]] = {entity_type: [] for entity_type in EntityType}
        self.settings: dict[str, Any] | None = None
        self.calls: Counter[tuple[str, str]] = Counter()
        self.latency: dict[str, float] = {}
        self._failures: dict[tuple[str, str | None], list[Envelope]] = {}
        for entity_type, rows in (seed or {}).items():
            for row in rows:
                self.insert(EntityType(entity_type), row)

    def insert(self, entity_type: EntityType, row: Mapping[str, Any]) -> dict[str, Any]:
        now = utcnow().isoformat()
        record = {key: copy.deepcopy(value) for key, value in row.items() if key != "id"}
        record["_id"] = str(row.get("_id") or row.get("id") or _new_object_id())
        record.setdefault("created_at", now)
        record.setdefault("updated_at", now)
        self.records[entity_type].append(record)
        return record

    def fail(
        self,
        operation: str,
        entity_type: EntityType | None = None,
        *,
        error: str = "Internal server error",
        code: str | None = None,
        times: int = 1,
    ) -> None:
        key = (operation, str(entity_type) if entity_type else None)
        envelope = Envelope(success=False, error=error, code=code)
        self._failures.setdefault(key, []).extend([envelope] * times)

    def call_count(self, operation: str, entity_type: EntityType | str | None = None) -> int:
        if entity_type is None:
            return sum(count for (op, _), count in self.calls.items() if op == operation)
        return self.calls[(operation, str(entity_type))]

    async def list(self, entity_type: EntityType, filters: Mapping[str, Any] | None = None) -> Envelope:
        async def handler() -> Envelope:
            rows = [self._to_wire(entity_type, row) for row in self.records[entity_type]]
            limit = (filters or {}).get("limit")
            if isinstance(limit, int) and limit > 0:
                rows = rows[:limit]
            return Envelope(success=True, data=rows)

        return await self._dispatch("list", entity_type, handler)

    async def get(self, entity_type: EntityType, entity_id: str) -> Envelope:
        async def handler() -> Envelope:
            row = self._find(entity_type, entity_id)
            if row is None:
                return self._not_found(entity_type, entity_id)
            return Envelope(success=True, data=self._to_wire(entity_type, row))

        return await self._dispatch("get", entity_type, handler)

    async def create(self, entity_type: EntityType, payload: Mapping[str, Any]) -> Envelope:
        async def handler() -> Envelope:
            existing = self._find_duplicate(entity_type, payload)
            if existing is not None:
                label = entity_type.value.capitalize()
                return Envelope(
                    success=False,
                    error=f"{label} already exists in the system.",
                    duplicate=self._to_wire(entity_type, existing),
                    code=DUPLICATE,
                )
            row = self.insert(entity_type, payload)
            return Envelope(success=True, data=self._to_wire(entity_type, row))

        return await self._dispatch("create", entity_type, handler)

    async def update(self, entity_type: EntityType, entity_id: str, payload: Mapping[str, Any]) -> Envelope:
        async def handler() -> Envelope:
            row = self._find(entity_type, entity_id)
            if row is None:
                return self._not_found(entity_type, entity_id)
            for key, value in payload.items():
                if key in {"_id", "id", "created_at"}:
                    continue
                row[key] = copy.deepcopy(value)
            row["updated_at"] = utcnow().isoformat()
            return Envelope(success=True, data=self._to_wire(entity_type, row))

        return await self._dispatch("update", entity_type, handler)

    async def delete(self, entity_type: EntityType, entity_id: str) -> Envelope:
        async def handler() -> Envelope:
            row = self._find(entity_type, entity_id)
            if row is None:
                return self._not_found(entity_type, entity_id)
            self.records[entity_type].remove(row)
            return Envelope(success=True)

        return await self._dispatch("delete", entity_type, handler)

    async def contacts_by_company(self, company_id: str) -> Envelope:
        async def handler() -> Envelope:
            rows = [
                self._to_wire(EntityType.CONTACT, row)
                for row in self.records[EntityType.CONTACT]
                if str(row.get("company_id") or "") == company_id
            ]
            return Envelope(success=True, data=rows)

        return await self._dispatch("contacts_by_company", EntityType.CONTACT, handler)

    async def import_batch(self, entity_type: EntityType, records: list[Mapping[str, Any]]) -> Envelope:
        async def handler() -> Envelope:
            created = [self._to_wire(entity_type, self.insert(entity_type, record)) for record in records]
            return Envelope(success=True, data=created)

        return await self._dispatch("import_batch", entity_type, handler)

    async def get_settings(self) -> Envelope:
        async def handler() -> Envelope:
            if self.settings is None:
                return Envelope(success=False, error="settings not found", code=NOT_FOUND)
            return Envelope(success=True, data=copy.deepcopy(self.settings))

        return await self._dispatch("get_settings", SETTINGS_RESOURCE, handler)

    async def update_settings(self, payload: Mapping[str, Any]) -> Envelope:
        async def handler() -> Envelope:
            now = utcnow().isoformat()
            current = self.settings or {"_id": _new_object_id(), "created_at": now}
            current.update({key: copy.deepcopy(value) for key, value in payload.items() if key not in {"_id", "id"}})
            current["updated_at"] = now
            self.settings = current
            return Envelope(success=True, data=copy.deepcopy(current))

        return await self._dispatch("update_settings", SETTINGS_RESOURCE, handler)

    async def _dispatch(self, operation: str, entity_type: EntityType | str, handler) -> Envelope:  # type: ignore[no-untyped-def]
        with tracer.start_as_current_span(f"crm.stub.{operation}") as span:
            span.set_attribute("entity_type", str(entity_type))
            span.set_attribute("correlation_id", get_correlation_id() or "")
            self.calls[(operation, str(entity_type))] += 1
            delay = self.latency.get(operation)
            if delay:
                await asyncio.sleep(delay)
            failure = self._pop_failure(operation, str(entity_type))
            if failure is not None:
                return failure
            return await handler()

    def _pop_failure(self, operation: str, entity_type: str) -> Envelope | None:
        for key in ((operation, entity_type), (operation, None)):
            queued = self._failures.get(key)
            if queued:
                return queued.pop(0)
        return None

    def _find(self, entity_type: EntityType, entity_id: str) -> dict[str, Any] | None:
        for row in self.records[entity_type]:
            if row["_id"] == entity_id:
                return row
        return None

    def _find_duplicate(self, entity_type: EntityType, payload: Mapping[str, Any]) -> dict[str, Any] | None:
        key = self.duplicate_keys.get(entity_type)
        value = payload.get(key) if key else None
        if not isinstance(value, str) or not value.strip():
            return None
        needle = value.strip().lower()
        for row in self.records[entity_type]:
            existing = row.get(key)
            if isinstance(existing, str) and existing.strip().lower() == needle:
                return row
        return None

    def _not_found(self, entity_type: EntityType, entity_id: str) -> Envelope:
        return Envelope(success=False, error=f"{entity_type.value} {entity_id} not found", code=NOT_FOUND)

    def _to_wire(self, entity_type: EntityType, row: Mapping[str, Any]) -> dict[str, Any]:
        wire = copy.deepcopy(dict(row))
        if entity_type in {EntityType.CONTACT, EntityType.OPPORTUNITY}:
            company = self._find(EntityType.COMPANY, str(wire.get("company_id") or ""))
            if company is not None:
                wire["company_id"] = {
                    "_id": company["_id"],
                    "name": company.get("name"),
                    "industry": company.get("industry"),
                }
        if entity_type == EntityType.OPPORTUNITY:
            contact = self._find(EntityType.CONTACT, str(wire.get("contact_id") or ""))
            if contact is not None:
                wire["contact_id"] = self._to_wire(EntityType.CONTACT, contact)
        return wire
