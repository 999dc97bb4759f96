from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any

from pydantic import BaseModel

from crm_store.crm.schemas import (
    EMBEDDED_FIELDS,
    ENTITY_MODELS,
    FOREIGN_KEY_FIELDS,
    IDENTITY_FIELDS,
    RELATIONS,
    EntityRecord,
    EntityType,
)


Resolver = Callable[[EntityType, str], EntityRecord | None]

WIRE_ID_FIELD = "_id"


def wire_id(value: Any) -> str | None:
    """Return the identifier of a bare id or an embedded wire object."""
    if value is None:
        return None
    if isinstance(value, Mapping):
        raw = value.get(WIRE_ID_FIELD) or value.get("id")
        return str(raw) if raw not in (None, "") else None
    if isinstance(value, BaseModel):
        raw = getattr(value, "id", None)
        return str(raw) if raw not in (None, "") else None
    text = str(value).strip()
    return text or None


def normalize_record(raw: Mapping[str, Any]) -> dict[str, Any]:
    data = dict(raw)
    identifier = data.pop(WIRE_ID_FIELD, None) or data.get("id")
    if identifier is not None:
        data["id"] = str(identifier)
    for field in FOREIGN_KEY_FIELDS:
        if field in data:
            data[field] = wire_id(data[field])
    return data


def to_entity(entity_type: EntityType, raw: Mapping[str, Any], resolve: Resolver) -> EntityRecord:
    data = normalize_record(raw)
    for attr in RELATIONS.get(entity_type, {}):
        data.pop(attr, None)
    record = ENTITY_MODELS[entity_type].model_validate(data)
    return attach_relations(entity_type, record, resolve)


def attach_relations(entity_type: EntityType, record: EntityRecord, resolve: Resolver) -> EntityRecord:
    relations = RELATIONS.get(entity_type)
    if not relations:
        return record

    updates: dict[str, Any] = {}
    for attr, (fk_field, target_type) in relations.items():
        fk_value = getattr(record, fk_field, None)
        snapshot = resolve(target_type, fk_value) if fk_value else None
        updates[attr] = snapshot.model_copy(deep=True) if snapshot is not None else None
    return record.model_copy(update=updates)


def strip_input(data: Mapping[str, Any] | BaseModel) -> dict[str, Any]:
    if isinstance(data, BaseModel):
        payload = data.model_dump(exclude_unset=True)
    else:
        payload = dict(data)

    for field in IDENTITY_FIELDS | EMBEDDED_FIELDS:
        payload.pop(field, None)
    for field in FOREIGN_KEY_FIELDS:
        if field in payload:
            payload[field] = wire_id(payload[field])
    return payload
