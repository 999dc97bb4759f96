from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterator, Mapping
from datetime import datetime, timezone
from typing import Any, Generic, TypeVar

from opentelemetry import trace
from pydantic import BaseModel, ValidationError

from crm_store.core.events import CACHE_CHANGED, InProcessEventBus
from crm_store.crm.aggregates import Aggregates, compute_aggregates
from crm_store.crm.client import DUPLICATE, NOT_FOUND, Backend
from crm_store.crm.concurrency import CancelToken, KeyedMutationQueue
from crm_store.crm.errors import DuplicateError, NotFoundError, StoreError, TransportError
from crm_store.crm.ledger import LocalLedger
from crm_store.crm.normalize import attach_relations, normalize_record, strip_input, to_entity
from crm_store.crm.schemas import (
    IDENTITY_FIELDS,
    RELATIONS,
    Activity,
    Company,
    Competitor,
    Contact,
    CRMSettings,
    DuplicateSummary,
    EntityRecord,
    EntityType,
    Envelope,
    Expense,
    Lead,
    Opportunity,
)
from crm_store.crm.selection import RelationshipSelector
from crm_store.metrics import observe_cache_fetch, observe_cache_mutation


logger = logging.getLogger("crm_store.cache")
tracer = trace.get_tracer("crm_store.cache")

T = TypeVar("T", bound=EntityRecord)

# Referenced types load first so denormalization can resolve against them.
LOAD_ORDER = (
    EntityType.COMPANY,
    EntityType.CONTACT,
    EntityType.OPPORTUNITY,
    EntityType.ACTIVITY,
    EntityType.EXPENSE,
    EntityType.COMPETITOR,
)

DEFAULT_SECTORS = ["Technology", "Healthcare", "Finance", "Manufacturing", "Energy", "Education", "Retail", "Media"]
DEFAULT_ACTIVITY_TYPES = ["Call", "Email", "Meeting", "Demo", "Proposal", "Follow-up"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def default_settings(now: datetime) -> CRMSettings:
    return CRMSettings(
        id="default",
        user_name="Demo User",
        user_email="demo@example.com",
        sectors=list(DEFAULT_SECTORS),
        activity_types=list(DEFAULT_ACTIVITY_TYPES),
        created_at=now,
        updated_at=now,
    )


class EntityCollection(Generic[T]):
    """Ordered records plus an id index for one entity type.

    ``items`` and ``by_id`` are always swapped or edited together so they hold
    the same set of ids.
    """

    def __init__(self, store: Store, entity_type: EntityType, model: type[T]) -> None:
        self._store = store
        self.entity_type = entity_type
        self.model = model
        self.items: list[T] = []
        self.by_id: dict[str, T] = {}
        self.loaded = False
        self.last_error: str | None = None
        self._inflight: asyncio.Future[bool] | None = None
        self._pending: dict[str, T | None] | None = None
        self._pending_created: list[str] = []

    def __len__(self) -> int:
        return len(self.items)

    def __iter__(self) -> Iterator[T]:
        return iter(list(self.items))

    def __contains__(self, entity_id: object) -> bool:
        return entity_id in self.by_id

    def get(self, entity_id: str) -> T | None:
        return self.by_id.get(entity_id)

    def ids(self) -> list[str]:
        return [item.id for item in self.items]

    async def fetch_all(self, *, force: bool = False, cancel: CancelToken | None = None) -> bool:
        """Load the full collection once per session.

        Concurrent non-forced callers share the list call already in flight. A
        forced call waits for it and then issues its own. Failures are
        absorbed: the collection is left as it was, ``loaded`` stays False and
        ``last_error`` carries the reason.
        """
        entity_label = self.entity_type.value
        if self.loaded and not force:
            observe_cache_fetch(entity_label, "hit")
            logger.debug("cache.fetch.skipped", extra={"entity_type": entity_label})
            return True

        running = self._inflight
        if running is not None and not running.done() and not force:
            observe_cache_fetch(entity_label, "joined")
            return await asyncio.shield(running)
        while running is not None and not running.done():
            await asyncio.wait([running])
            running = self._inflight

        task = asyncio.ensure_future(self._load(force=force, cancel=cancel))
        self._inflight = task
        task.add_done_callback(self._clear_inflight)
        return await asyncio.shield(task)

    def _clear_inflight(self, task: asyncio.Future[bool]) -> None:
        if self._inflight is task:
            self._inflight = None

    async def _load(self, *, force: bool, cancel: CancelToken | None) -> bool:
        entity_label = self.entity_type.value
        self._pending = {}
        self._pending_created = []
        try:
            with tracer.start_as_current_span("crm.cache.fetch_all") as span:
                span.set_attribute("entity_type", entity_label)
                span.set_attribute("force", force)
                envelope = await self._store.backend.list(
                    self.entity_type, self._store.list_filters.get(self.entity_type)
                )

                if cancel is not None and cancel.cancelled:
                    observe_cache_fetch(entity_label, "abandoned")
                    logger.info("cache.fetch.abandoned", extra={"entity_type": entity_label})
                    return False

                records: list[T] | None = None
                error = envelope.error or "fetch failed"
                if envelope.success:
                    try:
                        records = [self._ingest(raw) for raw in self._rows(envelope)]
                    except (ValidationError, TypeError, ValueError, StoreError) as exc:
                        error = f"malformed {entity_label} payload: {exc}"

                if records is None:
                    self.loaded = False
                    self.last_error = error
                    span.set_attribute("outcome", "failed")
                    observe_cache_fetch(entity_label, "failed")
                    logger.warning("cache.fetch.failed", extra={"entity_type": entity_label, "error": error})
                    return False

                self._replace_all(self._overlay_pending(records))
                self.loaded = True
                self.last_error = None
                span.set_attribute("count", len(self.items))
        finally:
            self._pending = None
            self._pending_created = []

        observe_cache_fetch(entity_label, "loaded")
        logger.info("cache.fetch.loaded", extra={"entity_type": entity_label, "count": len(self.items)})
        self._store.recompute_aggregates()
        self._store.publish_change(self.entity_type, "fetch")
        return True

    def _overlay_pending(self, records: list[T]) -> list[T]:
        # Local writes acknowledged while the list call was out win over the listed rows.
        pending = self._pending or {}
        if not pending:
            return records
        listed = {record.id for record in records}
        merged: list[T] = []
        for record in records:
            if record.id not in pending:
                merged.append(record)
            elif pending[record.id] is not None:
                merged.append(pending[record.id])  # type: ignore[arg-type]
        head = [
            pending[entity_id]
            for entity_id in reversed(self._pending_created)
            if entity_id not in listed and pending.get(entity_id) is not None
        ]
        return head + merged  # type: ignore[operator]

    def _note_pending(self, entity_id: str, record: T | None, *, created: bool = False) -> None:
        if self._pending is None:
            return
        self._pending[entity_id] = record
        if created:
            self._pending_created.append(entity_id)

    async def add(self, data: Mapping[str, Any] | BaseModel) -> T:
        payload = strip_input(data)
        with tracer.start_as_current_span("crm.cache.add") as span:
            span.set_attribute("entity_type", self.entity_type.value)
            envelope = await self._store.backend.create(self.entity_type, payload)
            if not envelope.success:
                raise self._store.error_from(envelope, self.entity_type, "create")
            record = self._ingest(envelope.data)
            span.set_attribute("entity_id", record.id)

        self._insert_head(record)
        self._note_pending(record.id, record, created=True)
        self._after_mutation("create", record.id)
        return record

    async def update(self, entity_id: str, partial: Mapping[str, Any] | BaseModel) -> T:
        payload = strip_input(partial)
        async with self._store.mutations.slot((self.entity_type, entity_id)):
            with tracer.start_as_current_span("crm.cache.update") as span:
                span.set_attribute("entity_type", self.entity_type.value)
                span.set_attribute("entity_id", entity_id)
                envelope = await self._store.backend.update(self.entity_type, entity_id, payload)
                if not envelope.success:
                    raise self._store.error_from(envelope, self.entity_type, "update", entity_id=entity_id)
                record = self._ingest(envelope.data)

            self._replace_at(entity_id, record)
            self._note_pending(entity_id, record)
            self._after_mutation("update", entity_id)
            return record

    async def remove(self, entity_id: str) -> None:
        async with self._store.mutations.slot((self.entity_type, entity_id)):
            with tracer.start_as_current_span("crm.cache.remove") as span:
                span.set_attribute("entity_type", self.entity_type.value)
                span.set_attribute("entity_id", entity_id)
                envelope = await self._store.backend.delete(self.entity_type, entity_id)
                if not envelope.success and envelope.code != NOT_FOUND:
                    raise self._store.error_from(envelope, self.entity_type, "delete", entity_id=entity_id)

            self._note_pending(entity_id, None)
            if self._drop(entity_id):
                self._after_mutation("delete", entity_id)
            else:
                observe_cache_mutation(self.entity_type.value, "delete", "noop")

    def refresh_relations(self) -> None:
        if self.entity_type not in RELATIONS:
            return
        self._replace_all(
            [attach_relations(self.entity_type, item, self._store.resolve) for item in self.items]  # type: ignore[misc]
        )

    def ingest_batch(self, envelope: Envelope) -> list[T]:
        """Prepend the records a bulk import created, keeping the backend's order."""
        created = [self._ingest(raw) for raw in self._rows(envelope)]
        for record in reversed(created):
            self._insert_head(record)
            self._note_pending(record.id, record, created=True)
        self._after_mutation("import", None)
        return created

    def _rows(self, envelope: Envelope) -> list[Mapping[str, Any]]:
        if envelope.data is None:
            return []
        if not isinstance(envelope.data, list):
            raise TypeError(f"expected a list of {self.entity_type.value} records")
        return envelope.data

    def _ingest(self, raw: Any) -> T:
        if not isinstance(raw, Mapping):
            raise TransportError(
                f"backend returned no {self.entity_type.value} record",
                entity_type=self.entity_type.value,
            )
        return to_entity(self.entity_type, raw, self._store.resolve)  # type: ignore[return-value]

    def _replace_all(self, records: list[T]) -> None:
        items: list[T] = []
        by_id: dict[str, T] = {}
        for record in records:
            if record.id in by_id:
                continue
            items.append(record)
            by_id[record.id] = record
        self.items = items
        self.by_id = by_id

    def _insert_head(self, record: T) -> None:
        if record.id in self.by_id:
            self.items = [item for item in self.items if item.id != record.id]
        self.items.insert(0, record)
        self.by_id[record.id] = record

    def _replace_at(self, entity_id: str, record: T) -> None:
        if entity_id not in self.by_id:
            return
        self.items = [record if item.id == entity_id else item for item in self.items]
        del self.by_id[entity_id]
        self.by_id[record.id] = record

    def _drop(self, entity_id: str) -> bool:
        if entity_id not in self.by_id:
            return False
        self.items = [item for item in self.items if item.id != entity_id]
        del self.by_id[entity_id]
        return True

    def _after_mutation(self, operation: str, entity_id: str | None) -> None:
        observe_cache_mutation(self.entity_type.value, operation, "success")
        logger.info(
            "cache.mutation",
            extra={
                "entity_type": self.entity_type.value,
                "operation": operation,
                "entity_id": entity_id,
                "count": len(self.items),
            },
        )
        self._store.recompute_aggregates()
        self._store.publish_change(self.entity_type, operation, entity_id)


class Store:
    """Process-level cache of CRM entities backed by a ``Backend`` gateway.

    Construct one per session (or per test) and hand it to the UI layer; the
    store never reaches for module globals.
    """

    def __init__(
        self,
        backend: Backend,
        *,
        ledger: LocalLedger[Lead] | None = None,
        competitor_staging: LocalLedger[Competitor] | None = None,
        clock: Callable[[], datetime] | None = None,
        list_filters: Mapping[EntityType | str, Mapping[str, Any]] | None = None,
        events: InProcessEventBus | None = None,
    ) -> None:
        self.backend = backend
        self.clock = clock or utcnow
        self.list_filters = {EntityType(key): dict(value) for key, value in (list_filters or {}).items()}
        self.events = events or InProcessEventBus()
        self.mutations = KeyedMutationQueue()

        self.contacts: EntityCollection[Contact] = EntityCollection(self, EntityType.CONTACT, Contact)
        self.companies: EntityCollection[Company] = EntityCollection(self, EntityType.COMPANY, Company)
        self.opportunities: EntityCollection[Opportunity] = EntityCollection(self, EntityType.OPPORTUNITY, Opportunity)
        self.activities: EntityCollection[Activity] = EntityCollection(self, EntityType.ACTIVITY, Activity)
        self.expenses: EntityCollection[Expense] = EntityCollection(self, EntityType.EXPENSE, Expense)
        self.competitors: EntityCollection[Competitor] = EntityCollection(self, EntityType.COMPETITOR, Competitor)
        self._collections: dict[EntityType, EntityCollection[Any]] = {
            EntityType.CONTACT: self.contacts,
            EntityType.COMPANY: self.companies,
            EntityType.OPPORTUNITY: self.opportunities,
            EntityType.ACTIVITY: self.activities,
            EntityType.EXPENSE: self.expenses,
            EntityType.COMPETITOR: self.competitors,
        }

        self.aggregates = Aggregates()
        self.settings: CRMSettings | None = None
        self.settings_loaded = False
        self.loading = False
        self.leads = ledger
        self.competitor_staging = competitor_staging
        self.selection = RelationshipSelector(self)

    def collection(self, entity_type: EntityType | str) -> EntityCollection[Any]:
        return self._collections[EntityType(entity_type)]

    @property
    def loaded(self) -> dict[str, bool]:
        return {entity_type.value: collection.loaded for entity_type, collection in self._collections.items()}

    def resolve(self, entity_type: EntityType, entity_id: str) -> EntityRecord | None:
        return self._collections[entity_type].by_id.get(entity_id)

    def recompute_aggregates(self) -> Aggregates:
        self.aggregates = compute_aggregates(
            contacts=self.contacts.items,
            companies=self.companies.items,
            opportunities=self.opportunities.items,
            activities=self.activities.items,
            expenses=self.expenses.items,
            competitors=self.competitors.items,
            today=self.clock().astimezone(timezone.utc).date(),
        )
        return self.aggregates

    def refresh_relations(self, entity_type: EntityType | str | None = None) -> None:
        """Re-take embedded snapshots from the current cache.

        Snapshots are point-in-time copies and are not refreshed on their own
        when the referenced record changes.
        """
        targets = [EntityType(entity_type)] if entity_type is not None else list(LOAD_ORDER)
        for target in LOAD_ORDER:
            if target in targets:
                self._collections[target].refresh_relations()
        self.publish_change(targets[0] if len(targets) == 1 else None, "refresh_relations")

    async def bootstrap(self, *, cancel: CancelToken | None = None) -> dict[str, bool]:
        results: dict[str, bool] = {}
        for entity_type in LOAD_ORDER:
            results[entity_type.value] = await self._collections[entity_type].fetch_all(cancel=cancel)
        if cancel is None or not cancel.cancelled:
            results["settings"] = await self.fetch_settings()
        if self.leads is not None:
            self.leads.load()
        if self.competitor_staging is not None:
            self.competitor_staging.load()
        return results

    async def fetch_settings(self, force: bool = False) -> bool:
        if self.settings_loaded and not force:
            return True

        envelope = await self.backend.get_settings()
        if envelope.success and isinstance(envelope.data, Mapping):
            self.settings = CRMSettings.model_validate(normalize_record(envelope.data))
            self.settings_loaded = True
            logger.info("cache.settings.loaded", extra={"entity_type": "settings"})
            self.publish_change(None, "settings")
            return True

        self.settings = default_settings(self.clock())
        self.settings_loaded = False
        logger.warning("cache.settings.defaulted", extra={"entity_type": "settings", "error": envelope.error})
        return False

    async def update_settings(self, partial: Mapping[str, Any] | BaseModel) -> CRMSettings:
        payload = strip_input(partial)
        envelope = await self.backend.update_settings(payload)
        if not envelope.success or not isinstance(envelope.data, Mapping):
            raise self.error_from(envelope, "settings", "update")
        self.settings = CRMSettings.model_validate(normalize_record(envelope.data))
        self.settings_loaded = True
        self.publish_change(None, "settings")
        return self.settings

    async def import_records(
        self, entity_type: EntityType | str, records: list[Mapping[str, Any] | BaseModel]
    ) -> list[EntityRecord]:
        """Submit a batch through the bulk endpoint and prepend what the backend created."""
        collection = self.collection(entity_type)
        envelope = await self.backend.import_batch(collection.entity_type, [strip_input(record) for record in records])
        if not envelope.success:
            raise self.error_from(envelope, collection.entity_type, "import")
        return collection.ingest_batch(envelope)

    async def import_data(self, data: Mapping[EntityType | str, list[Mapping[str, Any]]]) -> dict[str, int]:
        """Bulk-import several entity types, then force-refresh each one touched."""
        submitted: dict[str, int] = {}
        self.loading = True
        try:
            for key, records in data.items():
                entity_type = EntityType(key)
                if not records:
                    continue
                envelope = await self.backend.import_batch(entity_type, [strip_input(record) for record in records])
                if not envelope.success:
                    raise self.error_from(envelope, entity_type, "import")
                submitted[entity_type.value] = len(records)
        finally:
            # Batches the backend accepted are refreshed even when a later one failed.
            for entity_type in LOAD_ORDER:
                if entity_type.value in submitted:
                    await self._collections[entity_type].fetch_all(force=True)
            self.loading = False
        return submitted

    def publish_change(self, entity_type: EntityType | None, operation: str, entity_id: str | None = None) -> None:
        self.events.publish(
            CACHE_CHANGED,
            {
                "entity_type": entity_type.value if entity_type is not None else None,
                "operation": operation,
                "id": entity_id,
            },
        )

    def error_from(
        self,
        envelope: Envelope,
        entity_type: EntityType | str,
        operation: str,
        *,
        entity_id: str | None = None,
    ) -> StoreError:
        entity_label = str(entity_type)
        observe_cache_mutation(entity_label, operation, envelope.code or "transport")
        if operation == "create" and (envelope.code == DUPLICATE or envelope.duplicate is not None):
            duplicate = DuplicateSummary.model_validate(
                {key: value for key, value in normalize_record(envelope.duplicate or {}).items() if key not in IDENTITY_FIELDS - {"id"}}
            )
            logger.info(
                "cache.duplicate",
                extra={"entity_type": entity_label, "operation": operation, "entity_id": duplicate.id},
            )
            return DuplicateError(duplicate, entity_type=entity_label, message=envelope.error)
        if envelope.code == NOT_FOUND and entity_id is not None:
            return NotFoundError(entity_id, entity_type=entity_label, operation=operation)
        error = envelope.error or f"Failed to {operation} {entity_label}"
        logger.warning("cache.mutation.failed", extra={"entity_type": entity_label, "operation": operation, "error": error})
        return TransportError(error, entity_type=entity_label, operation=operation)
