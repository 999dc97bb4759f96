from __future__ import annotations

import asyncio

import pytest

from crm_store.core.events import SELECTION_CHANGED, InternalEvent
from crm_store.crm.client import StubBackend
from crm_store.crm.errors import NotFoundError, TransportError
from crm_store.crm.schemas import EntityType, Envelope
from crm_store.crm.store import Store


SEED = {
    EntityType.COMPANY: [{"_id": "c1", "name": "Acme"}, {"_id": "c2", "name": "Globex"}],
    EntityType.CONTACT: [
        {"_id": "p1", "name": "Ann Lee", "company_id": "c1"},
        {"_id": "p2", "name": "Amir Saleh", "company_id": "c1"},
        {"_id": "p3", "name": "Bob Ray", "company_id": "c2"},
    ],
}


class SlowFirstBackend(StubBackend):
    """Answers the first related-contacts query after the second one."""

    def __init__(self) -> None:
        super().__init__(seed=SEED)
        self.delays = [0.05, 0.0]

    async def contacts_by_company(self, company_id: str) -> Envelope:
        delay = self.delays.pop(0) if self.delays else 0.0
        await asyncio.sleep(delay)
        return await super().contacts_by_company(company_id)


@pytest.fixture()
def backend() -> StubBackend:
    return StubBackend(seed=SEED)


@pytest.mark.asyncio
async def test_load_related_contacts_leaves_primary_cache_alone(backend: StubBackend) -> None:
    store = Store(backend)
    await store.companies.fetch_all()

    related = await store.selection.load_related_contacts("c1")

    assert [contact.id for contact in related] == ["p1", "p2"]
    assert related[0].company is not None and related[0].company.name == "Acme"
    assert store.contacts.loaded is False
    assert len(store.contacts) == 0


@pytest.mark.asyncio
async def test_latest_related_query_wins() -> None:
    backend = SlowFirstBackend()
    store = Store(backend)

    first, second = await asyncio.gather(
        store.selection.load_related_contacts("c1"),
        store.selection.load_related_contacts("c2"),
    )

    assert [contact.id for contact in second] == ["p3"]
    assert [contact.id for contact in store.selection.related_contacts] == ["p3"]
    assert first is store.selection.related_contacts


@pytest.mark.asyncio
async def test_failed_related_query_clears_list(backend: StubBackend) -> None:
    store = Store(backend)
    await store.selection.load_related_contacts("c1")
    backend.fail("contacts_by_company", EntityType.CONTACT, error="Backend unreachable")

    with pytest.raises(TransportError, match="Backend unreachable"):
        await store.selection.load_related_contacts("c2")

    assert store.selection.related_contacts == []
    assert store.selection.last_error == "Backend unreachable"


@pytest.mark.asyncio
async def test_select_is_a_pointer_assignment(backend: StubBackend) -> None:
    store = Store(backend)
    await store.bootstrap()
    events: list[InternalEvent] = []
    store.events.subscribe(SELECTION_CHANGED, events.append)

    company = store.selection.select_company("c2")
    contact = store.selection.select_contact(store.contacts.get("p1"))

    assert company is store.companies.get("c2")
    assert store.selection.selected_company is company
    assert store.selection.selected_contact is contact
    assert backend.call_count("contacts_by_company") == 0
    assert [event.payload["operation"] for event in events] == ["select_company", "select_contact"]


@pytest.mark.asyncio
async def test_select_unknown_id_raises(backend: StubBackend) -> None:
    store = Store(backend)
    await store.companies.fetch_all()

    with pytest.raises(NotFoundError):
        store.selection.select_company("missing")

    assert store.selection.selected_company is None


@pytest.mark.asyncio
async def test_related_companies_come_from_cached_contact(backend: StubBackend) -> None:
    store = Store(backend)
    await store.bootstrap()

    related = store.selection.load_related_companies("p3")

    assert [company.id for company in related] == ["c2"]
    assert backend.call_count("contacts_by_company") == 0

    store.selection.clear()
    snapshot = store.selection.snapshot()
    assert snapshot.related_companies == []
    assert snapshot.selected_company is None
