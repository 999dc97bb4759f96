from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from crm_store.core.events import SELECTION_CHANGED
from crm_store.crm.concurrency import CancelToken
from crm_store.crm.errors import NotFoundError, TransportError
from crm_store.crm.normalize import to_entity
from crm_store.crm.schemas import Company, Contact, EntityType, SelectionRead

if TYPE_CHECKING:
    from crm_store.crm.store import Store


logger = logging.getLogger("crm_store.cache")


class RelationshipSelector:
    """Current company/contact selection and the lists related to it.

    The related lists are satellite data and never touch the store's primary
    collections.
    """

    def __init__(self, store: Store) -> None:
        self._store = store
        self.selected_company: Company | None = None
        self.selected_contact: Contact | None = None
        self.related_contacts: list[Contact] = []
        self.related_companies: list[Company] = []
        self.last_error: str | None = None
        self._generation = 0

    def select_company(self, company: Company | str | None) -> Company | None:
        if isinstance(company, str):
            found = self._store.companies.get(company)
            if found is None:
                raise NotFoundError(company, entity_type=EntityType.COMPANY.value, operation="select")
            company = found
        self.selected_company = company
        self._publish("select_company")
        return company

    def select_contact(self, contact: Contact | str | None) -> Contact | None:
        if isinstance(contact, str):
            found = self._store.contacts.get(contact)
            if found is None:
                raise NotFoundError(contact, entity_type=EntityType.CONTACT.value, operation="select")
            contact = found
        self.selected_contact = contact
        self._publish("select_contact")
        return contact

    async def load_related_contacts(self, company_id: str, cancel: CancelToken | None = None) -> list[Contact]:
        """Replace ``related_contacts`` with the company's contacts.

        Each call takes a generation number; a response that arrives after a
        newer call was issued is dropped and the current list is returned.
        """
        self._generation += 1
        generation = self._generation
        envelope = await self._store.backend.contacts_by_company(company_id)

        if generation != self._generation or (cancel is not None and cancel.cancelled):
            logger.debug(
                "selection.stale_response",
                extra={"entity_type": EntityType.CONTACT.value, "entity_id": company_id},
            )
            return self.related_contacts

        if not envelope.success:
            self.related_contacts = []
            self.last_error = envelope.error or "failed to load related contacts"
            self._publish("load_related_contacts")
            raise TransportError(self.last_error, entity_type=EntityType.CONTACT.value, operation="contacts_by_company")

        self.related_contacts = [
            to_entity(EntityType.CONTACT, raw, self._store.resolve)  # type: ignore[misc]
            for raw in envelope.data or []
        ]
        self.last_error = None
        logger.info(
            "selection.related_loaded",
            extra={"entity_type": EntityType.CONTACT.value, "entity_id": company_id, "count": len(self.related_contacts)},
        )
        self._publish("load_related_contacts")
        return self.related_contacts

    def load_related_companies(self, contact_id: str) -> list[Company]:
        contact = self._store.contacts.get(contact_id)
        if contact is None:
            raise NotFoundError(contact_id, entity_type=EntityType.CONTACT.value, operation="load_related_companies")
        company = contact.company
        if company is None and contact.company_id:
            company = self._store.companies.get(contact.company_id)
        self.related_companies = [company] if company is not None else []
        self._publish("load_related_companies")
        return self.related_companies

    def clear(self) -> None:
        self._generation += 1
        self.selected_company = None
        self.selected_contact = None
        self.related_contacts = []
        self.related_companies = []
        self._publish("clear")

    def snapshot(self) -> SelectionRead:
        return SelectionRead(
            selected_company=self.selected_company,
            selected_contact=self.selected_contact,
            related_contacts=list(self.related_contacts),
            related_companies=list(self.related_companies),
        )

    def _publish(self, operation: str) -> None:
        self._store.events.publish(SELECTION_CHANGED, {"operation": operation})
