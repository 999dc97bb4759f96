from crm_store.crm.client import Backend, StubBackend
from crm_store.crm.errors import DuplicateError, NotFoundError, StoreError, TransportError
from crm_store.crm.http_client import HttpBackend
from crm_store.crm.ledger import LocalLedger
from crm_store.crm.schemas import EntityType
from crm_store.crm.store import EntityCollection, Store

__all__ = [
    "Backend",
    "StubBackend",
    "HttpBackend",
    "Store",
    "EntityCollection",
    "LocalLedger",
    "EntityType",
    "StoreError",
    "TransportError",
    "DuplicateError",
    "NotFoundError",
]
