from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from crm_store.api.routes import router as api_router
from crm_store.core.config import Settings, get_settings
from crm_store.core.events import CACHE_CHANGED, InProcessEventBus, InternalEvent
from crm_store.crm.client import Backend
from crm_store.crm.http_client import HttpBackend
from crm_store.crm.kv import KeyValueStore, SqlKeyValueStore
from crm_store.crm.ledger import LocalLedger
from crm_store.crm.schemas import Competitor, EntityType, Lead
from crm_store.crm.store import Store
from crm_store.logging import configure_logging
from crm_store.middleware.correlation_id import CorrelationIdMiddleware
from crm_store.middleware.request_logging import RequestLoggingMiddleware
from crm_store.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("crm_store.lifecycle")


def _on_cache_changed(event: InternalEvent) -> None:
    logger.debug("cache_event", extra={"entity_type": event.payload.get("entity_type"), "operation": event.payload.get("operation")})


def build_store(settings: Settings, backend: Backend, kv: KeyValueStore) -> Store:
    events = InProcessEventBus()
    events.subscribe(CACHE_CHANGED, _on_cache_changed)
    return Store(
        backend,
        ledger=LocalLedger(kv, settings.leads_storage_key, Lead),
        competitor_staging=LocalLedger(kv, settings.competitors_staging_key, Competitor),
        list_filters={EntityType.CONTACT: {"limit": settings.contacts_fetch_limit}},
        events=events,
    )


def create_app(
    settings: Settings | None = None,
    *,
    backend: Backend | None = None,
    kv: KeyValueStore | None = None,
) -> FastAPI:
    """Build the UI-facing app; the lifespan owns the store for the app's lifetime.

    ``backend`` and ``kv`` are injectable so tests can run against the stub
    backend and an in-memory slot store.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned_backend = backend is None
        gateway = backend if backend is not None else HttpBackend.from_settings(settings)
        slots = kv if kv is not None else SqlKeyValueStore.from_url(settings.local_store_url)

        store = build_store(settings, gateway, slots)
        app.state.store = store
        logger.info("store.started", extra={"status": "started"})
        if settings.bootstrap_on_startup:
            loaded = await store.bootstrap()
            logger.info("store.bootstrapped", extra={"count": sum(1 for ok in loaded.values() if ok)})
        try:
            yield
        finally:
            app.state.store = None
            if owned_backend and isinstance(gateway, HttpBackend):
                await gateway.aclose()
            if kv is None and isinstance(slots, SqlKeyValueStore):
                slots.dispose()
            logger.info("store.stopped", extra={"status": "stopped"})

    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(CorrelationIdMiddleware)
    app.include_router(api_router)

    if settings.otel_enabled:
        setup_otel("crm-store", True)

    if not getattr(app, "_is_instrumented_by_opentelemetry", False):
        FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
    return app


app = create_app()
