from __future__ import annotations

import httpx
import pytest
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from crm_store.context import reset_correlation_id, set_correlation_id
from crm_store.crm.client import StubBackend
from crm_store.crm.http_client import HttpBackend
from crm_store.crm.import_export import company_import_pipeline
from crm_store.crm.schemas import EntityType
from crm_store.crm.store import Store
from crm_store.otel import setup_inmemory_otel


@pytest.fixture()
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("crm-store")
    exporter.clear()
    return exporter


@pytest.mark.asyncio
async def test_fetch_and_mutation_spans(span_exporter: InMemorySpanExporter) -> None:
    store = Store(StubBackend(seed={EntityType.COMPANY: [{"_id": "c1", "name": "Acme"}]}))

    await store.companies.fetch_all()
    await store.companies.update("c1", {"name": "Acme Holdings"})

    spans = span_exporter.get_finished_spans()
    fetch_span = next(span for span in spans if span.name == "crm.cache.fetch_all")
    update_span = next(span for span in spans if span.name == "crm.cache.update")
    stub_span = next(span for span in spans if span.name == "crm.stub.list")

    assert fetch_span.attributes.get("entity_type") == "company"
    assert fetch_span.attributes.get("count") == 1
    assert update_span.attributes.get("entity_id") == "c1"
    assert stub_span.parent is not None
    assert stub_span.parent.span_id == fetch_span.context.span_id


@pytest.mark.asyncio
async def test_gateway_span_records_outcome_and_correlation_id(span_exporter: InMemorySpanExporter) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"success": False, "error": "Company not found"})

    token = set_correlation_id("span-corr-1")
    try:
        async with HttpBackend("http://crm.test/api", transport=httpx.MockTransport(handler)) as backend:
            await backend.get(EntityType.COMPANY, "missing")
    finally:
        reset_correlation_id(token)

    gateway_span = next(span for span in span_exporter.get_finished_spans() if span.name == "crm.gateway.get")
    assert gateway_span.attributes.get("outcome") == "not_found"
    assert gateway_span.attributes.get("http.status_code") == 404
    assert gateway_span.attributes.get("correlation_id") == "span-corr-1"


@pytest.mark.asyncio
async def test_import_run_span(span_exporter: InMemorySpanExporter) -> None:
    store = Store(StubBackend())

    await company_import_pipeline(store).run([{"Company Name": "Acme"}, {"Company Name": "Globex"}])

    import_span = next(span for span in span_exporter.get_finished_spans() if span.name == "crm.import.run")
    assert import_span.attributes.get("rows") == 2
    assert import_span.attributes.get("imported") == 2
