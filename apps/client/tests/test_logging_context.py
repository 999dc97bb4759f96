from __future__ import annotations

import json
import logging
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient

from crm_store.context import reset_correlation_id, set_correlation_id
from crm_store.core.config import Settings, get_settings
from crm_store.crm.client import StubBackend
from crm_store.crm.import_export import company_import_pipeline
from crm_store.crm.kv import SqlKeyValueStore
from crm_store.crm.schemas import EntityType
from crm_store.crm.store import Store
from crm_store.logging import JsonLogFormatter
from crm_store.main import create_app


@pytest.fixture()
def backend() -> StubBackend:
    return StubBackend(seed={EntityType.COMPANY: [{"_id": "c1", "name": "Acme"}]})


@pytest.fixture()
def client(backend: StubBackend) -> Generator[TestClient, None, None]:
    get_settings.cache_clear()
    kv = SqlKeyValueStore.from_url("sqlite+pysqlite:///:memory:")
    app = create_app(Settings(), backend=backend, kv=kv)
    with TestClient(app) as test_client:
        yield test_client
    kv.dispose()


def test_request_logs_include_correlation_id(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    response = client.get("/api/crm/summary", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 200

    records = [
        record for record in caplog.records if record.name == "crm_store.request" and record.getMessage() == "http.request"
    ]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/crm/summary"
        and getattr(record, "status_code", None) == 200
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_fetch_failure_is_logged_with_request_context(
    client: TestClient,
    backend: StubBackend,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)
    backend.fail("list", EntityType.CONTACT, error="Backend unreachable")

    response = client.get("/api/crm/entities/contact", headers={"X-Correlation-Id": "fetch-1"})

    assert response.status_code == 200
    assert response.json()["loaded"] is False
    assert response.json()["error"] == "Backend unreachable"
    assert any(
        record.name == "crm_store.cache"
        and record.getMessage() == "cache.fetch.failed"
        and record.levelno == logging.WARNING
        and getattr(record, "entity_type", None) == "contact"
        and getattr(record, "correlation_id", None) == "fetch-1"
        for record in caplog.records
    )


@pytest.mark.asyncio
async def test_import_logs_summary_fields(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)
    store = Store(StubBackend())

    await company_import_pipeline(store).run([{"Company Name": "Acme"}, {"Company Name": ""}])

    finished = [record for record in caplog.records if record.getMessage() == "import.finished"]
    assert len(finished) == 1
    assert getattr(finished[0], "imported", None) == 1
    assert getattr(finished[0], "skipped", None) == 1
    assert getattr(finished[0], "entity_type", None) == "company"


def test_json_formatter_keeps_known_fields_only() -> None:
    token = set_correlation_id("fmt-1")
    try:
        record = logging.getLogger("crm_store.cache").makeRecord(
            "crm_store.cache",
            logging.WARNING,
            __file__,
            1,
            "cache.fetch.failed",
            (),
            None,
            extra={"entity_type": "company", "error": "x" * 600, "secret": "hidden"},
        )
        record.correlation_id = "fmt-1"
        payload = json.loads(JsonLogFormatter().format(record))
    finally:
        reset_correlation_id(token)

    assert payload["msg"] == "cache.fetch.failed"
    assert payload["correlation_id"] == "fmt-1"
    assert payload["fields"]["entity_type"] == "company"
    assert len(payload["fields"]["error"]) == 500
    assert "secret" not in payload["fields"]
