from __future__ import annotations

import json

import httpx
import pytest

from crm_store.context import reset_correlation_id, set_correlation_id
from crm_store.crm.client import DUPLICATE, NOT_FOUND, TRANSPORT
from crm_store.crm.http_client import HttpBackend
from crm_store.crm.schemas import EntityType
from crm_store.crm.store import Store


def _backend(handler, **kwargs) -> HttpBackend:  # type: ignore[no-untyped-def]
    kwargs.setdefault("retry_backoff", 0.0)
    return HttpBackend("http://crm.test/api", transport=httpx.MockTransport(handler), **kwargs)


@pytest.mark.asyncio
async def test_list_decodes_envelope_and_sends_filters() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"success": True, "data": [{"_id": "p1", "name": "Ann"}]})

    backend = _backend(handler, token="secret")
    envelope = await backend.list(EntityType.CONTACT, {"limit": 100})
    await backend.aclose()

    assert envelope.success is True
    assert envelope.data == [{"_id": "p1", "name": "Ann"}]
    assert seen[0].url.path == "/api/contacts"
    assert seen[0].url.params["limit"] == "100"
    assert seen[0].headers["authorization"] == "Bearer secret"


@pytest.mark.asyncio
async def test_bare_json_body_is_treated_as_data() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=[{"_id": "c1", "name": "Acme"}])

    async with _backend(handler) as backend:
        envelope = await backend.list(EntityType.COMPANY)

    assert envelope.success is True
    assert envelope.data == [{"_id": "c1", "name": "Acme"}]


@pytest.mark.asyncio
async def test_reads_are_retried_on_server_errors() -> None:
    attempts = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        attempts["count"] += 1
        if attempts["count"] == 1:
            return httpx.Response(503, json={"success": False, "error": "warming up"})
        return httpx.Response(200, json={"success": True, "data": []})

    async with _backend(handler, max_retries=2) as backend:
        envelope = await backend.list(EntityType.COMPANY)

    assert envelope.success is True
    assert attempts["count"] == 2


@pytest.mark.asyncio
async def test_writes_are_sent_once() -> None:
    attempts = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        attempts["count"] += 1
        return httpx.Response(500, json={"success": False, "error": "Internal server error"})

    async with _backend(handler, max_retries=3) as backend:
        envelope = await backend.create(EntityType.COMPANY, {"name": "Acme"})

    assert envelope.success is False
    assert envelope.code == TRANSPORT
    assert envelope.error == "Internal server error"
    assert attempts["count"] == 1


@pytest.mark.asyncio
async def test_status_codes_map_to_failure_reasons() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "PUT":
            return httpx.Response(404, json={"success": False, "error": "Contact not found"})
        return httpx.Response(
            409,
            json={
                "success": False,
                "error": "Company already exists in the system.",
                "duplicate": {"_id": "c1", "name": "Acme"},
            },
        )

    async with _backend(handler) as backend:
        missing = await backend.update(EntityType.CONTACT, "p9", {"name": "Nobody"})
        duplicate = await backend.create(EntityType.COMPANY, {"name": "acme"})

    assert missing.code == NOT_FOUND
    assert duplicate.code == DUPLICATE
    assert duplicate.duplicate == {"_id": "c1", "name": "Acme"}


@pytest.mark.asyncio
async def test_unreachable_backend_yields_failure_envelope() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with _backend(handler, max_retries=1) as backend:
        envelope = await backend.get_settings()

    assert envelope.success is False
    assert envelope.code == TRANSPORT
    assert "connection refused" in (envelope.error or "")


@pytest.mark.asyncio
async def test_payload_and_correlation_id_are_forwarded() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"success": True, "data": [{"_id": "p1", "name": "Ann"}]})

    token = set_correlation_id("corr-42")
    try:
        async with _backend(handler) as backend:
            await backend.import_batch(EntityType.CONTACT, [{"name": "Ann"}])
    finally:
        reset_correlation_id(token)

    assert seen[0].url.path == "/api/contacts/import"
    assert json.loads(seen[0].content) == {"records": [{"name": "Ann"}]}
    assert seen[0].headers["x-correlation-id"] == "corr-42"


@pytest.mark.asyncio
async def test_store_over_http_absorbs_fetch_failures() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/companies":
            return httpx.Response(200, json={"success": True, "data": [{"_id": "c1", "name": "Acme"}]})
        return httpx.Response(502, text="bad gateway")

    async with _backend(handler, max_retries=0) as backend:
        store = Store(backend)
        results = await store.bootstrap()

    assert results["company"] is True
    assert results["contact"] is False
    assert store.contacts.last_error == "HTTP 502"
    assert store.companies.ids() == ["c1"]
    assert store.settings is not None and store.settings.user_name == "Demo User"
