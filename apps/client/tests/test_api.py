from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient

from crm_store.core.config import Settings, get_settings
from crm_store.crm.client import StubBackend
from crm_store.crm.kv import SqlKeyValueStore
from crm_store.crm.schemas import EntityType
from crm_store.main import create_app


@pytest.fixture()
def backend() -> StubBackend:
    return StubBackend(
        seed={
            EntityType.COMPANY: [
                {"_id": "c1", "name": "Acme", "industry": "Technology"},
                {"_id": "c2", "name": "Globex", "industry": "Energy"},
            ],
            EntityType.CONTACT: [
                {"_id": "p1", "name": "Ann Lee", "email": "ann@acme.com", "company_id": "c1"},
                {"_id": "p2", "name": "Bob Ray", "email": "bob@globex.com", "company_id": "c2"},
            ],
        }
    )


@pytest.fixture()
def client(backend: StubBackend) -> Generator[TestClient, None, None]:
    get_settings.cache_clear()
    kv = SqlKeyValueStore.from_url("sqlite+pysqlite:///:memory:")
    app = create_app(Settings(bootstrap_on_startup=True), backend=backend, kv=kv)
    with TestClient(app) as test_client:
        yield test_client
    kv.dispose()


def test_health(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_summary_reflects_bootstrapped_cache(client: TestClient) -> None:
    response = client.get("/api/crm/summary")

    assert response.status_code == 200
    body = response.json()
    assert body["loaded"]["company"] is True
    assert body["settings_loaded"] is False
    assert body["aggregates"]["company_count"] == 2
    assert body["aggregates"]["contact_count"] == 2


def test_entity_crud_round_trip(client: TestClient) -> None:
    created = client.post("/api/crm/entities/company", json={"name": "Initech", "industry": "Finance"})
    assert created.status_code == 201
    company_id = created.json()["id"]

    listed = client.get("/api/crm/entities/company").json()
    assert listed["loaded"] is True
    assert listed["items"][0]["id"] == company_id

    patched = client.patch(f"/api/crm/entities/company/{company_id}", json={"industry": "Software"})
    assert patched.status_code == 200
    assert patched.json()["industry"] == "Software"
    assert client.get(f"/api/crm/entities/company/{company_id}").json()["industry"] == "Software"

    deleted = client.delete(f"/api/crm/entities/company/{company_id}")
    assert deleted.status_code == 200
    assert deleted.json() == {"status": "deleted"}
    assert client.get(f"/api/crm/entities/company/{company_id}").status_code == 404


def test_duplicate_create_returns_conflict(client: TestClient) -> None:
    response = client.post("/api/crm/entities/company", json={"name": "acme"})

    assert response.status_code == 409
    body = response.json()
    assert body["code"] == "crm_duplicate"
    assert body["details"]["duplicate"]["id"] == "c1"
    assert "already exists" in body["message"]


def test_update_unknown_record_returns_not_found(client: TestClient) -> None:
    response = client.patch("/api/crm/entities/contact/missing", json={"name": "Nobody"})

    assert response.status_code == 404
    assert response.json()["code"] == "crm_not_found"


def test_gateway_failure_returns_bad_gateway(client: TestClient, backend: StubBackend) -> None:
    backend.fail("create", EntityType.CONTACT, error="Backend unreachable")

    response = client.post("/api/crm/entities/contact", json={"name": "Carl"})

    assert response.status_code == 502
    assert response.json()["message"] == "Backend unreachable"


def test_unknown_entity_type_is_rejected(client: TestClient) -> None:
    assert client.get("/api/crm/entities/invoice").status_code == 422


def test_refresh_forces_gateway_call(client: TestClient, backend: StubBackend) -> None:
    before = backend.call_count("list", EntityType.COMPANY)

    response = client.post("/api/crm/entities/company/refresh")

    assert response.status_code == 200
    assert response.json()["refreshed"] is True
    assert backend.call_count("list", EntityType.COMPANY) == before + 1


def test_settings_fall_back_to_defaults(client: TestClient) -> None:
    body = client.get("/api/crm/settings").json()

    assert body["loaded"] is False
    assert body["settings"]["user_name"] == "Demo User"

    patched = client.patch("/api/crm/settings", json={"user_name": "Jane"})
    assert patched.status_code == 200
    assert patched.json()["loaded"] is True
    assert patched.json()["settings"]["user_name"] == "Jane"


def test_leads_live_in_the_local_ledger(client: TestClient, backend: StubBackend) -> None:
    created = client.post("/api/crm/leads", json={"name": "Dana", "email": "dana@example.com"})
    assert created.status_code == 201
    lead_id = created.json()["id"]

    patched = client.patch(f"/api/crm/leads/{lead_id}", json={"status": "qualified"})
    assert patched.json()["status"] == "qualified"
    assert [lead["id"] for lead in client.get("/api/crm/leads").json()] == [lead_id]

    assert client.patch("/api/crm/leads/404", json={"status": "lost"}).status_code == 404
    assert client.delete(f"/api/crm/leads/{lead_id}").json() == {"status": "deleted"}
    assert client.get("/api/crm/leads").json() == []
    assert backend.call_count("create") == 0
    assert backend.call_count("update") == 0


def test_selecting_a_company_loads_its_contacts(client: TestClient) -> None:
    response = client.post("/api/crm/selection/company/c1")

    assert response.status_code == 200
    body = response.json()
    assert body["selected_company"]["id"] == "c1"
    assert [contact["id"] for contact in body["related_contacts"]] == ["p1"]

    contact = client.post("/api/crm/selection/contact/p2").json()
    assert [company["id"] for company in contact["related_companies"]] == ["c2"]

    assert client.post("/api/crm/selection/company/missing").status_code == 404


def test_json_import_reports_row_outcomes(client: TestClient) -> None:
    response = client.post(
        "/api/crm/import/company",
        json={
            "rows": [
                {"Company Name": "Beta Labs", "Website": "https://betalabs.io"},
                {"Company Name": ""},
                {"Company Name": "Gamma", "Website": "not-a-url"},
            ]
        },
    )

    assert response.status_code == 200
    body = response.json()
    assert body["imported"] == 1
    assert body["skipped"] == 2
    assert body["errors"] == ["Row 2: Company Name is required", "Gamma: Invalid website URL format"]


def test_csv_upload_import(client: TestClient) -> None:
    template = client.get("/api/crm/import/company/template.csv")
    assert template.status_code == 200
    assert template.text.startswith("Company Name,Industry,Website")

    response = client.post(
        "/api/crm/import/company/csv",
        files={"file": ("companies.csv", template.content, "text/csv")},
    )

    assert response.status_code == 200
    assert response.json()["imported"] == 2
    assert client.get("/api/crm/summary").json()["aggregates"]["company_count"] == 4


def test_empty_csv_upload_is_rejected(client: TestClient) -> None:
    response = client.post(
        "/api/crm/import/company/csv",
        files={"file": ("companies.csv", b"Company Name,Industry\n", "text/csv")},
    )

    assert response.status_code == 422
    assert response.json()["code"] == "crm_import_empty"


def test_import_for_unsupported_type(client: TestClient) -> None:
    response = client.post("/api/crm/import/opportunity", json={"rows": [{"title": "Pilot"}]})

    assert response.status_code == 422
    assert response.json()["code"] == "crm_import_unsupported"


def test_bulk_import_submits_and_refreshes(client: TestClient, backend: StubBackend) -> None:
    response = client.post("/api/crm/import", json={"competitor": [{"name": "Rival Co", "status": "Superior"}]})

    assert response.status_code == 200
    assert response.json() == {"submitted": {"competitor": 1}}
    assert backend.call_count("import_batch", EntityType.COMPETITOR) == 1
    assert client.get("/api/crm/summary").json()["aggregates"]["competitor_count"] == 1


def test_csv_export(client: TestClient) -> None:
    response = client.get("/api/crm/export/contact.csv")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    lines = response.text.splitlines()
    assert lines[0].startswith("id,created_at,updated_at,name")
    assert len(lines) == 3


def test_correlation_id_is_echoed(client: TestClient) -> None:
    response = client.get("/api/crm/summary", headers={"X-Correlation-Id": "abc-123"})

    assert response.headers["x-correlation-id"] == "abc-123"
