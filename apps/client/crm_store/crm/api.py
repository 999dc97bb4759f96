from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Body, Depends, File, HTTPException, Request, UploadFile, status
from fastapi.responses import JSONResponse, Response

from crm_store.context import get_correlation_id
from crm_store.crm.errors import DuplicateError, NotFoundError, StoreError
from crm_store.crm.import_export import (
    IMPORT_PIPELINES,
    company_template_csv,
    export_csv,
    export_fieldnames,
    parse_csv,
)
from crm_store.crm.ledger import LocalLedger
from crm_store.crm.schemas import CacheSummaryRead, EntityType, ImportResult, ImportRowsRequest, Lead, SelectionRead
from crm_store.crm.store import Store


router = APIRouter(prefix="/api/crm", tags=["crm.cache"])
entities_router = APIRouter(prefix="/api/crm/entities", tags=["crm.entities"])
leads_router = APIRouter(prefix="/api/crm/leads", tags=["crm.leads"])
selection_router = APIRouter(prefix="/api/crm/selection", tags=["crm.selection"])
import_export_router = APIRouter(prefix="/api/crm", tags=["crm.import_export"])


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def store_error_response(request: Request, exc: StoreError, *, code: str) -> JSONResponse:
    if isinstance(exc, DuplicateError):
        return error_response(
            request,
            status_code=status.HTTP_409_CONFLICT,
            code="crm_duplicate",
            message=str(exc),
            details={"duplicate": exc.duplicate.model_dump(mode="json")},
        )
    if isinstance(exc, NotFoundError):
        return error_response(
            request,
            status_code=status.HTTP_404_NOT_FOUND,
            code="crm_not_found",
            message=str(exc),
            details={"id": exc.entity_id},
        )
    return error_response(request, status_code=status.HTTP_502_BAD_GATEWAY, code=code, message=str(exc))


def get_store(request: Request) -> Store:
    store = getattr(request.app.state, "store", None)
    if store is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="store not initialised")
    return store


def get_lead_ledger(store: Store = Depends(get_store)) -> LocalLedger[Lead]:
    if store.leads is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="lead ledger not configured")
    if not store.leads.loaded:
        store.leads.load()
    return store.leads


def _dump(record: Any) -> dict[str, Any]:
    return record.model_dump(mode="json")


@router.get("/summary", response_model=CacheSummaryRead)
def cache_summary(store: Store = Depends(get_store)) -> CacheSummaryRead:
    return CacheSummaryRead(
        loaded=store.loaded,
        settings_loaded=store.settings_loaded,
        aggregates=store.aggregates.as_dict(),
    )


@router.post("/bootstrap")
async def bootstrap(store: Store = Depends(get_store)) -> dict[str, bool]:
    return await store.bootstrap()


@router.post("/relations/refresh", response_model=None)
def refresh_relations(entity_type: EntityType | None = None, store: Store = Depends(get_store)) -> dict[str, str]:
    store.refresh_relations(entity_type)
    return {"status": "refreshed"}


@router.get("/settings")
async def read_settings(store: Store = Depends(get_store)) -> dict[str, Any]:
    await store.fetch_settings()
    return {"settings": _dump(store.settings), "loaded": store.settings_loaded}


@router.patch("/settings", response_model=None)
async def patch_settings(
    request: Request,
    payload: dict[str, Any] = Body(...),
    store: Store = Depends(get_store),
) -> dict[str, Any] | JSONResponse:
    try:
        settings = await store.update_settings(payload)
    except StoreError as exc:
        return store_error_response(request, exc, code="crm_settings_update_failed")
    return {"settings": _dump(settings), "loaded": store.settings_loaded}


@entities_router.get("/{entity_type}")
async def list_entities(entity_type: EntityType, store: Store = Depends(get_store)) -> dict[str, Any]:
    collection = store.collection(entity_type)
    await collection.fetch_all()
    return {
        "items": [_dump(item) for item in collection.items],
        "loaded": collection.loaded,
        "error": collection.last_error,
    }


@entities_router.post("/{entity_type}/refresh")
async def refresh_entities(entity_type: EntityType, store: Store = Depends(get_store)) -> dict[str, Any]:
    collection = store.collection(entity_type)
    refreshed = await collection.fetch_all(force=True)
    return {"refreshed": refreshed, "count": len(collection), "error": collection.last_error}


@entities_router.get("/{entity_type}/{entity_id}")
def get_entity(request: Request, entity_type: EntityType, entity_id: str, store: Store = Depends(get_store)) -> Any:
    record = store.collection(entity_type).get(entity_id)
    if record is None:
        return error_response(
            request,
            status_code=status.HTTP_404_NOT_FOUND,
            code="crm_not_found",
            message=f"{entity_type.value} {entity_id} not found",
        )
    return _dump(record)


@entities_router.post("/{entity_type}", status_code=status.HTTP_201_CREATED)
async def create_entity(
    request: Request,
    entity_type: EntityType,
    payload: dict[str, Any] = Body(...),
    store: Store = Depends(get_store),
) -> Any:
    try:
        record = await store.collection(entity_type).add(payload)
    except StoreError as exc:
        return store_error_response(request, exc, code="crm_create_failed")
    return _dump(record)


@entities_router.patch("/{entity_type}/{entity_id}")
async def patch_entity(
    request: Request,
    entity_type: EntityType,
    entity_id: str,
    payload: dict[str, Any] = Body(...),
    store: Store = Depends(get_store),
) -> Any:
    try:
        record = await store.collection(entity_type).update(entity_id, payload)
    except StoreError as exc:
        return store_error_response(request, exc, code="crm_update_failed")
    return _dump(record)


@entities_router.delete("/{entity_type}/{entity_id}", status_code=status.HTTP_200_OK, response_model=None)
async def delete_entity(
    request: Request,
    entity_type: EntityType,
    entity_id: str,
    store: Store = Depends(get_store),
) -> Any:
    try:
        await store.collection(entity_type).remove(entity_id)
    except StoreError as exc:
        return store_error_response(request, exc, code="crm_delete_failed")
    return {"status": "deleted"}


@leads_router.get("")
def list_leads(ledger: LocalLedger[Lead] = Depends(get_lead_ledger)) -> list[dict[str, Any]]:
    return [_dump(item) for item in ledger.items]


@leads_router.post("", status_code=status.HTTP_201_CREATED)
def create_lead(payload: dict[str, Any] = Body(...), ledger: LocalLedger[Lead] = Depends(get_lead_ledger)) -> dict[str, Any]:
    return _dump(ledger.add(payload))


@leads_router.patch("/{lead_id}")
def patch_lead(
    request: Request,
    lead_id: str,
    payload: dict[str, Any] = Body(...),
    ledger: LocalLedger[Lead] = Depends(get_lead_ledger),
) -> Any:
    try:
        return _dump(ledger.update(lead_id, payload))
    except NotFoundError as exc:
        return store_error_response(request, exc, code="crm_lead_update_failed")


@leads_router.delete("/{lead_id}", response_model=None)
def delete_lead(lead_id: str, ledger: LocalLedger[Lead] = Depends(get_lead_ledger)) -> dict[str, str]:
    ledger.remove(lead_id)
    return {"status": "deleted"}


@selection_router.get("", response_model=SelectionRead)
def read_selection(store: Store = Depends(get_store)) -> SelectionRead:
    return store.selection.snapshot()


@selection_router.post("/company/{company_id}", response_model=None)
async def select_company(request: Request, company_id: str, store: Store = Depends(get_store)) -> Any:
    try:
        store.selection.select_company(company_id)
        await store.selection.load_related_contacts(company_id)
    except StoreError as exc:
        return store_error_response(request, exc, code="crm_related_contacts_failed")
    return store.selection.snapshot().model_dump(mode="json")


@selection_router.post("/contact/{contact_id}", response_model=None)
def select_contact(request: Request, contact_id: str, store: Store = Depends(get_store)) -> Any:
    try:
        store.selection.select_contact(contact_id)
        store.selection.load_related_companies(contact_id)
    except StoreError as exc:
        return store_error_response(request, exc, code="crm_selection_failed")
    return store.selection.snapshot().model_dump(mode="json")


@selection_router.delete("", response_model=None)
def clear_selection(store: Store = Depends(get_store)) -> dict[str, str]:
    store.selection.clear()
    return {"status": "cleared"}


def _pipeline(request: Request, entity_type: EntityType, store: Store):  # type: ignore[no-untyped-def]
    factory = IMPORT_PIPELINES.get(entity_type)
    if factory is None:
        return None, error_response(
            request,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            code="crm_import_unsupported",
            message=f"import is not supported for {entity_type.value}",
        )
    return factory(store), None


@import_export_router.post("/import/{entity_type}", response_model=ImportResult)
async def import_rows(
    request: Request,
    entity_type: EntityType,
    dto: ImportRowsRequest,
    store: Store = Depends(get_store),
) -> Any:
    pipeline, failure = _pipeline(request, entity_type, store)
    if failure is not None:
        return failure
    return await pipeline.run(dto.rows)


@import_export_router.post("/import/{entity_type}/csv", response_model=ImportResult)
async def import_csv(
    request: Request,
    entity_type: EntityType,
    file: UploadFile = File(...),
    store: Store = Depends(get_store),
) -> Any:
    pipeline, failure = _pipeline(request, entity_type, store)
    if failure is not None:
        return failure
    rows = parse_csv(await file.read())
    if not rows:
        return error_response(
            request,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            code="crm_import_empty",
            message="No valid data found in file",
        )
    return await pipeline.run(rows)


@import_export_router.post("/import", response_model=None)
async def import_bulk(
    request: Request,
    payload: dict[EntityType, list[dict[str, Any]]] = Body(...),
    store: Store = Depends(get_store),
) -> Any:
    try:
        submitted = await store.import_data(payload)
    except StoreError as exc:
        return store_error_response(request, exc, code="crm_bulk_import_failed")
    return {"submitted": submitted}


@import_export_router.get("/import/company/template.csv")
def company_template() -> Response:
    return Response(
        content=company_template_csv(),
        media_type="text/csv",
        headers={"content-disposition": 'attachment; filename="companies-template.csv"'},
    )


@import_export_router.get("/export/{entity_type}.csv")
async def export_entities(entity_type: EntityType, store: Store = Depends(get_store)) -> Response:
    collection = store.collection(entity_type)
    await collection.fetch_all()
    return Response(
        content=export_csv(collection.items, export_fieldnames(entity_type)),
        media_type="text/csv",
        headers={"content-disposition": f'attachment; filename="{entity_type.value}-export.csv"'},
    )
