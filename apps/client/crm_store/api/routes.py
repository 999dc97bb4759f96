from fastapi import APIRouter, HTTPException, status
from fastapi.responses import Response

from crm_store.core.config import get_settings
from crm_store.metrics import generate_metrics_payload, metrics_content_type
from crm_store.crm.api import (
    entities_router,
    import_export_router,
    leads_router,
    selection_router,
    router as crm_cache_router,
)

router = APIRouter()
router.include_router(crm_cache_router)
router.include_router(entities_router)
router.include_router(leads_router)
router.include_router(selection_router)
router.include_router(import_export_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/metrics", tags=["system"])
def metrics() -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
