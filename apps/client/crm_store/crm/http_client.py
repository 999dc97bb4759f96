from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Mapping
from typing import Any

import httpx
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from pydantic_core import to_jsonable_python

from crm_store.context import get_correlation_id
from crm_store.core.config import Settings
from crm_store.crm.client import DUPLICATE, NOT_FOUND, SETTINGS_RESOURCE, TRANSPORT
from crm_store.crm.schemas import EntityType, Envelope
from crm_store.metrics import observe_gateway_call


logger = logging.getLogger("crm_store.gateway")
tracer = trace.get_tracer("crm_store.gateway")

COLLECTION_PATHS: dict[EntityType, str] = {
    EntityType.CONTACT: "contacts",
    EntityType.COMPANY: "companies",
    EntityType.OPPORTUNITY: "opportunities",
    EntityType.ACTIVITY: "activities",
    EntityType.EXPENSE: "expenses",
    EntityType.COMPETITOR: "competitors",
}

_RECOGNISED_CODES = {NOT_FOUND, DUPLICATE, TRANSPORT}


class HttpBackend:
    """Backend gateway over the CRM REST API.

    Every response is folded into an ``Envelope``; transport failures never
    raise. Reads are retried with exponential backoff, writes are sent once.
    """

    def __init__(
        self,
        base_url: str,
        *,
        token: str | None = None,
        timeout: float = 15.0,
        max_retries: int = 2,
        retry_backoff: float = 0.5,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"accept": "application/json"}
        if token:
            headers["authorization"] = f"Bearer {token}"
        self.max_retries = max(0, max_retries)
        self.retry_backoff = retry_backoff
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/") + "/",
            timeout=timeout,
            headers=headers,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> "HttpBackend":
        return cls(
            settings.api_base_url,
            token=settings.api_token,
            timeout=settings.api_timeout_seconds,
            max_retries=settings.api_max_retries,
            retry_backoff=settings.api_retry_backoff_seconds,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "HttpBackend":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def list(self, entity_type: EntityType, filters: Mapping[str, Any] | None = None) -> Envelope:
        return await self._request(
            "list", entity_type, "GET", COLLECTION_PATHS[entity_type], params=dict(filters or {}), idempotent=True
        )

    async def get(self, entity_type: EntityType, entity_id: str) -> Envelope:
        return await self._request("get", entity_type, "GET", f"{COLLECTION_PATHS[entity_type]}/{entity_id}", idempotent=True)

    async def create(self, entity_type: EntityType, payload: Mapping[str, Any]) -> Envelope:
        return await self._request("create", entity_type, "POST", COLLECTION_PATHS[entity_type], json=payload)

    async def update(self, entity_type: EntityType, entity_id: str, payload: Mapping[str, Any]) -> Envelope:
        return await self._request("update", entity_type, "PUT", f"{COLLECTION_PATHS[entity_type]}/{entity_id}", json=payload)

    async def delete(self, entity_type: EntityType, entity_id: str) -> Envelope:
        return await self._request("delete", entity_type, "DELETE", f"{COLLECTION_PATHS[entity_type]}/{entity_id}")

    async def contacts_by_company(self, company_id: str) -> Envelope:
        return await self._request(
            "contacts_by_company", EntityType.CONTACT, "GET", f"contacts/company/{company_id}", idempotent=True
        )

    async def import_batch(self, entity_type: EntityType, records: list[Mapping[str, Any]]) -> Envelope:
        return await self._request(
            "import_batch", entity_type, "POST", f"{COLLECTION_PATHS[entity_type]}/import", json={"records": records}
        )

    async def get_settings(self) -> Envelope:
        return await self._request("get_settings", SETTINGS_RESOURCE, "GET", "settings", idempotent=True)

    async def update_settings(self, payload: Mapping[str, Any]) -> Envelope:
        return await self._request("update_settings", SETTINGS_RESOURCE, "PUT", "settings", json=payload)

    async def _request(
        self,
        operation: str,
        entity_type: EntityType | str,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
        json: Any = None,
        idempotent: bool = False,
    ) -> Envelope:
        entity_label = str(entity_type)
        attempts = self.max_retries + 1 if idempotent else 1
        correlation_id = get_correlation_id()
        headers = {"x-correlation-id": correlation_id} if correlation_id else None
        body = to_jsonable_python(json) if json is not None else None
        started = time.perf_counter()

        with tracer.start_as_current_span(f"crm.gateway.{operation}") as span:
            span.set_attribute("entity_type", entity_label)
            span.set_attribute("http.method", method)
            span.set_attribute("correlation_id", correlation_id or "")

            envelope = Envelope(success=False, error="request not sent", code=TRANSPORT)
            for attempt in range(attempts):
                try:
                    response = await self._client.request(method, path, params=params or None, json=body, headers=headers)
                except httpx.RequestError as exc:
                    envelope = Envelope(success=False, error=f"Backend unreachable: {exc}", code=TRANSPORT)
                    logger.warning(
                        "gateway.unreachable",
                        extra={"entity_type": entity_label, "operation": operation, "error": str(exc)},
                    )
                else:
                    envelope = self._decode(response)
                    span.set_attribute("http.status_code", response.status_code)
                    if not (response.status_code >= 500 and envelope.code == TRANSPORT):
                        break

                if attempt < attempts - 1:
                    await asyncio.sleep(self.retry_backoff * (2**attempt))

            outcome = "success" if envelope.success else (envelope.code or TRANSPORT)
            span.set_attribute("outcome", outcome)
            if not envelope.success:
                span.set_status(Status(StatusCode.ERROR, envelope.error or outcome))

        duration = time.perf_counter() - started
        observe_gateway_call(entity_type=entity_label, operation=operation, outcome=outcome, duration=duration)
        logger.debug(
            "gateway.call",
            extra={
                "entity_type": entity_label,
                "operation": operation,
                "outcome": outcome,
                "duration_ms": round(duration * 1000, 2),
            },
        )
        return envelope

    def _decode(self, response: httpx.Response) -> Envelope:
        try:
            body = response.json()
        except ValueError:
            body = None

        if isinstance(body, dict) and "success" in body:
            envelope = Envelope(
                success=bool(body.get("success")) and response.is_success,
                data=body.get("data"),
                error=body.get("error") or body.get("message"),
                duplicate=body.get("duplicate") if isinstance(body.get("duplicate"), dict) else None,
                code=body.get("code") if body.get("code") in _RECOGNISED_CODES else None,
            )
        elif response.is_success:
            envelope = Envelope(success=True, data=body)
        else:
            envelope = Envelope(success=False, error=f"HTTP {response.status_code}")

        if envelope.success:
            return envelope

        if envelope.code is None:
            if response.status_code == 404:
                envelope.code = NOT_FOUND
            elif envelope.duplicate is not None or response.status_code == 409:
                envelope.code = DUPLICATE
            else:
                envelope.code = TRANSPORT
        if not envelope.error:
            envelope.error = f"HTTP {response.status_code}"
        return envelope
