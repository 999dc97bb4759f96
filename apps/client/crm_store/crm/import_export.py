from __future__ import annotations

import csv
import io
import logging
import re
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from opentelemetry import trace
from pydantic import BaseModel

from crm_store.crm.errors import DuplicateError, RowValidationError, StoreError
from crm_store.crm.schemas import EMBEDDED_FIELDS, ENTITY_MODELS, EntityType, ImportResult
from crm_store.metrics import observe_import_rows

if TYPE_CHECKING:
    from crm_store.crm.store import Store


logger = logging.getLogger("crm_store.import")
tracer = trace.get_tracer("crm_store.import")

WEBSITE_PATTERN = re.compile(
    r"^https?:\/\/(www\.)?[-a-zA-Z0-9@:%._\+~#=]{1,256}\.[a-zA-Z0-9()]{1,6}\b([-a-zA-Z0-9()@:%_\+.~#?&//=]*)$"
)
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

RowValidator = Callable[[dict[str, Any]], list[str]]
RowPreparer = Callable[[dict[str, Any], "Store"], list[str]]


@dataclass(frozen=True)
class ImportField:
    """One importable column: the record attribute and the headers that may carry it."""

    target: str
    headers: tuple[str, ...]

    def pick(self, row: Mapping[str, Any]) -> Any:
        for header in self.headers:
            value = row.get(header)
            if isinstance(value, str):
                value = value.strip()
            if value not in (None, ""):
                return value
        return None


COMPANY_IMPORT_FIELDS = (
    ImportField("name", ("Company Name", "company_name", "name")),
    ImportField("industry", ("Industry", "industry")),
    ImportField("website", ("Website", "website")),
    ImportField("phone", ("Phone", "phone")),
    ImportField("email", ("Email", "email")),
    ImportField("sector", ("Sector", "sector")),
    ImportField("place_of_office", ("Place of Office", "place_of_office", "placeOfOffice")),
    ImportField("head_office", ("Head Office", "head_office", "headOffice")),
)

CONTACT_IMPORT_FIELDS = (
    ImportField("name", ("Name", "name", "Full Name")),
    ImportField("first_name", ("First Name", "first_name", "firstName")),
    ImportField("last_name", ("Last Name", "last_name", "lastName")),
    ImportField("email", ("Email", "email")),
    ImportField("phone", ("Phone", "phone")),
    ImportField("position", ("Position", "position", "Title", "title")),
    ImportField("company_id", ("Company ID", "company_id", "companyId")),
    ImportField("company_name", ("Company", "Company Name", "company_name", "company")),
)

COMPANY_TEMPLATE_ROWS = (
    {
        "Company Name": "TechCorp Solutions",
        "Industry": "Technology",
        "Website": "https://techcorp.com",
        "Phone": "+1-555-0123",
        "Email": "contact@techcorp.com",
        "Sector": "IT Services",
        "Place of Office": "New York",
        "Head Office": "San Francisco",
    },
    {
        "Company Name": "Global Manufacturing Inc",
        "Industry": "Manufacturing",
        "Website": "https://globalmfg.com",
        "Phone": "+1-555-0124",
        "Email": "info@globalmfg.com",
        "Sector": "Industrial",
        "Place of Office": "Chicago",
        "Head Office": "Chicago",
    },
)


def _check_email(record: Mapping[str, Any], errors: list[str]) -> None:
    email = record.get("email")
    if email and not EMAIL_PATTERN.match(str(email)):
        errors.append("Invalid email format")


def validate_company_row(record: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    if not record.get("name"):
        errors.append("Company Name is required")
    website = record.get("website")
    if website and not WEBSITE_PATTERN.match(str(website)):
        errors.append("Invalid website URL format")
    _check_email(record, errors)
    return errors


def validate_contact_row(record: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    if not record.get("name") and not (record.get("first_name") or record.get("last_name")):
        errors.append("Name is required")
    _check_email(record, errors)
    return errors


def resolve_contact_company(record: dict[str, Any], store: Store) -> list[str]:
    """Swap a company name column for the id of the cached company with that name."""
    company_name = record.pop("company_name", None)
    if record.get("company_id") or not company_name:
        return []
    needle = str(company_name).strip().lower()
    for company in store.companies:
        if (company.name or "").strip().lower() == needle:
            record["company_id"] = company.id
            return []
    return [f"Unknown company: {company_name}"]


class ImportPipeline:
    """Validates rows and submits the valid ones one at a time through the cache.

    A bad row never aborts the batch. Duplicate detection is left to the
    backend: a rejected create is counted under ``duplicates``.
    """

    def __init__(
        self,
        store: Store,
        entity_type: EntityType | str,
        fields: Sequence[ImportField],
        validator: RowValidator,
        *,
        prepare: RowPreparer | None = None,
        requires: Sequence[EntityType] = (),
    ) -> None:
        self.store = store
        self.entity_type = EntityType(entity_type)
        self.fields = tuple(fields)
        self.validator = validator
        self.prepare = prepare
        self.requires = tuple(requires)

    def normalize(self, row: Mapping[str, Any]) -> dict[str, Any]:
        record: dict[str, Any] = {}
        for field in self.fields:
            value = field.pick(row)
            if value is not None:
                record[field.target] = value
        return record

    async def run(self, rows: Iterable[Mapping[str, Any]]) -> ImportResult:
        rows = list(rows)
        entity_label = self.entity_type.value
        collection = self.store.collection(self.entity_type)
        result = ImportResult()

        with tracer.start_as_current_span("crm.import.run") as span:
            span.set_attribute("entity_type", entity_label)
            span.set_attribute("rows", len(rows))
            logger.info("import.started", extra={"entity_type": entity_label, "count": len(rows)})

            # Rows may reference these collections by name.
            for required in self.requires:
                await self.store.collection(required).fetch_all()

            for row_number, row in enumerate(rows, start=1):
                record = self.normalize(row)
                label = str(record.get("name") or f"Row {row_number}")
                messages = self.validator(record)
                if not messages and self.prepare is not None:
                    messages = self.prepare(record, self.store)
                if messages:
                    error = RowValidationError(row_number, label, messages, entity_type=entity_label)
                    result.skipped += 1
                    result.errors.append(str(error))
                    observe_import_rows(entity_label, "skipped")
                    continue

                try:
                    await collection.add(record)
                except DuplicateError as exc:
                    result.duplicates += 1
                    result.duplicate_records.append(exc.duplicate)
                    observe_import_rows(entity_label, "duplicate")
                except StoreError as exc:
                    result.failed += 1
                    result.failures.append(f"{label}: {exc}")
                    observe_import_rows(entity_label, "failed")
                else:
                    result.imported += 1
                    observe_import_rows(entity_label, "imported")

            await collection.fetch_all(force=True)

            span.set_attribute("imported", result.imported)
            span.set_attribute("skipped", result.skipped)
            logger.info(
                "import.finished",
                extra={
                    "entity_type": entity_label,
                    "imported": result.imported,
                    "skipped": result.skipped,
                    "failed": result.failed,
                    "duplicates": result.duplicates,
                },
            )
        return result

    async def run_csv(self, text: str) -> ImportResult:
        return await self.run(parse_csv(text))


def company_import_pipeline(store: Store) -> ImportPipeline:
    return ImportPipeline(store, EntityType.COMPANY, COMPANY_IMPORT_FIELDS, validate_company_row)


def contact_import_pipeline(store: Store) -> ImportPipeline:
    return ImportPipeline(
        store,
        EntityType.CONTACT,
        CONTACT_IMPORT_FIELDS,
        validate_contact_row,
        prepare=resolve_contact_company,
        requires=(EntityType.COMPANY,),
    )


IMPORT_PIPELINES: dict[EntityType, Callable[["Store"], ImportPipeline]] = {
    EntityType.COMPANY: company_import_pipeline,
    EntityType.CONTACT: contact_import_pipeline,
}


def parse_csv(text: str | bytes) -> list[dict[str, Any]]:
    if isinstance(text, bytes):
        text = text.decode("utf-8-sig")
    text = text.lstrip("\ufeff")
    reader = csv.DictReader(io.StringIO(text))
    rows: list[dict[str, Any]] = []
    for raw_row in reader:
        row = {
            key.strip(): (value.strip() if isinstance(value, str) else value)
            for key, value in raw_row.items()
            if key is not None
        }
        if any(value for value in row.values()):
            rows.append(row)
    return rows


def _write_csv(rows: Iterable[Mapping[str, Any]], fieldnames: Sequence[str]) -> str:
    output = io.StringIO()
    writer = csv.DictWriter(output, fieldnames=list(fieldnames), extrasaction="ignore")
    writer.writeheader()
    for row in rows:
        writer.writerow(row)
    return output.getvalue()


def company_template_csv() -> str:
    return _write_csv(COMPANY_TEMPLATE_ROWS, list(COMPANY_TEMPLATE_ROWS[0]))


def export_fieldnames(entity_type: EntityType | str) -> list[str]:
    model = ENTITY_MODELS[EntityType(entity_type)]
    return [name for name in model.model_fields if name not in EMBEDDED_FIELDS and name != "contacts"]


def export_csv(records: Iterable[BaseModel], fieldnames: Sequence[str]) -> str:
    rows = (record.model_dump(mode="json", exclude=set(EMBEDDED_FIELDS) | {"contacts"}) for record in records)
    return _write_csv(rows, fieldnames)
