from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class EntityType(StrEnum):
    CONTACT = "contact"
    COMPANY = "company"
    OPPORTUNITY = "opportunity"
    ACTIVITY = "activity"
    EXPENSE = "expense"
    COMPETITOR = "competitor"


TERMINAL_OPPORTUNITY_STATUSES = frozenset({"closed_win", "lost"})
WON_OPPORTUNITY_STATUS = "closed_win"
HIGH_PRIORITY = "high"
SCHEDULED_ACTIVITY_STATUS = "scheduled"

OPPORTUNITY_STATUSES = (
    "quality",
    "meet_contact",
    "meet_present",
    "purpose",
    "negotiate",
    "closed_win",
    "lost",
    "not_responding",
    "remarks",
)
OPPORTUNITY_PRIORITIES = ("low", "medium", "high")
COMPETITOR_POSITIONS = ("Superior", "Equal", "Inferior")

IDENTITY_FIELDS = frozenset({"id", "_id", "created_at", "updated_at"})


class EntityRecord(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    created_at: datetime | None = None
    updated_at: datetime | None = None


class Company(EntityRecord):
    name: str | None = None
    industry: str | None = None
    website: str | None = None
    phone: str | None = None
    email: str | None = None
    sector: str | None = None
    place_of_office: str | None = None
    head_office: str | None = None
    contacts: list[Any] = Field(default_factory=list)

    @field_validator("contacts", mode="before")
    @classmethod
    def ensure_contacts_list(cls, value: Any) -> list[Any]:
        if value is None:
            return []
        return value


class Contact(EntityRecord):
    name: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    phone: str | None = None
    position: str | None = None
    title: str | None = None
    company_id: str | None = None
    company: Company | None = None

    @property
    def display_name(self) -> str:
        if self.name:
            return self.name
        return f"{self.first_name or ''} {self.last_name or ''}".strip()


class Opportunity(EntityRecord):
    title: str | None = None
    amount: float | None = None
    forecast_amount: float | None = None
    status: str = "quality"
    priority: str = "medium"
    stage: str | None = None
    forecast: str | None = None
    probability: float | None = None
    sector: str | None = None
    owner: str | None = None
    open_date: str | None = None
    close_date: str | None = None
    company_id: str | None = None
    contact_id: str | None = None
    company: Company | None = None
    contact: Contact | None = None

    @property
    def is_active(self) -> bool:
        return self.status not in TERMINAL_OPPORTUNITY_STATUSES


class Activity(EntityRecord):
    title: str | None = None
    type: str | None = None
    status: str | None = None
    start_time: str | None = None
    end_time: str | None = None
    contact_id: str | None = None
    company_id: str | None = None
    opportunity_id: str | None = None
    contact: Contact | None = None
    company: Company | None = None
    opportunity: Opportunity | None = None


class Expense(EntityRecord):
    description: str | None = None
    amount: float | None = None
    category: str | None = None
    date: str | None = None
    opportunity_id: str | None = None
    opportunity: Opportunity | None = None

    @property
    def company(self) -> Company | None:
        if self.opportunity is None:
            return None
        return self.opportunity.company


class Competitor(EntityRecord):
    name: str | None = None
    status: str = "Equal"
    strength: str | None = None
    weakness: str | None = None


class Lead(EntityRecord):
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    company_name: str | None = None
    status: str | None = None
    source: str | None = None
    notes: str | None = None


class CRMSettings(EntityRecord):
    user_name: str | None = None
    user_email: str | None = None
    sectors: list[str] = Field(default_factory=list)
    activity_types: list[str] = Field(default_factory=list)


ENTITY_MODELS: dict[EntityType, type[EntityRecord]] = {
    EntityType.CONTACT: Contact,
    EntityType.COMPANY: Company,
    EntityType.OPPORTUNITY: Opportunity,
    EntityType.ACTIVITY: Activity,
    EntityType.EXPENSE: Expense,
    EntityType.COMPETITOR: Competitor,
}

# Embedded snapshot attribute -> (foreign key field, referenced entity type)
RELATIONS: dict[EntityType, dict[str, tuple[str, EntityType]]] = {
    EntityType.CONTACT: {"company": ("company_id", EntityType.COMPANY)},
    EntityType.OPPORTUNITY: {
        "company": ("company_id", EntityType.COMPANY),
        "contact": ("contact_id", EntityType.CONTACT),
    },
    EntityType.ACTIVITY: {
        "contact": ("contact_id", EntityType.CONTACT),
        "company": ("company_id", EntityType.COMPANY),
        "opportunity": ("opportunity_id", EntityType.OPPORTUNITY),
    },
    EntityType.EXPENSE: {"opportunity": ("opportunity_id", EntityType.OPPORTUNITY)},
}

FOREIGN_KEY_FIELDS = frozenset({"company_id", "contact_id", "opportunity_id"})
EMBEDDED_FIELDS = frozenset({"company", "contact", "opportunity"})


class DuplicateSummary(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str | None = None
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    website: str | None = None

    def describe(self) -> str:
        label = self.name or self.id or "unknown"
        details = [value for value in (self.email, self.phone, self.website) if value]
        if details:
            return f"{label} ({', '.join(details)})"
        return label


class Envelope(BaseModel):
    success: bool
    data: Any = None
    error: str | None = None
    duplicate: dict[str, Any] | None = None
    code: str | None = None


class ImportResult(BaseModel):
    imported: int = 0
    skipped: int = 0
    errors: list[str] = Field(default_factory=list)
    duplicates: int = 0
    failed: int = 0
    failures: list[str] = Field(default_factory=list)
    duplicate_records: list[DuplicateSummary] = Field(default_factory=list)


class ImportRowsRequest(BaseModel):
    rows: list[dict[str, Any]] = Field(min_length=1)


class CacheSummaryRead(BaseModel):
    loaded: dict[str, bool]
    settings_loaded: bool
    aggregates: dict[str, Any]


class SelectionRead(BaseModel):
    selected_company: Company | None
    selected_contact: Contact | None
    related_contacts: list[Contact]
    related_companies: list[Company]
