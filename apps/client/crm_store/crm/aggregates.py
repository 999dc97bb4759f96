from __future__ import annotations

from collections.abc import Sequence
from dataclasses import asdict, dataclass
from datetime import date
from typing import Any

from crm_store.crm.schemas import (
    HIGH_PRIORITY,
    SCHEDULED_ACTIVITY_STATUS,
    WON_OPPORTUNITY_STATUS,
    Activity,
    Company,
    Competitor,
    Contact,
    Expense,
    Opportunity,
)


@dataclass(frozen=True)
class Aggregates:
    contact_count: int = 0
    company_count: int = 0
    opportunity_count: int = 0
    active_opportunity_count: int = 0
    high_priority_opportunity_count: int = 0
    activity_count: int = 0
    today_activity_count: int = 0
    scheduled_today_activity_count: int = 0
    expense_count: int = 0
    competitor_count: int = 0
    won_opportunity_amount: float = 0.0

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def compute_aggregates(
    *,
    contacts: Sequence[Contact],
    companies: Sequence[Company],
    opportunities: Sequence[Opportunity],
    activities: Sequence[Activity],
    expenses: Sequence[Expense],
    competitors: Sequence[Competitor],
    today: date,
) -> Aggregates:
    today_prefix = today.isoformat()
    active = [item for item in opportunities if item.is_active]
    todays_activities = [item for item in activities if item.start_time and item.start_time.startswith(today_prefix)]

    return Aggregates(
        contact_count=len(contacts),
        company_count=len(companies),
        opportunity_count=len(opportunities),
        active_opportunity_count=len(active),
        high_priority_opportunity_count=sum(1 for item in active if item.priority == HIGH_PRIORITY),
        activity_count=len(activities),
        today_activity_count=len(todays_activities),
        scheduled_today_activity_count=sum(
            1 for item in todays_activities if item.status == SCHEDULED_ACTIVITY_STATUS
        ),
        expense_count=len(expenses),
        competitor_count=len(competitors),
        won_opportunity_amount=float(
            sum((item.amount or 0.0) for item in opportunities if item.status == WON_OPPORTUNITY_STATUS)
        ),
    )
