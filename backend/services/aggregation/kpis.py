"""
Current-month KPIs: visits, revenue and unit price, split by visit type.

visit count = records dated in the reference month
revenue     = sum of total_amount
unit price  = revenue / visit count (0 when there are no visits)
"""

from dataclasses import dataclass, asdict
from datetime import date
from typing import Any, Dict, Iterable

from services.aggregation.base import AggregationContext, records_in_month, safe_divide
from services.daily_account_mapper import DailyAccountRecord


@dataclass
class CurrentMonthKPIs:
    year: int
    month: int
    visit_count: int = 0
    revenue: float = 0.0
    unit_price: float = 0.0
    first_visit_count: int = 0
    first_visit_revenue: float = 0.0
    first_visit_unit_price: float = 0.0
    repeat_visit_count: int = 0
    repeat_visit_revenue: float = 0.0
    repeat_visit_unit_price: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def compute_current_month_kpis(records: Iterable[DailyAccountRecord], as_of: date) -> CurrentMonthKPIs:
    """Compute KPIs over the records in as_of's calendar month."""
    month_records = records_in_month(records, as_of)
    first = [r for r in month_records if r.is_first_visit]
    repeat = [r for r in month_records if not r.is_first_visit]

    revenue = sum(r.total_amount for r in month_records)
    first_revenue = sum(r.total_amount for r in first)
    repeat_revenue = sum(r.total_amount for r in repeat)

    return CurrentMonthKPIs(
        year=as_of.year,
        month=as_of.month,
        visit_count=len(month_records),
        revenue=revenue,
        unit_price=safe_divide(revenue, len(month_records)),
        first_visit_count=len(first),
        first_visit_revenue=first_revenue,
        first_visit_unit_price=safe_divide(first_revenue, len(first)),
        repeat_visit_count=len(repeat),
        repeat_visit_revenue=repeat_revenue,
        repeat_visit_unit_price=safe_divide(repeat_revenue, len(repeat)),
    )


def current_month_section(context: AggregationContext) -> Dict[str, Any]:
    return compute_current_month_kpis(context.filtered, context.as_of).to_dict()
