"""
Aggregation Base - Shared filtering and date helpers for metric sections.

Core components:
- DateRange: inclusive [start, end] filter
- AggregationContext: the inputs every section reads
- filter_by_tenant() / filter_records(): canonical record filters
- reference_date(): the "as of" date for current-month metrics

Scoping rules:
- KPIs, demographics, treatment hierarchy and staff ranking read the
  tenant + date filtered set (`context.filtered`)
- Monthly trend, daily trend and year-over-year read the tenant-only set
  (`context.tenant_records`) so they span all available history

Usage:
    from services.aggregation.base import AggregationContext, DateRange
"""

from dataclasses import dataclass, field
from datetime import date
from typing import Iterable, List, Optional

from constants import ALL_TENANTS
from services.daily_account_mapper import DailyAccountRecord


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class DateRange:
    """Inclusive date range."""
    start: date
    end: date

    def __post_init__(self):
        if self.start > self.end:
            raise ValueError(f"start {self.start} is after end {self.end}")

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end

    @classmethod
    def month_to_date(cls, today: Optional[date] = None) -> 'DateRange':
        """First day of today's month through today."""
        today = today or date.today()
        return cls(today.replace(day=1), today)

    @classmethod
    def resolve(cls, start: Optional[date], end: Optional[date], today: date) -> 'DateRange':
        """
        Fill in missing bounds.

        A missing start is the first day of end's month (this month when end
        is missing too). A missing end is today, or start when start is later.
        """
        if start is None:
            start = (end or today).replace(day=1)
        if end is None:
            end = max(start, today)
        return cls(start, end)

    def to_dict(self):
        return {'start': self.start.isoformat(), 'end': self.end.isoformat()}


@dataclass
class AggregationContext:
    """Inputs shared by every section of a MetricSnapshot."""
    tenant_selection: str
    date_range: DateRange
    today: date
    tenant_records: List[DailyAccountRecord] = field(default_factory=list)
    filtered: List[DailyAccountRecord] = field(default_factory=list)

    @property
    def as_of(self) -> date:
        return reference_date(self.date_range, self.today)

    @property
    def current_month_records(self) -> List[DailyAccountRecord]:
        return records_in_month(self.filtered, self.as_of)


# =============================================================================
# FILTERS
# =============================================================================

def filter_by_tenant(records: Iterable[DailyAccountRecord],
                     tenant_selection: str) -> List[DailyAccountRecord]:
    """Keep records for the selected tenant ('all' keeps everything)."""
    if tenant_selection == ALL_TENANTS:
        return list(records)
    return [r for r in records if r.tenant_id == tenant_selection]


def filter_records(records: Iterable[DailyAccountRecord], tenant_selection: str,
                   date_range: DateRange) -> List[DailyAccountRecord]:
    """tenant in selection AND record_date in [start, end]."""
    return [
        r for r in filter_by_tenant(records, tenant_selection)
        if date_range.contains(r.record_date)
    ]


def records_in_month(records: Iterable[DailyAccountRecord], day: date) -> List[DailyAccountRecord]:
    """Records in the same calendar month as `day`."""
    return [
        r for r in records
        if r.record_date.year == day.year and r.record_date.month == day.month
    ]


def reference_date(date_range: DateRange, today: date) -> date:
    """
    The "current" date for month-scoped metrics.

    A range that ends in the past is viewed as of its end date, so
    filtering to January 2024 reports January 2024 as the current month.
    """
    return min(date_range.end, today)


def safe_divide(numerator: float, denominator: float) -> float:
    """numerator / denominator, or 0.0 when the denominator is 0."""
    if not denominator:
        return 0.0
    return numerator / denominator


def growth_pct(current: float, previous: float) -> float:
    """Percentage change rounded to 2 decimals, 0.0 when previous is 0."""
    if not previous:
        return 0.0
    return round((current - previous) / previous * 100, 2)
