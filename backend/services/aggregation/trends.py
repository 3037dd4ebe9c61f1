"""
Trend sections - monthly, daily and year-over-year.

All three read the tenant-scoped records (not the date filter), so the
monthly chart always shows every month with data.

- monthly: one bucket per calendar month from the first to the last month
  present, zero-filled, chronological. Labels "YYYY-MM".
- daily: exactly DAILY_WINDOW_DAYS buckets ending at the reference date,
  zero-filled. Labels "YYYY-MM-DD".
- year-over-year: [as_of - 6 months, as_of] vs [as_of - 12 months, as_of - 6 months).
"""

import logging
from dataclasses import dataclass, asdict
from datetime import date
from typing import Any, Dict, List, Sequence

import pandas as pd
from dateutil.relativedelta import relativedelta

from services.aggregation.base import AggregationContext, growth_pct
from services.daily_account_mapper import DailyAccountRecord

logger = logging.getLogger(__name__)

DAILY_WINDOW_DAYS = 30
YOY_WINDOW_MONTHS = 6


def _to_frame(records: Sequence[DailyAccountRecord]) -> pd.DataFrame:
    return pd.DataFrame(
        {
            'record_date': pd.to_datetime([r.record_date for r in records]),
            'amount': [float(r.total_amount) for r in records],
        },
        columns=['record_date', 'amount'],
    )


def _bucket_rows(grouped: pd.DataFrame, label_format) -> List[Dict[str, Any]]:
    return [
        {
            'label': label_format(idx),
            'visits': int(row['visits']),
            'revenue': float(row['revenue']),
        }
        for idx, row in grouped.iterrows()
    ]


# =============================================================================
# MONTHLY
# =============================================================================

def compute_monthly_trend(records: Sequence[DailyAccountRecord]) -> List[Dict[str, Any]]:
    """
    Visits and revenue per calendar month, zero-filled.

    Returns:
        [{label: 'YYYY-MM', visits, revenue}, ...] in chronological order,
        or [] when there are no records.
    """
    if not records:
        return []

    df = _to_frame(records)
    df['period'] = df['record_date'].dt.to_period('M')

    grouped = df.groupby('period').agg(
        visits=('amount', 'size'),
        revenue=('amount', 'sum'),
    )
    full_index = pd.period_range(
        start=grouped.index.min(), end=grouped.index.max(), freq='M'
    )
    grouped = grouped.reindex(full_index, fill_value=0)

    return _bucket_rows(grouped, lambda p: p.strftime('%Y-%m'))


# =============================================================================
# DAILY
# =============================================================================

def compute_daily_trend(records: Sequence[DailyAccountRecord], as_of: date,
                        window_days: int = DAILY_WINDOW_DAYS) -> List[Dict[str, Any]]:
    """
    Visits and revenue per day for the window ending at as_of.

    Returns:
        Exactly window_days buckets, oldest first.
    """
    days = pd.date_range(end=pd.Timestamp(as_of), periods=window_days, freq='D')

    if records:
        df = _to_frame(records)
        grouped = df.groupby('record_date').agg(
            visits=('amount', 'size'),
            revenue=('amount', 'sum'),
        )
    else:
        grouped = pd.DataFrame({'visits': [], 'revenue': []})

    grouped = grouped.reindex(days, fill_value=0)
    return _bucket_rows(grouped, lambda ts: ts.strftime('%Y-%m-%d'))


# =============================================================================
# YEAR OVER YEAR
# =============================================================================

@dataclass
class YearOverYear:
    current_start: str
    current_end: str
    previous_start: str
    previous_end_exclusive: str
    current_visits: int
    previous_visits: int
    visit_growth_pct: float
    current_revenue: float
    previous_revenue: float
    revenue_growth_pct: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def compute_year_over_year(records: Sequence[DailyAccountRecord], as_of: date,
                           window_months: int = YOY_WINDOW_MONTHS) -> YearOverYear:
    """
    Compare the trailing window against the one before it.

    growth = (current - previous) / previous * 100, 0 when previous is 0.
    """
    current_start = as_of - relativedelta(months=window_months)
    previous_start = as_of - relativedelta(months=window_months * 2)

    current = [r for r in records if current_start <= r.record_date <= as_of]
    previous = [r for r in records if previous_start <= r.record_date < current_start]

    current_revenue = sum(r.total_amount for r in current)
    previous_revenue = sum(r.total_amount for r in previous)

    return YearOverYear(
        current_start=current_start.isoformat(),
        current_end=as_of.isoformat(),
        previous_start=previous_start.isoformat(),
        previous_end_exclusive=current_start.isoformat(),
        current_visits=len(current),
        previous_visits=len(previous),
        visit_growth_pct=growth_pct(len(current), len(previous)),
        current_revenue=current_revenue,
        previous_revenue=previous_revenue,
        revenue_growth_pct=growth_pct(current_revenue, previous_revenue),
    )


# =============================================================================
# SECTIONS
# =============================================================================

def monthly_trend_section(context: AggregationContext) -> List[Dict[str, Any]]:
    return compute_monthly_trend(context.tenant_records)


def daily_trend_section(context: AggregationContext) -> List[Dict[str, Any]]:
    return compute_daily_trend(context.tenant_records, context.as_of)


def year_over_year_section(context: AggregationContext) -> Dict[str, Any]:
    return compute_year_over_year(context.tenant_records, context.as_of).to_dict()
