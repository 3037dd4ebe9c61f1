"""
Aggregation Engine - Central runner for all snapshot sections.

The coordinator and routes call this, not individual section modules.
Each section runs independently: a section that raises is logged and
replaced by an empty value so the rest of the snapshot still renders.

Usage:
    from services.aggregation.engine import build_snapshot

    snapshot = build_snapshot(records, 'yokohama', DateRange(start, end))
    payload = snapshot.to_dict()
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from services.aggregation.base import (
    AggregationContext,
    DateRange,
    filter_by_tenant,
    filter_records,
)
from services.aggregation.demographics import demographics_section
from services.aggregation.kpis import current_month_section
from services.aggregation.staff import staff_ranking_section
from services.aggregation.treatment_hierarchy import treatment_hierarchy_section
from services.aggregation.trends import (
    daily_trend_section,
    monthly_trend_section,
    year_over_year_section,
)
from services.daily_account_mapper import DailyAccountRecord

logger = logging.getLogger(__name__)


# =============================================================================
# SECTION REGISTRY
# =============================================================================

# Explicit order - snapshot payload relies on this (stable, deterministic)
SECTION_ORDER = [
    'current_month_kpis',
    'monthly_trend',
    'daily_trend',
    'year_over_year',
    'demographics',
    'treatment_hierarchy',
    'staff_ranking',
]

SECTION_REGISTRY: Dict[str, Callable[[AggregationContext], Any]] = {
    'current_month_kpis': current_month_section,
    'monthly_trend': monthly_trend_section,
    'daily_trend': daily_trend_section,
    'year_over_year': year_over_year_section,
    'demographics': demographics_section,
    'treatment_hierarchy': treatment_hierarchy_section,
    'staff_ranking': staff_ranking_section,
}

# Value used when a section fails
SECTION_EMPTY = {
    'current_month_kpis': {},
    'monthly_trend': [],
    'daily_trend': [],
    'year_over_year': {},
    'demographics': {},
    'treatment_hierarchy': [],
    'staff_ranking': [],
}


# =============================================================================
# SNAPSHOT
# =============================================================================

@dataclass
class MetricSnapshot:
    """All derived metrics for one (tenant selection, date range)."""
    tenant_selection: str
    date_range: DateRange
    as_of: date
    record_count: int
    sections: Dict[str, Any] = field(default_factory=dict)
    errors: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        payload = {
            'tenant_selection': self.tenant_selection,
            'date_range': self.date_range.to_dict(),
            'as_of': self.as_of.isoformat(),
            'record_count': self.record_count,
        }
        for name in SECTION_ORDER:
            payload[name] = self.sections.get(name, SECTION_EMPTY[name])
        payload['errors'] = list(self.errors)
        return payload


def run_section(name: str, context: AggregationContext) -> Tuple[Any, Optional[str]]:
    """
    Run a single section safely.

    Returns:
        (value, error). A failed section yields its empty value and the error text.
    """
    try:
        return SECTION_REGISTRY[name](context), None
    except Exception as e:
        logger.error(f"Snapshot section {name} failed: {e}", exc_info=True)
        return SECTION_EMPTY[name], str(e)


def build_snapshot(
    records: Iterable[DailyAccountRecord],
    tenant_selection: str = 'all',
    date_range: Optional[DateRange] = None,
    today: Optional[date] = None,
) -> MetricSnapshot:
    """
    Build a MetricSnapshot from the merged dataset.

    Pure: the same inputs always give the same snapshot.

    Args:
        records: Merged dataset (all tenants)
        tenant_selection: 'all' or a tenant id
        date_range: Inclusive filter; defaults to month-to-date
        today: Override for the current date (tests)

    Returns:
        MetricSnapshot
    """
    today = today or date.today()
    date_range = date_range or DateRange.month_to_date(today)
    records = list(records)

    tenant_records = filter_by_tenant(records, tenant_selection)
    context = AggregationContext(
        tenant_selection=tenant_selection,
        date_range=date_range,
        today=today,
        tenant_records=tenant_records,
        filtered=filter_records(tenant_records, tenant_selection, date_range),
    )

    snapshot = MetricSnapshot(
        tenant_selection=tenant_selection,
        date_range=date_range,
        as_of=context.as_of,
        record_count=len(context.filtered),
    )

    for name in SECTION_ORDER:
        value, error = run_section(name, context)
        snapshot.sections[name] = value
        if error is not None:
            snapshot.errors.append({"section": name, "error": error})

    if snapshot.errors:
        logger.warning(
            f"Snapshot completed with {len(snapshot.errors)} section errors: {snapshot.errors}"
        )

    return snapshot


class AggregationEngine:
    """Object wrapper for callers that inject the engine (coordinator, tests)."""

    def __init__(self, today: Callable[[], date] = date.today):
        self._today = today

    def build_snapshot(self, records: Iterable[DailyAccountRecord], tenant_selection: str = 'all',
                       date_range: Optional[DateRange] = None) -> MetricSnapshot:
        return build_snapshot(records, tenant_selection, date_range, today=self._today())
