"""
Aggregation Package

Derives every dashboard metric from the merged record set:
- One module per concern (KPIs, trends, demographics, treatments, staff)
- Sections run independently through the engine registry
- Pure functions of (records, tenant selection, date range, today)

Usage:
    from services.aggregation import build_snapshot, DateRange

    snapshot = build_snapshot(records, 'all', DateRange(start, end))
"""

from services.aggregation.base import (
    AggregationContext,
    DateRange,
    filter_by_tenant,
    filter_records,
    reference_date,
)

from services.aggregation.engine import (
    AggregationEngine,
    MetricSnapshot,
    SECTION_ORDER,
    build_snapshot,
)

__all__ = [
    'AggregationContext',
    'AggregationEngine',
    'DateRange',
    'MetricSnapshot',
    'SECTION_ORDER',
    'build_snapshot',
    'filter_by_tenant',
    'filter_records',
    'reference_date',
]
