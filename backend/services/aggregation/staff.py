"""
Staff sales ranking over the filtered records.

Staff attribution: primary line item's staff, else the reservation staff,
else 'unknown'. Sorted by revenue descending, then name.
"""

from collections import defaultdict
from typing import Any, Dict, Iterable, List

from constants import UNKNOWN_LABEL
from services.aggregation.base import AggregationContext, safe_divide
from services.daily_account_mapper import DailyAccountRecord


def staff_name_for(record: DailyAccountRecord) -> str:
    item = record.primary_line_item
    if item is not None and item.staff_name:
        return item.staff_name
    return record.reservation_staff_name or UNKNOWN_LABEL


def compute_staff_ranking(records: Iterable[DailyAccountRecord]) -> List[Dict[str, Any]]:
    revenue = defaultdict(float)
    visits = defaultdict(int)
    for record in records:
        name = staff_name_for(record)
        revenue[name] += record.total_amount
        visits[name] += 1

    ranking = sorted(revenue, key=lambda name: (-revenue[name], name))
    return [
        {
            'rank': i + 1,
            'staff_name': name,
            'revenue': revenue[name],
            'visits': visits[name],
            'unit_price': safe_divide(revenue[name], visits[name]),
        }
        for i, name in enumerate(ranking)
    ]


def staff_ranking_section(context: AggregationContext) -> List[Dict[str, Any]]:
    return compute_staff_ranking(context.filtered)
