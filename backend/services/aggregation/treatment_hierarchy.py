"""
Treatment hierarchy: revenue and visit count per specialty and subcategory.

Each record is classified by its primary (first) line item. Records without
line items go through the classifier with empty inputs and land in the
fallback bucket. Every taxonomy node is always present, zero-filled.
"""

from typing import Any, Dict, Iterable, List

from services.aggregation.base import AggregationContext, safe_divide
from services.daily_account_mapper import DailyAccountRecord
from services.treatment_classifier import (
    SPECIALTIES,
    SPECIALTY_LABELS,
    TAXONOMY,
    classify,
    get_category_label,
    iter_taxonomy,
    make_category_id,
)


def compute_treatment_hierarchy(records: Iterable[DailyAccountRecord]) -> List[Dict[str, Any]]:
    """
    Roll records up into the fixed specialty -> subcategory taxonomy.

    Returns:
        [{specialty, label, revenue, count, avg_unit_price,
          subcategories: [{subcategory, category_id, label, revenue, count, avg_unit_price}]}]
    """
    totals = {category_id: [0.0, 0] for _, _, category_id in iter_taxonomy()}

    for record in records:
        item = record.primary_line_item
        if item is None:
            result = classify(None, None)
        else:
            result = classify(item.category, item.name)
        bucket = totals[result.category_id]
        bucket[0] += record.total_amount
        bucket[1] += 1

    hierarchy = []
    for specialty in SPECIALTIES:
        subcategories = []
        for subcategory in TAXONOMY[specialty]:
            category_id = make_category_id(specialty, subcategory)
            revenue, count = totals[category_id]
            subcategories.append({
                'subcategory': subcategory,
                'category_id': category_id,
                'label': get_category_label(category_id),
                'revenue': revenue,
                'count': count,
                'avg_unit_price': safe_divide(revenue, count),
            })

        revenue = sum(s['revenue'] for s in subcategories)
        count = sum(s['count'] for s in subcategories)
        hierarchy.append({
            'specialty': specialty,
            'label': SPECIALTY_LABELS[specialty],
            'revenue': revenue,
            'count': count,
            'avg_unit_price': safe_divide(revenue, count),
            'subcategories': subcategories,
        })

    return hierarchy


def treatment_hierarchy_section(context: AggregationContext) -> List[Dict[str, Any]]:
    return compute_treatment_hierarchy(context.filtered)
