"""
Demographic histograms over the reference month's visits.

Each histogram is a pair of parallel arrays (labels, values) sorted by
descending count, ties broken by label.

Buckets:
- age: <20 -> '10s', 20-29 -> '20s' ... 60-69 -> '60s', >=70 -> '70+', missing -> 'unknown'
- gender: male / female / other
- inflow source: raw source name, missing -> 'unknown'
- visit type: first / repeat
- clinic: clinic display name
"""

from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from constants import (
    AGE_GROUP_70_PLUS,
    AGE_GROUP_UNDER_20,
    GENDER_ALIASES,
    GENDER_OTHER,
    UNKNOWN_LABEL,
    VISIT_TYPE_FIRST,
    VISIT_TYPE_REPEAT,
    get_tenant_display_name,
)
from services.aggregation.base import AggregationContext
from services.daily_account_mapper import DailyAccountRecord


@dataclass
class Histogram:
    labels: List[str] = field(default_factory=list)
    values: List[int] = field(default_factory=list)

    @classmethod
    def from_counter(cls, counter: Counter) -> 'Histogram':
        ordered = sorted(counter.items(), key=lambda kv: (-kv[1], kv[0]))
        return cls(
            labels=[label for label, _ in ordered],
            values=[count for _, count in ordered],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {'labels': list(self.labels), 'values': list(self.values)}


def age_group(age: Optional[int]) -> str:
    if age is None:
        return UNKNOWN_LABEL
    if age < 20:
        return AGE_GROUP_UNDER_20
    if age >= 70:
        return AGE_GROUP_70_PLUS
    return f"{(age // 10) * 10}s"


def normalize_gender(gender: Optional[str]) -> str:
    if not gender:
        return GENDER_OTHER
    return GENDER_ALIASES.get(gender.strip().lower(), GENDER_OTHER)


def visit_type(record: DailyAccountRecord) -> str:
    return VISIT_TYPE_FIRST if record.is_first_visit else VISIT_TYPE_REPEAT


def compute_demographics(records: Iterable[DailyAccountRecord]) -> Dict[str, Dict[str, Any]]:
    """Build every demographic histogram from one pass over the records."""
    ages, genders, sources, visit_types, clinics = (Counter() for _ in range(5))

    for r in records:
        ages[age_group(r.visitor_age)] += 1
        genders[normalize_gender(r.visitor_gender)] += 1
        sources[r.inflow_source or UNKNOWN_LABEL] += 1
        visit_types[visit_type(r)] += 1
        clinics[get_tenant_display_name(r.tenant_id)] += 1

    return {
        'age': Histogram.from_counter(ages).to_dict(),
        'gender': Histogram.from_counter(genders).to_dict(),
        'inflow_source': Histogram.from_counter(sources).to_dict(),
        'visit_type': Histogram.from_counter(visit_types).to_dict(),
        'clinic': Histogram.from_counter(clinics).to_dict(),
    }


def demographics_section(context: AggregationContext) -> Dict[str, Dict[str, Any]]:
    return compute_demographics(context.current_month_records)
