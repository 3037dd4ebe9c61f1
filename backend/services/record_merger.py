"""
Record Merger - Deduplicate and merge daily-account batches.

The identity key (tenant_id, visitor_identity, record_date) is unique in a
merged dataset. Existing records go in first and incoming records second,
so an incoming record with the same key replaces the existing one.

Usage:
    from services.record_merger import merge_records

    merged = merge_records(history, recent_window)
"""

from typing import Dict, Iterable, List, Tuple
from datetime import date

from services.daily_account_mapper import DailyAccountRecord


def merge_records(
    existing: Iterable[DailyAccountRecord],
    incoming: Iterable[DailyAccountRecord]
) -> List[DailyAccountRecord]:
    """
    Merge two record batches with last-write-wins on identity key.

    Neither input is mutated. Output order is first-seen key order, with a
    replaced record keeping the position of the one it replaced.

    Args:
        existing: Records already in the dataset
        incoming: Newly fetched records

    Returns:
        Deduplicated list of records
    """
    by_key: Dict[Tuple[str, str, date], DailyAccountRecord] = {}
    for record in existing:
        by_key[record.identity_key] = record
    for record in incoming:
        by_key[record.identity_key] = record
    return list(by_key.values())


def merge_many(batches: Iterable[Iterable[DailyAccountRecord]]) -> List[DailyAccountRecord]:
    """Fold merge_records over batches in order (later batches win)."""
    merged: List[DailyAccountRecord] = []
    for batch in batches:
        merged = merge_records(merged, batch)
    return merged
