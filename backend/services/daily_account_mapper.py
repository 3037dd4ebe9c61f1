"""
Daily Account Mapper - Normalize Medical Force daily-account payloads

Converts the loosely-typed `values` entries of the daily-accounts endpoint
into DailyAccountRecord / PaymentLineItem objects. This is the only place
that knows about upstream field names and fallback chains; everything
downstream (cache, merger, aggregation) works with the normalized types.

Fallback chains:
- record date:   recordDate | visitDate | operateDate | confirmedAt (first 10 chars)
- visitor id:    visitorId | visitorCode | visitorKarteNumber
- inflow source: visitorInflowSourceName | visitorInflowSourceLabel

Unknown fields are ignored so additive upstream changes never break a sync.

Usage:
    from services.daily_account_mapper import DailyAccountMapper

    mapper = DailyAccountMapper()
    records = mapper.map_values(page.values, tenant_id='yokohama')
    print(mapper.get_stats())
"""

import logging
from dataclasses import dataclass, field, asdict
from datetime import date
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

# Public API
__all__ = [
    'PaymentLineItem',
    'DailyAccountRecord',
    'DailyAccountMapper',
    'normalize_record',
    'parse_record_date',
    'parse_amount',
]


# =============================================================================
# Field Fallback Chains
# =============================================================================

DATE_FIELDS = ('recordDate', 'visitDate', 'operateDate', 'confirmedAt')
IDENTITY_FIELDS = ('visitorId', 'visitorCode', 'visitorKarteNumber')
INFLOW_SOURCE_FIELDS = ('visitorInflowSourceName', 'visitorInflowSourceLabel')


# =============================================================================
# Normalized Types
# =============================================================================

@dataclass(frozen=True)
class PaymentLineItem:
    """One billed item within a daily account."""
    category: str = ''
    name: str = ''
    staff_name: Optional[str] = None
    price_with_tax: float = 0.0
    discount: float = 0.0
    advance_payment: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PaymentLineItem':
        return cls(
            category=data.get('category') or '',
            name=data.get('name') or '',
            staff_name=data.get('staff_name'),
            price_with_tax=float(data.get('price_with_tax') or 0),
            discount=float(data.get('discount') or 0),
            advance_payment=float(data.get('advance_payment') or 0),
        )


@dataclass(frozen=True)
class DailyAccountRecord:
    """
    One visitor's account for one day at one clinic.

    Identity is (tenant_id, visitor_identity, record_date). Two records with
    the same identity describe the same posting; the later one wins on merge.
    """
    tenant_id: str
    visitor_identity: str
    record_date: date
    total_amount: float = 0.0
    is_first_visit: bool = False
    inflow_source: Optional[str] = None
    visitor_age: Optional[int] = None
    visitor_gender: Optional[str] = None
    line_items: Tuple[PaymentLineItem, ...] = field(default_factory=tuple)
    cancel_amount: float = 0.0
    refund_amount: float = 0.0
    net_total: float = 0.0
    reservation_staff_name: Optional[str] = None

    @property
    def identity_key(self) -> Tuple[str, str, date]:
        return (self.tenant_id, self.visitor_identity, self.record_date)

    @property
    def primary_line_item(self) -> Optional[PaymentLineItem]:
        """First line item, which drives treatment classification."""
        return self.line_items[0] if self.line_items else None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a JSON-compatible dict (used by the cache)."""
        data = asdict(self)
        data['record_date'] = self.record_date.isoformat()
        data['line_items'] = [item.to_dict() for item in self.line_items]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DailyAccountRecord':
        return cls(
            tenant_id=data['tenant_id'],
            visitor_identity=data['visitor_identity'],
            record_date=date.fromisoformat(data['record_date']),
            total_amount=float(data.get('total_amount') or 0),
            is_first_visit=bool(data.get('is_first_visit')),
            inflow_source=data.get('inflow_source'),
            visitor_age=data.get('visitor_age'),
            visitor_gender=data.get('visitor_gender'),
            line_items=tuple(
                PaymentLineItem.from_dict(item)
                for item in data.get('line_items') or []
            ),
            cancel_amount=float(data.get('cancel_amount') or 0),
            refund_amount=float(data.get('refund_amount') or 0),
            net_total=float(data.get('net_total') or 0),
            reservation_staff_name=data.get('reservation_staff_name'),
        )


# =============================================================================
# Field Parsing Helpers
# =============================================================================

def _first_present(raw: Dict[str, Any], fields: Tuple[str, ...]) -> Optional[Any]:
    """Return the first non-empty value among fields."""
    for name in fields:
        value = raw.get(name)
        if value not in (None, ''):
            return value
    return None


def parse_record_date(value: Any) -> Optional[date]:
    """
    Parse an upstream date/datetime string to a date.

    Only the first 10 characters (YYYY-MM-DD) are used, so both
    '2024-01-05' and '2024-01-05T10:30:00+09:00' parse to 2024-01-05.
    """
    if not value:
        return None
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        logger.debug(f"Failed to parse record date: '{value}'")
        return None


def parse_amount(value: Any, field_name: str = "unknown") -> float:
    """Parse a money amount, returning 0.0 for missing or malformed input."""
    if value is None or value == '':
        return 0.0
    try:
        result = float(value)
        if result != result:  # NaN check
            return 0.0
        return result
    except (ValueError, TypeError):
        logger.debug(f"Failed to parse {field_name} as amount: '{value}'")
        return 0.0


def _parse_age(value: Any) -> Optional[int]:
    if value is None or value == '':
        return None
    try:
        return int(float(value))
    except (ValueError, TypeError):
        return None


def _sum_discounts(discounts: Any) -> float:
    """Line item discounts arrive as a {name: amount} map."""
    if not isinstance(discounts, dict):
        return 0.0
    return sum(parse_amount(v, 'discount') for v in discounts.values())


def normalize_line_item(raw: Dict[str, Any]) -> PaymentLineItem:
    """Normalize one raw paymentItems entry."""
    return PaymentLineItem(
        category=str(raw.get('category') or '').strip(),
        name=str(raw.get('name') or '').strip(),
        staff_name=(str(raw['mainStaffName']).strip() or None)
        if raw.get('mainStaffName') else None,
        price_with_tax=parse_amount(raw.get('priceWithTax'), 'priceWithTax'),
        discount=_sum_discounts(raw.get('discounts')),
        advance_payment=parse_amount(
            raw.get('advancePaymentPriceWithTax'), 'advancePaymentPriceWithTax'
        ),
    )


def normalize_record(raw: Dict[str, Any], tenant_id: str) -> Optional[DailyAccountRecord]:
    """
    Normalize one raw daily-account value.

    Args:
        raw: Entry from the daily-accounts `values` array
        tenant_id: Tenant the entry was fetched for

    Returns:
        DailyAccountRecord, or None if the entry has no usable date or visitor
    """
    return DailyAccountMapper().map_value(raw, tenant_id)


# =============================================================================
# Mapper
# =============================================================================

class DailyAccountMapper:
    """
    Maps daily-account payload entries to DailyAccountRecord.

    Keeps skip counters so a sync can report how many entries were dropped
    and why.
    """

    def __init__(self):
        self._stats = {
            'values_processed': 0,
            'records_mapped': 0,
            'records_skipped': 0,
            'skip_missing_date': 0,
            'skip_missing_identity': 0,
            'skip_exception': 0,
        }

    def reset_stats(self) -> None:
        """Reset processing statistics."""
        for key in self._stats:
            self._stats[key] = 0

    def get_stats(self) -> Dict[str, int]:
        """Get processing statistics."""
        return dict(self._stats)

    def map_value(self, raw: Dict[str, Any], tenant_id: str) -> Optional[DailyAccountRecord]:
        self._stats['values_processed'] += 1

        record_date = parse_record_date(_first_present(raw, DATE_FIELDS))
        if record_date is None:
            self._stats['skip_missing_date'] += 1
            self._stats['records_skipped'] += 1
            return None

        identity = _first_present(raw, IDENTITY_FIELDS)
        if identity is None:
            self._stats['skip_missing_identity'] += 1
            self._stats['records_skipped'] += 1
            return None

        total = parse_amount(raw.get('totalWithTax'), 'totalWithTax')
        cancel = parse_amount(raw.get('cancelPriceWithTax'), 'cancelPriceWithTax')
        refund = parse_amount(raw.get('refundPriceWithTax'), 'refundPriceWithTax')
        if raw.get('netTotal') is not None:
            net_total = parse_amount(raw.get('netTotal'), 'netTotal')
        else:
            net_total = total - cancel - refund

        items = raw.get('paymentItems')
        line_items = tuple(
            normalize_line_item(item)
            for item in (items if isinstance(items, list) else [])
            if isinstance(item, dict)
        )

        inflow = _first_present(raw, INFLOW_SOURCE_FIELDS)
        gender = raw.get('visitorGender')
        staff = raw.get('reservationStaffName')

        self._stats['records_mapped'] += 1
        return DailyAccountRecord(
            tenant_id=tenant_id,
            visitor_identity=str(identity).strip(),
            record_date=record_date,
            total_amount=total,
            is_first_visit=bool(raw.get('isFirst')),
            inflow_source=str(inflow).strip() if inflow is not None else None,
            visitor_age=_parse_age(raw.get('visitorAge')),
            visitor_gender=str(gender).strip() if gender else None,
            line_items=line_items,
            cancel_amount=cancel,
            refund_amount=refund,
            net_total=net_total,
            reservation_staff_name=str(staff).strip() if staff else None,
        )

    def map_values(
        self,
        values: Optional[List[Dict[str, Any]]],
        tenant_id: str
    ) -> List[DailyAccountRecord]:
        """
        Map a whole `values` array.

        Args:
            values: Raw entries (None is treated as empty)
            tenant_id: Tenant the entries belong to

        Returns:
            Normalized records, in input order
        """
        records = []
        for raw in values or []:
            if not isinstance(raw, dict):
                self._stats['records_skipped'] += 1
                self._stats['skip_exception'] += 1
                continue
            record = self.map_value(raw, tenant_id)
            if record is not None:
                records.append(record)

        if self._stats['records_skipped']:
            logger.info(
                f"[{tenant_id}] Mapped {self._stats['records_mapped']} records, "
                f"{self._stats['records_skipped']} skipped "
                f"(date={self._stats['skip_missing_date']}, "
                f"identity={self._stats['skip_missing_identity']})"
            )
        return records
