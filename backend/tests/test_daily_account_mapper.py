"""
Tests for Daily Account Mapper

Field fallback chains, amount parsing, line items and skip accounting.
"""

import pytest
from datetime import date

from services.daily_account_mapper import (
    DailyAccountMapper,
    DailyAccountRecord,
    normalize_record,
    parse_amount,
    parse_record_date,
)


@pytest.fixture
def full_raw():
    """A daily-accounts value with every field populated."""
    return {
        'visitorId': 'V0001',
        'visitorCode': 'C-99',
        'recordDate': '2024-01-05T10:30:00+09:00',
        'totalWithTax': 10000,
        'cancelPriceWithTax': 1000,
        'refundPriceWithTax': None,
        'isFirst': True,
        'visitorAge': '34',
        'visitorGender': '女性',
        'visitorInflowSourceName': 'Instagram',
        'reservationStaffName': ' 佐藤 ',
        'someNewUpstreamField': {'ignored': True},
        'paymentItems': [
            {
                'category': '美容外科',
                'name': '二重埋没法',
                'mainStaffName': '田中',
                'priceWithTax': 10000,
                'discounts': {'campaign': 500, 'member': '200'},
                'advancePaymentPriceWithTax': 3000,
            },
            {'category': '物販', 'name': 'ビタミンC', 'priceWithTax': '1500'},
        ],
    }


# =============================================================================
# Parsing Helpers
# =============================================================================

class TestParseHelpers:

    def test_record_date_uses_first_ten_chars(self):
        assert parse_record_date('2024-01-05') == date(2024, 1, 5)
        assert parse_record_date('2024-01-05T23:59:59+09:00') == date(2024, 1, 5)

    def test_record_date_invalid(self):
        assert parse_record_date('') is None
        assert parse_record_date(None) is None
        assert parse_record_date('05/01/2024') is None

    def test_amount(self):
        assert parse_amount(1200) == 1200.0
        assert parse_amount('1200.5') == 1200.5
        assert parse_amount(None) == 0.0
        assert parse_amount('') == 0.0
        assert parse_amount('abc') == 0.0
        assert parse_amount(float('nan')) == 0.0


# =============================================================================
# Mapping
# =============================================================================

class TestMapValue:

    def test_full_record(self, full_raw):
        record = normalize_record(full_raw, 'yokohama')

        assert record.tenant_id == 'yokohama'
        assert record.visitor_identity == 'V0001'
        assert record.record_date == date(2024, 1, 5)
        assert record.total_amount == 10000.0
        assert record.cancel_amount == 1000.0
        assert record.refund_amount == 0.0
        assert record.net_total == 9000.0
        assert record.is_first_visit is True
        assert record.visitor_age == 34
        assert record.visitor_gender == '女性'
        assert record.inflow_source == 'Instagram'
        assert record.reservation_staff_name == '佐藤'

    def test_line_items(self, full_raw):
        record = normalize_record(full_raw, 'yokohama')

        assert len(record.line_items) == 2
        first = record.primary_line_item
        assert first.category == '美容外科'
        assert first.name == '二重埋没法'
        assert first.staff_name == '田中'
        assert first.price_with_tax == 10000.0
        assert first.discount == 700.0
        assert first.advance_payment == 3000.0

        second = record.line_items[1]
        assert second.staff_name is None
        assert second.price_with_tax == 1500.0
        assert second.discount == 0.0

    def test_explicit_net_total_wins(self, full_raw):
        full_raw['netTotal'] = 8500
        assert normalize_record(full_raw, 'mito').net_total == 8500.0

    def test_missing_total_is_zero(self, full_raw):
        del full_raw['totalWithTax']
        assert normalize_record(full_raw, 'mito').total_amount == 0.0

    @pytest.mark.parametrize("field,value", [
        ('visitDate', '2024-02-01'),
        ('operateDate', '2024-02-01T09:00:00'),
        ('confirmedAt', '2024-02-01T18:45:12.000Z'),
    ])
    def test_date_fallback_chain(self, field, value):
        raw = {'visitorId': 'V1', field: value}
        assert normalize_record(raw, 'omiya').record_date == date(2024, 2, 1)

    def test_record_date_preferred_over_fallbacks(self):
        raw = {'visitorId': 'V1', 'recordDate': '2024-03-01', 'operateDate': '2024-02-01'}
        assert normalize_record(raw, 'omiya').record_date == date(2024, 3, 1)

    def test_identity_fallback_chain(self):
        assert normalize_record(
            {'visitorCode': 'C-1', 'recordDate': '2024-01-01'}, 'mito'
        ).visitor_identity == 'C-1'
        assert normalize_record(
            {'visitorKarteNumber': 4521, 'recordDate': '2024-01-01'}, 'mito'
        ).visitor_identity == '4521'

    def test_inflow_label_fallback(self):
        raw = {'visitorId': 'V1', 'recordDate': '2024-01-01', 'visitorInflowSourceLabel': 'Google'}
        assert normalize_record(raw, 'mito').inflow_source == 'Google'

    def test_optional_fields_absent(self):
        record = normalize_record({'visitorId': 'V1', 'recordDate': '2024-01-01'}, 'mito')
        assert record.inflow_source is None
        assert record.visitor_age is None
        assert record.visitor_gender is None
        assert record.line_items == ()
        assert record.primary_line_item is None
        assert record.is_first_visit is False

    def test_missing_date_skipped(self):
        assert normalize_record({'visitorId': 'V1'}, 'mito') is None

    def test_missing_identity_skipped(self):
        assert normalize_record({'recordDate': '2024-01-01'}, 'mito') is None

    def test_identity_key(self, full_raw):
        record = normalize_record(full_raw, 'koriyama')
        assert record.identity_key == ('koriyama', 'V0001', date(2024, 1, 5))


class TestMapValues:

    def test_counts_skips(self, full_raw):
        mapper = DailyAccountMapper()
        records = mapper.map_values(
            [full_raw, {'visitorId': 'V2'}, {'recordDate': '2024-01-02'}, 'garbage'],
            'yokohama',
        )

        assert len(records) == 1
        stats = mapper.get_stats()
        assert stats['values_processed'] == 3
        assert stats['records_mapped'] == 1
        assert stats['records_skipped'] == 3
        assert stats['skip_missing_date'] == 1
        assert stats['skip_missing_identity'] == 1
        assert stats['skip_exception'] == 1

    def test_none_values_is_empty(self):
        assert DailyAccountMapper().map_values(None, 'mito') == []

    def test_reset_stats(self, full_raw):
        mapper = DailyAccountMapper()
        mapper.map_values([full_raw], 'mito')
        mapper.reset_stats()
        assert all(v == 0 for v in mapper.get_stats().values())


class TestSerialization:

    def test_dict_round_trip_preserves_record(self, full_raw):
        """Cache payloads rebuild an equal record."""
        record = normalize_record(full_raw, 'yokohama')
        data = record.to_dict()

        assert data['record_date'] == '2024-01-05'
        assert DailyAccountRecord.from_dict(data) == record
