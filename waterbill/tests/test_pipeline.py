import io
from dataclasses import replace
from decimal import Decimal

import pytest

from waterbill.pipeline import (
    UNKNOWN_RT, PipelineFilters, format_for_export, generate_monthly_billing_report, rt_total_bills,
    transform_meter_data_to_billing, validate_data_integrity, write_csv,
)


@pytest.fixture
def village(store):
    """Four households over April and May 2024; Dewi has no May reading."""
    store.save_customers([
        {'id': 1, 'name': 'Budi',  'rt': 'RT 01', 'phone': '081234567890'},
        {'id': 2, 'name': 'Siti',  'rt': 'RT 01', 'phone': ''},
        {'id': 3, 'name': 'Agus',  'rt': 'RT 02', 'phone': ''},
        {'id': 4, 'name': 'Dewi',  'rt': '',      'phone': ''},
    ])
    store.save_readings([
        {'id': 11, 'customer_id': 1, 'reading': 100, 'date': '2024-04-15'},
        {'id': 12, 'customer_id': 1, 'reading': 125, 'date': '2024-05-15'},
        {'id': 21, 'customer_id': 2, 'reading': 50,  'date': '2024-04-15'},
        {'id': 22, 'customer_id': 2, 'reading': 55,  'date': '2024-05-15'},
        {'id': 31, 'customer_id': 3, 'reading': 200, 'date': '2024-05-10'},
        {'id': 41, 'customer_id': 4, 'reading': 70,  'date': '2024-04-10'},
    ])
    store.add_discount({'customer_id': '2', 'discount_percentage': 20, 'reason': 'Lansia',
                        'discount_month': '2024-05'}, skip_sync=True)
    return store


def test_transform_bills_every_reading(village):
    result = transform_meter_data_to_billing(village)

    assert result.errors == []
    assert len(result.data) == 6
    assert result.metrics.total_customers == 4
    # first readings are billed at the fixed fee only
    assert [entry.billing.final_amount for entry in result.data] == [5000, 50000, 5000, 10000, 5000, 5000]
    assert result.metrics.total_usage == 30
    assert result.metrics.total_discounts == 2500
    assert result.metrics.processing_time >= 0


def test_transform_filters(village):
    may = PipelineFilters(start_date='2024-05-01', end_date='2024-05-31')
    assert len(transform_meter_data_to_billing(village, may).data) == 3

    rt = PipelineFilters(rt_numbers=['RT 02'])
    assert [e.customer['name'] for e in transform_meter_data_to_billing(village, rt).data] == ['Agus']

    heavy = PipelineFilters(customer_ids=[1, 2], min_usage=10)
    assert [e.customer['name'] for e in transform_meter_data_to_billing(village, heavy).data] == ['Budi']


def test_transform_reports_bad_rows_and_carries_on(village):
    village.add_customer({'id': '5', 'name': 'Eko', 'rt': 'RT 03'}, skip_sync=True)
    village.add_reading({'customer_id': '5', 'reading': 100, 'date': '2024-04-20'}, skip_sync=True)
    village.add_reading({'customer_id': '5', 'reading': 90,  'date': '2024-05-20'}, skip_sync=True)

    result = transform_meter_data_to_billing(village)

    assert len(result.data) == 7
    assert len(result.errors) == 1
    assert result.errors[0].startswith('Error processing Eko')


def test_monthly_report_summary(village):
    report = generate_monthly_billing_report(village, 2024, 5)
    summary = report.summary

    assert summary['total_customers'] == 3
    assert summary['total_readings'] == 3
    assert summary['total_usage'] == 30
    assert summary['gross_billing'] == 67500
    assert summary['total_discounts'] == 2500
    assert summary['net_billing'] == 65000
    assert summary['average_usage_per_customer'] == 10
    assert summary['average_bill_per_customer'] == 21667


def test_monthly_report_rt_breakdown(village):
    report = generate_monthly_billing_report(village, 2024, 5)

    assert list(report.rt_breakdown) == ['RT 01', 'RT 02']
    assert report.rt_breakdown['RT 01'] == {
        'customers': 2,
        'usage':     Decimal('30'),
        'billing':   Decimal('60000'),
        'discounts': Decimal('2500'),
    }

    only_rt2 = generate_monthly_billing_report(village, 2024, 5, rt_numbers=['RT 02'])
    assert only_rt2.summary['net_billing'] == 5000


def test_monthly_report_rejects_bad_month(village):
    with pytest.raises(ValueError):
        generate_monthly_billing_report(village, 2024, 13)


def test_rt_total_bills_lists_missing_readings(village):
    totals = {t.rt: t for t in rt_total_bills(village, 2024, 5)}

    assert list(totals) == ['RT 01', 'RT 02', UNKNOWN_RT]
    assert totals['RT 01'].total_bill == 60000
    assert totals['RT 01'].average_bill == 30000
    assert totals['RT 01'].has_all_readings

    assert totals[UNKNOWN_RT].missing_readings == ['Dewi']
    assert not totals[UNKNOWN_RT].has_all_readings
    assert totals[UNKNOWN_RT].average_bill == 0


def test_data_integrity(village):
    data = generate_monthly_billing_report(village, 2024, 5).data
    assert validate_data_integrity(data) == (True, [], [])

    broken = replace(data[0], customer={'name': 'X'}, current_reading={})
    heavy  = replace(data[1], usage=replace(data[1].usage, usage=Decimal('150')))
    is_valid, issues, warnings = validate_data_integrity([broken, heavy])

    assert not is_valid
    assert issues == ['Entry 0: missing customer id', 'Entry 0: missing reading id']
    assert warnings == ['Entry 1: high usage (150 m³) for Siti']


def test_csv_export(village):
    rows = format_for_export(generate_monthly_billing_report(village, 2024, 5).data, 'csv')

    budi, siti, _ = rows
    assert list(budi)[:4] == ['Customer', 'RT', 'Phone', 'Reading Date']
    assert budi['Reading Date'] == '2024-05-15'
    assert budi['Previous Reading'] == 100
    assert budi['Usage (m³)'] == 25
    assert budi['Total Bill'] == 50000
    assert siti['Discount Detail'] == '20% (Lansia)'

    stream = io.StringIO()
    assert write_csv(rows, stream) == 3
    assert stream.getvalue().splitlines()[0].startswith('Customer,RT,Phone,Reading Date')
    assert write_csv([], io.StringIO()) == 0


def test_pdf_and_json_export(village):
    data = generate_monthly_billing_report(village, 2024, 5).data

    pdf = format_for_export(data, 'pdf')[0]
    assert pdf['customer']['name'] == 'Budi'
    assert pdf['billing']['tens'] == {'usage': 15, 'price': 30000}
    assert pdf['billing']['final'] == 50000

    as_json = format_for_export(data, 'json')[1]
    assert as_json['billing']['discount']['reason'] == 'Lansia'
    assert as_json['processed_at']

    with pytest.raises(ValueError):
        format_for_export(data, 'xlsx')
