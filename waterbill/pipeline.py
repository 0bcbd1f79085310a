"""
Reporting pipeline: runs the usage/billing calculator over a filtered set
of cached customers and readings and aggregates the results for monthly
reports, RT collection sheets and exports.
"""
import csv
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, time as dt_time
from decimal import Decimal
from typing import Optional

from django.utils import timezone

from .results import MonthlyReport, PipelineMetrics, PipelineResult, ProcessedMeterData, RTTotalBill
from .services import calculate_billing, calculate_usage
from .utils import month_bounds, parse_reading_date, round_rupiah, to_decimal

logger = logging.getLogger(__name__)

UNKNOWN_RT   = 'Unknown'
HIGH_USAGE   = 100
EXPORT_TYPES = ('csv', 'pdf', 'json')


@dataclass
class PipelineFilters:
    start_date: Optional[object] = None
    end_date: Optional[object] = None
    customer_ids: list = field(default_factory=list)
    rt_numbers: list = field(default_factory=list)
    min_usage: Optional[Decimal] = None
    max_usage: Optional[Decimal] = None


def rt_label(customer):
    return (customer.get('rt') or '').strip() or UNKNOWN_RT


def _window(filters):
    start = parse_reading_date(filters.start_date)
    end   = parse_reading_date(filters.end_date)
    # a bare end date covers the whole day
    if end is not None and end.time() == dt_time.min:
        end = datetime.combine(end.date(), dt_time.max)
    return start, end


def _filtered_customers(store, filters):
    customers = store.get_customers()
    if filters.customer_ids:
        wanted = {str(cid) for cid in filters.customer_ids}
        customers = [c for c in customers if str(c.get('id')) in wanted]
    if filters.rt_numbers:
        customers = [c for c in customers if c.get('rt') and c['rt'] in filters.rt_numbers]
    return customers


def _filtered_readings(store, filters):
    start, end = _window(filters)
    wanted = {str(cid) for cid in filters.customer_ids}

    dated = []
    for reading in store.get_readings():
        when = parse_reading_date(reading.get('date'))
        if when is None:
            continue
        if start is not None and when < start:
            continue
        if end is not None and when > end:
            continue
        if wanted and str(reading.get('customer_id')) not in wanted:
            continue
        dated.append((when, reading))

    dated.sort(key=lambda pair: pair[0])
    grouped = OrderedDict()
    for _, reading in dated:
        grouped.setdefault(str(reading.get('customer_id')), []).append(reading)
    return grouped


def _usage_in_range(usage, filters):
    if filters.min_usage is not None and usage < to_decimal(filters.min_usage):
        return False
    if filters.max_usage is not None and usage > to_decimal(filters.max_usage):
        return False
    return True


def _metrics(data, elapsed_ms):
    total_usage     = sum((entry.usage.usage for entry in data), Decimal('0'))
    total_billing   = sum((entry.billing.final_amount for entry in data), Decimal('0'))
    total_discounts = sum((entry.billing.discount_amount for entry in data), Decimal('0'))
    return PipelineMetrics(
        total_customers = len({str(entry.customer.get('id')) for entry in data}),
        total_readings  = len(data),
        total_usage     = total_usage,
        total_billing   = total_billing,
        total_discounts = total_discounts,
        average_usage   = total_usage / len(data) if data else Decimal('0'),
        processing_time = elapsed_ms,
    )


# ══════════════════════════════════════════════════════════
#   FUNCTION 1 — transform_meter_data_to_billing
#   One ProcessedMeterData per (customer, reading) pair.  A row that
#   cannot be billed is reported in `errors` and the batch carries on.
#   A customer's first reading has no previous value and is billed
#   at zero usage (fixed fee only).
# ══════════════════════════════════════════════════════════
def transform_meter_data_to_billing(store, filters=None):
    filters = filters or PipelineFilters()
    started = time.monotonic()
    data    = []
    errors  = []

    customers = _filtered_customers(store, filters)
    by_customer = _filtered_readings(store, filters)
    logger.debug('Pipeline: %d customers, %d customers with readings', len(customers), len(by_customer))

    for customer in customers:
        name = customer.get('name') or customer.get('id')
        for reading in by_customer.get(str(customer.get('id')), []):
            try:
                usage = calculate_usage(store, customer['id'], reading)
                if not usage.is_billable:
                    errors.append(f'Error processing {name}: {"; ".join(usage.validation_errors)}')
                    continue
                if not _usage_in_range(usage.usage, filters):
                    continue
                billing = calculate_billing(store, customer['id'], usage.usage, reading.get('date'))
            except (KeyError, ValueError, TypeError) as e:
                logger.warning('Pipeline row failed for %s: %s', name, e)
                errors.append(f'Error processing {name}: {e}')
                continue

            data.append(ProcessedMeterData(
                customer         = customer,
                current_reading  = reading,
                previous_reading = usage.previous_reading,
                usage            = usage,
                billing          = billing,
                processed_at     = timezone.now(),
            ))

    elapsed_ms = round((time.monotonic() - started) * 1000, 2)
    logger.info('Pipeline processed %d rows in %sms (%d errors)', len(data), elapsed_ms, len(errors))
    return PipelineResult(data=data, metrics=_metrics(data, elapsed_ms), errors=errors)


# ══════════════════════════════════════════════════════════
#   FUNCTION 2 — generate_monthly_billing_report
# ══════════════════════════════════════════════════════════
def generate_monthly_billing_report(store, year, month, rt_numbers=None):
    if not 1 <= month <= 12:
        raise ValueError(f'Invalid month: {month}')

    first_day, last_day = month_bounds(year, month)
    result = transform_meter_data_to_billing(store, PipelineFilters(
        start_date = first_day,
        end_date   = last_day,
        rt_numbers = list(rt_numbers or []),
    ))
    metrics = result.metrics

    gross = sum((entry.billing.base_amount for entry in result.data), Decimal('0'))
    summary = {
        'total_customers':            metrics.total_customers,
        'total_readings':             metrics.total_readings,
        'total_usage':                metrics.total_usage,
        'gross_billing':              gross,
        'total_discounts':            metrics.total_discounts,
        'net_billing':                metrics.total_billing,
        'average_usage_per_customer': metrics.average_usage,
        'average_bill_per_customer':  (round_rupiah(metrics.total_billing / metrics.total_customers)
                                       if metrics.total_customers else Decimal('0')),
    }

    buckets = {}
    for entry in result.data:
        bucket = buckets.setdefault(rt_label(entry.customer), {
            'customer_ids': set(),
            'usage':        Decimal('0'),
            'billing':      Decimal('0'),
            'discounts':    Decimal('0'),
        })
        bucket['customer_ids'].add(str(entry.customer.get('id')))
        bucket['usage']     += entry.usage.usage
        bucket['billing']   += entry.billing.final_amount
        bucket['discounts'] += entry.billing.discount_amount

    rt_breakdown = OrderedDict()
    for rt in sorted(buckets):
        bucket = buckets[rt]
        rt_breakdown[rt] = {
            'customers': len(bucket['customer_ids']),
            'usage':     bucket['usage'],
            'billing':   bucket['billing'],
            'discounts': bucket['discounts'],
        }

    return MonthlyReport(
        year         = year,
        month        = month,
        data         = result.data,
        summary      = summary,
        rt_breakdown = rt_breakdown,
        errors       = result.errors,
    )


# ══════════════════════════════════════════════════════════
#   FUNCTION 3 — rt_total_bills
#   Collection sheet per RT, including which households still have
#   no reading for the month.
# ══════════════════════════════════════════════════════════
def rt_total_bills(store, year, month, report=None):
    report = report or generate_monthly_billing_report(store, year, month)

    billed = {}
    for entry in report.data:
        row = billed.setdefault(str(entry.customer.get('id')), [Decimal('0'), Decimal('0')])
        row[0] += entry.usage.usage
        row[1] += entry.billing.final_amount

    by_rt = {}
    for customer in store.get_customers():
        by_rt.setdefault(rt_label(customer), []).append(customer)

    totals = []
    for rt in sorted(by_rt):
        members = by_rt[rt]
        total   = RTTotalBill(rt=rt, customer_count=len(members))
        with_readings = 0
        for customer in members:
            amounts = billed.get(str(customer.get('id')))
            if amounts is None:
                total.missing_readings.append(customer.get('name') or str(customer.get('id')))
                continue
            with_readings += 1
            total.total_usage += amounts[0]
            total.total_bill  += amounts[1]

        total.has_all_readings = not total.missing_readings
        if with_readings:
            total.average_bill = round_rupiah(total.total_bill / with_readings)
        totals.append(total)
    return totals


# ══════════════════════════════════════════════════════════
#   FUNCTION 4 — validate_data_integrity
#   Returns (is_valid, issues, warnings)
# ══════════════════════════════════════════════════════════
def validate_data_integrity(data):
    issues   = []
    warnings = []
    for index, entry in enumerate(data):
        name = entry.customer.get('name')
        if not entry.customer.get('id'):
            issues.append(f'Entry {index}: missing customer id')
        if not entry.current_reading.get('id'):
            issues.append(f'Entry {index}: missing reading id')
        if entry.usage.usage < 0:
            issues.append(f'Entry {index}: negative usage ({entry.usage.usage})')
        if entry.billing.final_amount < 0:
            issues.append(f'Entry {index}: negative bill amount ({entry.billing.final_amount})')

        if entry.usage.usage > HIGH_USAGE:
            warnings.append(f'Entry {index}: high usage ({entry.usage.usage} m³) for {name}')
        if entry.billing.discount_amount > entry.billing.base_amount:
            warnings.append(f'Entry {index}: discount exceeds base amount for {name}')
    return not issues, issues, warnings


# ══════════════════════════════════════════════════════════
#   FUNCTION 5 — format_for_export
# ══════════════════════════════════════════════════════════
def _discount_detail(discount):
    if not discount:
        return ''
    percentage = to_decimal(discount.get('discount_percentage'))
    if percentage > 0:
        detail = f'{percentage.normalize():f}%'
    else:
        detail = f'Rp {to_decimal(discount.get("discount_amount")):,.0f}'
    reason = discount.get('reason')
    return f'{detail} ({reason})' if reason else detail


def _reading_date(entry):
    when = parse_reading_date(entry.current_reading.get('date'))
    return when.date().isoformat() if when else ''


def _previous_value(entry):
    return to_decimal((entry.previous_reading or {}).get('reading'))


def _csv_row(entry):
    billing = entry.billing
    return OrderedDict([
        ('Customer',         entry.customer.get('name') or ''),
        ('RT',               entry.customer.get('rt') or ''),
        ('Phone',            entry.customer.get('phone') or ''),
        ('Reading Date',     _reading_date(entry)),
        ('Previous Reading', _previous_value(entry)),
        ('Current Reading',  to_decimal(entry.current_reading.get('reading'))),
        ('Usage (m³)',       entry.usage.usage),
        ('Rate 1-10 m³',     billing.unit_price),
        ('Rate 11+ m³',      billing.tens_price),
        ('Meter Fee',        billing.fixed_fee),
        ('Base Amount',      billing.base_amount),
        ('Discount',         billing.discount_amount),
        ('Discount Detail',  _discount_detail(billing.discount)),
        ('Total Bill',       billing.final_amount),
        ('Billing Month',    billing.billing_month),
    ])


def _pdf_row(entry):
    billing = entry.billing
    return {
        'customer': {
            'id':    entry.customer.get('id'),
            'name':  entry.customer.get('name'),
            'rt':    entry.customer.get('rt'),
            'phone': entry.customer.get('phone'),
        },
        'reading': {
            'previous': _previous_value(entry),
            'current':  to_decimal(entry.current_reading.get('reading')),
            'date':     _reading_date(entry),
        },
        'usage': entry.usage.usage,
        'billing': {
            'unit':     {'usage': billing.unit_usage, 'price': billing.unit_price},
            'tens':     {'usage': billing.tens_usage, 'price': billing.tens_price},
            'fixed':    billing.fixed_fee,
            'base':     billing.base_amount,
            'discount': billing.discount_amount,
            'discount_detail': _discount_detail(billing.discount),
            'final':    billing.final_amount,
            'month':    billing.billing_month,
        },
    }


def _json_row(entry):
    billing = entry.billing
    return {
        'customer':         entry.customer,
        'current_reading':  entry.current_reading,
        'previous_reading': entry.previous_reading,
        'usage':            entry.usage.usage,
        'anomaly_warning':  entry.usage.anomaly_warning,
        'billing': {
            'unit_usage':      billing.unit_usage,
            'tens_usage':      billing.tens_usage,
            'unit_price':      billing.unit_price,
            'tens_price':      billing.tens_price,
            'fixed_fee':       billing.fixed_fee,
            'base_amount':     billing.base_amount,
            'discount_amount': billing.discount_amount,
            'final_amount':    billing.final_amount,
            'billing_month':   billing.billing_month,
            'discount':        billing.discount,
        },
        'processed_at': entry.processed_at.isoformat() if entry.processed_at else None,
    }


def format_for_export(data, fmt='json'):
    if fmt == 'csv':
        return [_csv_row(entry) for entry in data]
    if fmt == 'pdf':
        return [_pdf_row(entry) for entry in data]
    if fmt == 'json':
        return [_json_row(entry) for entry in data]
    raise ValueError(f'Unknown export format: {fmt} (expected one of {", ".join(EXPORT_TYPES)})')


def write_csv(rows, stream):
    if not rows:
        return 0
    writer = csv.DictWriter(stream, fieldnames=list(rows[0].keys()))
    writer.writeheader()
    writer.writerows(rows)
    return len(rows)
