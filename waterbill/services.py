import logging
from decimal import Decimal

from django.conf import settings

from .results import BillingCalculation, UsageCalculation
from .utils import month_key, round_rupiah, to_decimal
from .validation import (
    MAX_USAGE_MULTIPLIER, detect_usage_anomaly, get_validation_constants, validate_meter_reading,
)

logger = logging.getLogger(__name__)

DEFAULT_PRICING = {
    'UNIT_RATE':  1500,     # IDR per m³ for the first 10 m³
    'TENS_RATE':  2000,     # IDR per m³ above 10 m³
    'FIXED_FEE':  5000,     # meter (speedometer) fee, always charged
    'TIER_LIMIT': 10,
}


def get_pricing():
    pricing = dict(DEFAULT_PRICING)
    pricing.update(getattr(settings, 'WATERBILL_PRICING', None) or {})
    return {key: to_decimal(value) for key, value in pricing.items()}


def get_validation_thresholds():
    return get_validation_constants()


# ══════════════════════════════════════════════════════════
#   FUNCTION 1 — calculate_usage
#   Consumption between a reading and the one before it.
#   A negative delta is an error (same rule as the reading
#   validator), reported with usage 0 so nothing downstream bills
#   a negative volume.
# ══════════════════════════════════════════════════════════
def calculate_usage(store, customer_id, current_reading, previous_reading=None):
    if previous_reading is None:
        previous_reading = store.get_previous_reading(customer_id, current_reading.get('date'))

    if previous_reading is None:
        return UsageCalculation(
            customer_id       = str(customer_id),
            current_reading   = current_reading,
            previous_reading  = None,
            usage             = Decimal('0'),
            is_valid          = False,
            validation_errors = ['No previous reading to compute usage from.'],
            error_code        = 'READING_NO_PREVIOUS',
        )

    current  = to_decimal(current_reading.get('reading'))
    previous = to_decimal(previous_reading.get('reading'))
    delta    = current - previous

    if delta < 0:
        return UsageCalculation(
            customer_id       = str(customer_id),
            current_reading   = current_reading,
            previous_reading  = previous_reading,
            usage             = Decimal('0'),
            is_valid          = False,
            validation_errors = [f'Reading {current} is lower than the previous reading {previous}.'],
            error_code        = 'READING_SEQUENTIAL_VIOLATION',
        )

    anomaly_warning = None
    is_anomaly, average = detect_usage_anomaly(store, customer_id, delta, current_reading.get('date'))
    if is_anomaly:
        anomaly_warning = (f'High usage: {delta} m³ exceeds {int(MAX_USAGE_MULTIPLIER * 100)}% '
                           f'of the 5-month average ({average:.1f} m³)')

    return UsageCalculation(
        customer_id      = str(customer_id),
        current_reading  = current_reading,
        previous_reading = previous_reading,
        usage            = delta,
        anomaly_warning  = anomaly_warning,
    )


# ══════════════════════════════════════════════════════════
#   FUNCTION 2 — compute_tiered_charge
#   First TIER_LIMIT m³ at UNIT_RATE, only the excess at TENS_RATE,
#   plus the fixed fee.
#   Returns: (unit_usage, tens_usage, unit_price, tens_price, base_amount)
# ══════════════════════════════════════════════════════════
def compute_tiered_charge(usage, pricing=None):
    pricing = pricing or get_pricing()
    usage   = to_decimal(usage)
    limit   = pricing['TIER_LIMIT']

    if usage <= limit:
        unit_usage = usage
        tens_usage = Decimal('0')
    else:
        unit_usage = limit
        tens_usage = usage - limit

    unit_price  = unit_usage * pricing['UNIT_RATE']
    tens_price  = tens_usage * pricing['TENS_RATE']
    base_amount = unit_price + tens_price + pricing['FIXED_FEE']

    return unit_usage, tens_usage, unit_price, tens_price, base_amount


# ══════════════════════════════════════════════════════════
#   FUNCTION 3 — apply_discount
#   Percentage discounts round half-up to whole rupiah; fixed
#   discounts never exceed the base amount.
# ══════════════════════════════════════════════════════════
def apply_discount(base_amount, discount):
    if not discount:
        return Decimal('0')

    percentage = to_decimal(discount.get('discount_percentage'))
    amount     = to_decimal(discount.get('discount_amount'))

    if percentage > 0:
        return round_rupiah(base_amount * percentage / 100)
    if amount > 0:
        return min(amount, base_amount)
    return Decimal('0')


# ══════════════════════════════════════════════════════════
#   FUNCTION 4 — calculate_billing
#   Args: store, customer id, usage (m³), billing date (ISO / date)
#   Returns: BillingCalculation
# ══════════════════════════════════════════════════════════
def calculate_billing(store, customer_id, usage, billing_date):
    usage = to_decimal(usage)
    if usage < 0:
        raise ValueError(f'Usage cannot be negative (customer {customer_id}: {usage} m³).')

    pricing = get_pricing()
    unit_usage, tens_usage, unit_price, tens_price, base_amount = compute_tiered_charge(usage, pricing)

    billing_month   = month_key(billing_date)
    discount        = store.get_customer_active_discount(customer_id, billing_month)
    discount_amount = apply_discount(base_amount, discount)
    final_amount    = max(Decimal('0'), base_amount - discount_amount)

    return BillingCalculation(
        customer_id     = str(customer_id),
        usage           = usage,
        unit_usage      = unit_usage,
        tens_usage      = tens_usage,
        unit_price      = unit_price,
        tens_price      = tens_price,
        fixed_fee       = pricing['FIXED_FEE'],
        base_amount     = base_amount,
        discount        = discount,
        discount_amount = discount_amount,
        final_amount    = final_amount,
        billing_month   = billing_month,
    )


# ══════════════════════════════════════════════════════════
#   FUNCTION 5 — process_meter_reading
#   validation → usage → billing preview for a reading that has not
#   been saved yet.
#   Returns: (validation, usage or None, billing or None)
# ══════════════════════════════════════════════════════════
def process_meter_reading(store, customer_id, reading, reading_date, exclude_reading_id=None):
    validation = validate_meter_reading(store, customer_id, reading, reading_date, exclude_reading_id)
    if not validation.is_valid:
        return validation, None, None

    candidate = {'id': '', 'customer_id': str(customer_id), 'reading': reading, 'date': reading_date}
    usage     = calculate_usage(store, customer_id, candidate)
    billing   = calculate_billing(store, customer_id, usage.usage, reading_date)
    return validation, usage, billing


# ══════════════════════════════════════════════════════════
#   FUNCTION 6 — batch_process_readings
#   Rows whose usage cannot be billed are logged and skipped.
# ══════════════════════════════════════════════════════════
def batch_process_readings(store, readings):
    results = []
    for reading in readings:
        try:
            usage = calculate_usage(store, reading['customer_id'], reading)
            if not usage.is_billable:
                logger.warning('Skipping reading %s: %s', reading.get('id'), '; '.join(usage.validation_errors))
                continue
            results.append(calculate_billing(store, reading['customer_id'], usage.usage, reading['date']))
        except (KeyError, ValueError) as e:
            logger.warning('Skipping reading %s: %s', reading.get('id'), e)
    return results
