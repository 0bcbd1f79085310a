import re

from dateutil.relativedelta import relativedelta

from .results import ReadingValidation, ValidationResult
from .utils import local_now, parse_reading_date, to_decimal

MIN_READING           = 0
MAX_READING           = 999999
MAX_USAGE_MULTIPLIER  = 2.0       # anomaly when usage > 200% of the 5-month average
VERY_HIGH_USAGE       = 100       # m³
AVERAGE_WINDOW        = 6         # readings, giving up to 5 usage periods
RT_PATTERN            = re.compile(r'^RT\s+\d{2}$', re.IGNORECASE)
PHONE_PATTERN         = re.compile(r'^(\+62|62|0)[0-9]{8,13}$')
MONTH_PATTERN         = re.compile(r'^\d{4}-\d{2}$')
MAX_DISCOUNT_PERCENT  = 100
MIN_DISCOUNT_AMOUNT   = 0
MAX_DISCOUNT_AMOUNT   = 1_000_000
MIN_REASON_LENGTH     = 5
MIN_NAME_LENGTH       = 2
TRANSACTION_TYPES     = ('income', 'expense')
ADJUSTMENT_TYPES      = ('gauge_replacement', 'manual_correction', 'meter_reset')


def error(code, message):
    return ValidationResult(is_valid=False, message=message, code=code)


def warning(code, message):
    return ValidationResult(is_valid=True, message=message, code=code)


# ══════════════════════════════════════════════════════════
#   FUNCTION 1 — five_month_average
#   Average usage over the last (up to) five periods before a date.
#   Returns None when no usage period can be computed; callers must
#   read None as "no anomaly check possible", never as zero.
# ══════════════════════════════════════════════════════════
def five_month_average(store, customer_id, before_date):
    readings = store.get_readings_before(customer_id, before_date, limit=AVERAGE_WINDOW)
    if len(readings) < 2:
        return None

    usages = []
    for newer, older in zip(readings, readings[1:]):
        usage = to_decimal(newer.get('reading')) - to_decimal(older.get('reading'))
        if usage >= 0:
            usages.append(usage)

    if not usages:
        return None
    return sum(usages) / len(usages)


# ══════════════════════════════════════════════════════════
#   FUNCTION 2 — detect_usage_anomaly
#   The one place that decides whether a usage is anomalous.
#   Returns (is_anomaly, average).
# ══════════════════════════════════════════════════════════
def detect_usage_anomaly(store, customer_id, usage, reading_date):
    average = five_month_average(store, customer_id, reading_date)
    if average is None or average <= 0:
        return False, average
    threshold = average * to_decimal(MAX_USAGE_MULTIPLIER)
    return to_decimal(usage) > threshold, average


# ══════════════════════════════════════════════════════════
#   FUNCTION 3 — validate_meter_reading
# ══════════════════════════════════════════════════════════
def validate_meter_reading(store, customer_id, new_reading, reading_date, exclude_reading_id=None):
    validation = ReadingValidation()
    results = validation.results
    reading = to_decimal(new_reading, default=None)

    if reading is None or reading < MIN_READING or reading > MAX_READING:
        results.append(error(
            'READING_OUT_OF_RANGE',
            f'Meter reading must be between {MIN_READING} and {MAX_READING}.'))

    if not customer_id:
        results.append(error('CUSTOMER_ID_REQUIRED', 'A customer is required to validate a reading.'))
        return validation

    if parse_reading_date(reading_date) is None:
        results.append(error('READING_DATE_REQUIRED', 'A reading date is required.'))
        return validation

    if store.check_duplicate_reading(customer_id, reading_date, exclude_reading_id):
        results.append(error(
            'READING_DUPLICATE_MONTH',
            'A meter reading already exists for this customer in the same month.'))

    previous = store.get_previous_reading(customer_id, reading_date)
    if previous is None or reading is None:
        return validation

    previous_value = to_decimal(previous.get('reading'))
    if reading < previous_value:
        results.append(error(
            'READING_SEQUENTIAL_VIOLATION',
            f'New reading ({reading}) cannot be lower than the previous reading ({previous_value}).'))
        return validation

    usage = reading - previous_value
    is_anomaly, average = detect_usage_anomaly(store, customer_id, usage, reading_date)
    if is_anomaly:
        results.append(warning(
            'READING_USAGE_ANOMALY',
            f'High usage: {usage} m³ exceeds {int(MAX_USAGE_MULTIPLIER * 100)}% '
            f'of the 5-month average ({average:.1f} m³).'))

    if usage == 0:
        results.append(warning('READING_ZERO_USAGE', 'Usage is 0 m³, please double-check the reading.'))

    if usage > VERY_HIGH_USAGE:
        results.append(warning(
            'READING_VERY_HIGH_USAGE',
            f'Very high usage: {usage} m³, please double-check the reading.'))

    return validation


# ══════════════════════════════════════════════════════════
#   FUNCTION 4 — validate_discount
#   Exactly one of percentage / fixed amount, one active discount
#   per customer per month.
# ══════════════════════════════════════════════════════════
def validate_discount(store, discount):
    results = []
    customer_id = discount.get('customer_id')
    percentage  = to_decimal(discount.get('discount_percentage'))
    amount      = to_decimal(discount.get('discount_amount'))
    reason      = (discount.get('reason') or '').strip()
    month       = discount.get('discount_month') or ''

    if not customer_id:
        results.append(error('DISCOUNT_CUSTOMER_ID_REQUIRED', 'A customer is required.'))

    has_percentage = percentage != 0
    has_amount     = amount != 0

    if not has_percentage and not has_amount:
        results.append(error(
            'DISCOUNT_VALUE_REQUIRED', 'A discount percentage or a discount amount is required.'))
    if has_percentage and has_amount:
        results.append(error(
            'DISCOUNT_MULTIPLE_TYPES', 'Percentage and fixed-amount discounts cannot be combined.'))

    if percentage < 0:
        results.append(error(
            'DISCOUNT_PERCENTAGE_TOO_LOW', 'Discount percentage cannot be negative.'))
    if has_percentage and percentage > MAX_DISCOUNT_PERCENT:
        results.append(error(
            'DISCOUNT_PERCENTAGE_TOO_HIGH',
            f'Discount percentage cannot exceed {MAX_DISCOUNT_PERCENT}%.'))

    if amount < MIN_DISCOUNT_AMOUNT:
        results.append(error(
            'DISCOUNT_AMOUNT_TOO_LOW', f'Discount amount cannot be below Rp {MIN_DISCOUNT_AMOUNT:,}.'))
    if amount > MAX_DISCOUNT_AMOUNT:
        results.append(error(
            'DISCOUNT_AMOUNT_TOO_HIGH', f'Discount amount cannot exceed Rp {MAX_DISCOUNT_AMOUNT:,}.'))

    if not reason:
        results.append(error('DISCOUNT_REASON_REQUIRED', 'A reason for the discount is required.'))
    elif len(reason) < MIN_REASON_LENGTH:
        results.append(error(
            'DISCOUNT_REASON_TOO_SHORT',
            f'The reason must be at least {MIN_REASON_LENGTH} characters.'))

    if not month:
        results.append(error('DISCOUNT_MONTH_REQUIRED', 'The discount month is required.'))
    elif not MONTH_PATTERN.match(month) or not 1 <= int(month[5:7]) <= 12:
        results.append(error('DISCOUNT_MONTH_INVALID_FORMAT', 'The discount month must use YYYY-MM.'))
    elif customer_id and discount.get('is_active', True):
        existing = store.get_customer_active_discount(customer_id, month)
        editing  = discount.get('id')
        if existing and str(existing.get('id')) != str(editing):
            results.append(error(
                'DISCOUNT_DUPLICATE_MONTH', f'An active discount already exists for {month}.'))

    return results


# ══════════════════════════════════════════════════════════
#   FUNCTION 5 — validate_customer
# ══════════════════════════════════════════════════════════
def validate_customer(store, customer):
    results = []
    name  = (customer.get('name') or '').strip()
    rt    = (customer.get('rt') or '').strip()
    phone = (customer.get('phone') or '').strip()

    if not name:
        results.append(error('CUSTOMER_NAME_REQUIRED', 'Customer name is required.'))
    elif len(name) < MIN_NAME_LENGTH:
        results.append(error(
            'CUSTOMER_NAME_TOO_SHORT', f'Customer name must be at least {MIN_NAME_LENGTH} characters.'))

    if rt and not RT_PATTERN.match(rt):
        results.append(error('CUSTOMER_RT_INVALID_FORMAT', 'RT must look like "RT 01", "RT 02", ...'))

    if phone and not PHONE_PATTERN.match(phone):
        results.append(error(
            'CUSTOMER_PHONE_INVALID_FORMAT', 'Phone number must be an Indonesian number (+62, 62 or 0...).'))

    # warning only, never blocks
    if rt and not customer.get('id'):
        if any((c.get('rt') or '').strip().upper() == rt.upper() for c in store.get_customers()):
            results.append(warning('CUSTOMER_RT_DUPLICATE', f'{rt} is already used by another customer.'))

    return results


# ══════════════════════════════════════════════════════════
#   FUNCTION 6 — validate_date
# ══════════════════════════════════════════════════════════
def validate_date(value, field_name='Date'):
    if not value:
        return error('DATE_REQUIRED', f'{field_name} is required.')

    parsed = parse_reading_date(value)
    if parsed is None:
        return error('DATE_INVALID_FORMAT', f'{field_name} has an invalid format.')

    now = local_now()
    if parsed > now + relativedelta(months=1):
        return error('DATE_TOO_FUTURE', f'{field_name} cannot be more than 1 month ahead.')
    if parsed < now - relativedelta(years=2):
        return error('DATE_TOO_PAST', f'{field_name} cannot be more than 2 years ago.')

    return ValidationResult(is_valid=True, code='DATE_VALID')


# ══════════════════════════════════════════════════════════
#   FUNCTION 7 — validate_transaction  (financial ledger entries)
# ══════════════════════════════════════════════════════════
def validate_transaction(transaction):
    results = []
    amount = to_decimal(transaction.get('amount'), default=None)
    if amount is None or amount <= 0:
        results.append(error('TRANSACTION_AMOUNT_INVALID', 'Amount must be greater than 0.'))
    if transaction.get('type') not in TRANSACTION_TYPES:
        results.append(error('TRANSACTION_TYPE_INVALID', 'Transaction type must be income or expense.'))
    if not transaction.get('date'):
        results.append(error('TRANSACTION_DATE_REQUIRED', 'Date is required.'))
    return results


# ══════════════════════════════════════════════════════════
#   FUNCTION 8 — validate_meter_adjustment
# ══════════════════════════════════════════════════════════
def validate_meter_adjustment(adjustment):
    results = []
    if not adjustment.get('customer_id'):
        results.append(error('ADJUSTMENT_CUSTOMER_ID_REQUIRED', 'A customer is required.'))

    for name, label in (('old_reading', 'Old reading'), ('new_reading', 'New reading')):
        value = to_decimal(adjustment.get(name), default=None)
        if value is None:
            results.append(error('ADJUSTMENT_READING_REQUIRED', f'{label} must be a number.'))
        elif value < MIN_READING or value > MAX_READING:
            results.append(error(
                'ADJUSTMENT_READING_OUT_OF_RANGE',
                f'{label} must be between {MIN_READING} and {MAX_READING}.'))

    if adjustment.get('adjustment_type') not in ADJUSTMENT_TYPES:
        results.append(error('ADJUSTMENT_TYPE_INVALID', 'Unknown adjustment type.'))

    if not (adjustment.get('reason') or '').strip():
        results.append(error('ADJUSTMENT_REASON_REQUIRED', 'A reason for the adjustment is required.'))

    when = parse_reading_date(adjustment.get('adjustment_date'))
    if when is None:
        results.append(error('ADJUSTMENT_DATE_REQUIRED', 'The adjustment date is required.'))
    elif when.date() > local_now().date():
        results.append(error('ADJUSTMENT_DATE_IN_FUTURE', 'The adjustment date cannot be in the future.'))

    return results


# ══════════════════════════════════════════════════════════
#   Helpers for callers that display results
# ══════════════════════════════════════════════════════════
def summarize(results):
    errors   = [r for r in results if not r.is_valid]
    warnings = [r for r in results if r.is_valid and r.message]
    return {
        'is_valid':      not errors,
        'error_count':   len(errors),
        'warning_count': len(warnings),
        'errors':        errors,
        'warnings':      warnings,
    }


def messages(results):
    return [r.message for r in results if r.message]


def has_error_code(results, code):
    return any(r.code == code for r in results)


def get_validation_constants():
    return {
        'MIN_READING':          MIN_READING,
        'MAX_READING':          MAX_READING,
        'MAX_USAGE_MULTIPLIER': MAX_USAGE_MULTIPLIER,
        'MAX_DISCOUNT_PERCENT': MAX_DISCOUNT_PERCENT,
        'MIN_DISCOUNT_AMOUNT':  MIN_DISCOUNT_AMOUNT,
        'MAX_DISCOUNT_AMOUNT':  MAX_DISCOUNT_AMOUNT,
    }
