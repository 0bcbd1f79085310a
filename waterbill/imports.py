"""
Bulk CSV import for the field cache store and the cash book.

Reading rows carry ``customer_name, rt, reading, date`` and an optional
``phone``; transaction rows carry ``type, amount, date, category_name``
with optional ``description`` and ``created_by``.  Rows are numbered the
way a spreadsheet shows them (header on row 1), and a bad row never
stops the rows after it.
"""
import csv
import logging
import re
from datetime import datetime

from django.core.exceptions import ValidationError

from . import finance
from .models import TransactionCategory
from .remote import RemoteStoreError
from .results import ImportResult
from .utils import parse_reading_date, to_decimal
from .validation import validate_meter_reading

logger = logging.getLogger(__name__)

READING_COLUMNS     = ('customer_name', 'rt', 'reading', 'date')
TRANSACTION_COLUMNS = ('type', 'amount', 'date', 'category_name')
FIRST_DATA_ROW      = 2

RT_NUMBER = re.compile(r'^(?:RT)?\s*0*(\d{1,2})$', re.IGNORECASE)


def read_csv(handle):
    """Rows of an open CSV file as dicts with lower-cased, trimmed keys."""
    return [
        {(key or '').strip().lower(): (value or '').strip() for key, value in row.items()}
        for row in csv.DictReader(handle)
    ]


def normalize_rt(value):
    """'1', '01', 'rt1' and 'RT 01' all become 'RT 01'."""
    text  = (value or '').strip()
    match = RT_NUMBER.match(text)
    if not match:
        return text.upper()
    return f'RT {int(match.group(1)):02d}'


def parse_import_date(value):
    """ISO dates pass through; DD/MM/YYYY is converted.  None when neither parses."""
    text = (value or '').strip()
    try:
        return datetime.strptime(text, '%d/%m/%Y').date().isoformat()
    except ValueError:
        pass
    parsed = parse_reading_date(text)
    return parsed.date().isoformat() if parsed else None


def _digits(phone):
    return re.sub(r'\D', '', phone or '')


def _missing(row, columns):
    return [name for name in columns if not row.get(name)]


# ══════════════════════════════════════════════════════════
#   FUNCTION 1 — match_customer
#   Tries name+RT+phone, then name+RT, then RT+phone.  The last
#   match comes back with a warning because the names differ.
# ══════════════════════════════════════════════════════════
def match_customer(customers, name, rt, phone=''):
    name  = (name or '').strip().lower()
    rt    = normalize_rt(rt)
    phone = _digits(phone)

    in_rt = [c for c in customers if normalize_rt(c.get('rt')) == rt]
    named = [c for c in in_rt if (c.get('name') or '').strip().lower() == name]

    if phone:
        for customer in named:
            if _digits(customer.get('phone')) == phone:
                return customer, None
    if named:
        return named[0], None
    if phone:
        for customer in in_rt:
            if _digits(customer.get('phone')) == phone:
                return customer, f'name mismatch ({customer.get("name")} on file)'
    return None, None


# ══════════════════════════════════════════════════════════
#   FUNCTION 2 — import_meter_readings
#   Each row goes through the same checks as a reading typed in
#   the field, so rows for one customer must be in date order.
# ══════════════════════════════════════════════════════════
def import_meter_readings(store, rows):
    result    = ImportResult()
    customers = store.get_customers()

    for index, row in enumerate(rows):
        line = index + FIRST_DATA_ROW
        if _missing(row, READING_COLUMNS):
            result.errors.append(f'Row {line}: Missing required data')
            continue

        customer, warning = match_customer(customers, row['customer_name'], row['rt'], row.get('phone'))
        if customer is None:
            result.errors.append(
                f'Row {line}: Customer not found ({row["customer_name"]}, {normalize_rt(row["rt"])})')
            continue
        if warning:
            result.warnings.append(f'Row {line}: {warning}')

        day     = parse_import_date(row['date'])
        reading = to_decimal(row['reading'], default=None)
        if day is None or reading is None:
            result.errors.append(f'Row {line}: Invalid reading or date')
            continue

        validation = validate_meter_reading(store, customer['id'], reading, day)
        if not validation.is_valid:
            result.errors.extend(f'Row {line}: {message}' for message in validation.errors)
            continue
        result.warnings.extend(f'Row {line}: {message}' for message in validation.warnings)

        store.add_reading(
            {'customer_id': customer['id'], 'reading': str(reading), 'date': day},
            customer_name=customer.get('name'),
            customer_rt=customer.get('rt'),
        )
        result.imported += 1

    logger.info('Imported %d of %d reading rows into %s', result.imported, len(rows), store.namespace)
    return result


def reading_template(store, day=''):
    """One blank row per cached customer, ordered by RT then name."""
    customers = sorted(store.get_customers(),
                       key=lambda c: (normalize_rt(c.get('rt')), (c.get('name') or '').lower()))
    return [
        {
            'customer_name': customer.get('name') or '',
            'rt':            normalize_rt(customer.get('rt')),
            'reading':       '',
            'date':          day,
            'phone':         customer.get('phone') or '',
        }
        for customer in customers
    ]


# ══════════════════════════════════════════════════════════
#   FUNCTION 3 — import_transactions
#   Categories are matched by upper-cased name within the row's
#   type.  Goes through finance.create_transaction, so the ledger
#   feature flag and the usual checks apply.
# ══════════════════════════════════════════════════════════
def import_transactions(rows, user=''):
    result     = ImportResult()
    categories = {
        (category.name.strip().upper(), category.type): category
        for category in TransactionCategory.objects.filter(is_active=True)
    }

    for index, row in enumerate(rows):
        line = index + FIRST_DATA_ROW
        if _missing(row, TRANSACTION_COLUMNS):
            result.errors.append(f'Row {line}: Missing required data')
            continue

        kind     = row['type'].lower()
        category = categories.get((row['category_name'].upper(), kind))
        if category is None:
            result.errors.append(f'Row {line}: Unknown {kind} category {row["category_name"]}')
            continue

        data = {
            'type':        kind,
            'amount':      row['amount'],
            'date':        parse_import_date(row['date']) or row['date'],
            'category_id': category.pk,
            'description': row.get('description', ''),
        }
        try:
            finance.create_transaction(data, user=row.get('created_by') or user)
        except ValidationError as e:
            result.errors.extend(f'Row {line}: {message}' for message in e.messages)
            continue
        except RemoteStoreError as e:
            # ledger switched off
            result.errors.append(f'Row {line}: {e}')
            break
        result.imported += 1

    logger.info('Imported %d of %d transaction rows', result.imported, len(rows))
    return result
