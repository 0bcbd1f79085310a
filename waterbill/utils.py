import calendar
import random
import string
import time
from datetime import date, datetime, time as dt_time
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from django.conf import settings
from django.utils import timezone
from django.utils.dateparse import parse_date, parse_datetime

OFFLINE_ID_PREFIX = 'offline_'


# ══════════════════════════════════════════════════════════
#   Numbers
# ══════════════════════════════════════════════════════════
def to_decimal(value, default=Decimal('0')):
    if value is None or value == '':
        return default
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return default


def round_rupiah(amount):
    """Rounds half-up to whole rupiah."""
    return to_decimal(amount).quantize(Decimal('1'), rounding=ROUND_HALF_UP)


# ══════════════════════════════════════════════════════════
#   Dates
#   Reading dates arrive as ISO strings ("2025-01-15" or full
#   timestamps).  They are compared as naive local datetimes.
# ══════════════════════════════════════════════════════════
def parse_reading_date(value):
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        return datetime.combine(value, dt_time.min)
    else:
        text = str(value).strip().replace(' ', 'T', 1)
        try:
            parsed = parse_datetime(text)
        except ValueError:
            parsed = None
        if parsed is None:
            try:
                day = parse_date(text[:10])
            except ValueError:
                day = None
            if day is None:
                return None
            return datetime.combine(day, dt_time.min)

    if timezone.is_aware(parsed):
        parsed = timezone.localtime(parsed).replace(tzinfo=None)
    return parsed


def month_key(value):
    """Returns the YYYY-MM billing month of a date, datetime or ISO string."""
    if isinstance(value, (date, datetime)):
        return f'{value.year:04d}-{value.month:02d}'
    return str(value)[:7]


def month_bounds(year, month):
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, 1), date(year, month, last_day)


def now_iso():
    return timezone.now().isoformat()


# ══════════════════════════════════════════════════════════
#   Offline identifiers
# ══════════════════════════════════════════════════════════
def generate_offline_id():
    suffix = ''.join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f'{OFFLINE_ID_PREFIX}{int(time.time() * 1000)}_{suffix}'


def is_offline_id(value):
    return value is None or str(value).startswith(OFFLINE_ID_PREFIX)


def local_now():
    """Current wall-clock time as a naive local datetime."""
    if settings.USE_TZ:
        return timezone.localtime().replace(tzinfo=None)
    return datetime.now()
