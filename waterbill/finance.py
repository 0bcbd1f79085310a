import logging
from decimal import Decimal

from dateutil.relativedelta import relativedelta
from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import transaction
from django.db.models import Count, Max, Q, Sum
from django.utils import timezone

from .models import FinancialTransaction, TransactionCategory
from .pipeline import UNKNOWN_RT, rt_total_bills
from .remote import CATEGORIES, TRANSACTIONS, TableNotProvisioned
from .results import RTPaymentStatus
from .utils import month_bounds, parse_reading_date, to_decimal
from .validation import validate_transaction

logger = logging.getLogger(__name__)

RT_CATEGORY_PREFIX = 'Pemasukan'
LATE_PAYMENT_MONTHS = 3
SORT_FIELDS = {
    'date':     'date',
    'amount':   'amount',
    'category': 'category__name',
}


def ledger_enabled():
    features = getattr(settings, 'WATERBILL_FEATURES', None) or {}
    return features.get(TRANSACTIONS, True)


def rt_category_name(rt):
    return f'{RT_CATEGORY_PREFIX} {rt}'


def _as_date(value):
    parsed = parse_reading_date(value)
    return parsed.date() if parsed else None


def _clean(data):
    results = validate_transaction(data)
    errors  = [r.message for r in results if not r.is_valid]
    if errors:
        raise ValidationError(errors)

    try:
        category = TransactionCategory.objects.get(pk=data.get('category_id'), is_active=True)
    except (TransactionCategory.DoesNotExist, ValueError, TypeError):
        raise ValidationError('Select an active category.') from None
    if category.type != data['type']:
        raise ValidationError(f'Category {category.name} cannot be used for {data["type"]} entries.')

    when = _as_date(data['date'])
    if when is None:
        raise ValidationError('Date has an invalid format.')
    return {
        'type':        data['type'],
        'amount':      to_decimal(data['amount']),
        'date':        when,
        'category':    category,
        'description': (data.get('description') or '').strip(),
    }


# ══════════════════════════════════════════════════════════
#   FUNCTION 1 — create_transaction
#   Raises ValidationError for bad input, TableNotProvisioned when
#   the ledger is switched off.
# ══════════════════════════════════════════════════════════
def create_transaction(data, user=''):
    if not ledger_enabled():
        raise TableNotProvisioned(TRANSACTIONS)
    fields = _clean(data)
    entry  = FinancialTransaction.objects.create(created_by=str(user or ''), **fields)
    logger.info('Transaction %s created: %s Rp %s', entry.pk, entry.type, entry.amount)
    return entry


# ══════════════════════════════════════════════════════════
#   FUNCTION 2 — update_transaction
# ══════════════════════════════════════════════════════════
def update_transaction(pk, data, user=''):
    if not ledger_enabled():
        raise TableNotProvisioned(TRANSACTIONS)
    entry = FinancialTransaction.objects.get(pk=pk)

    merged = {
        'type':        entry.type,
        'amount':      entry.amount,
        'date':        entry.date,
        'category_id': entry.category_id,
        'description': entry.description,
        **data,
    }
    for name, value in _clean(merged).items():
        setattr(entry, name, value)
    entry.updated_by = str(user or '')
    entry.save()
    logger.info('Transaction %s updated by %s', entry.pk, entry.updated_by or 'unknown')
    return entry


def delete_transaction(pk):
    if not ledger_enabled():
        return False
    deleted, _ = FinancialTransaction.objects.filter(pk=pk).delete()
    if deleted:
        logger.info('Transaction %s deleted', pk)
    return bool(deleted)


# ══════════════════════════════════════════════════════════
#   FUNCTION 3 — get_transactions
#   filters: type ('income' / 'expense' / 'all'), category_ids,
#   date_from, date_to, search_term, sort_by, sort_order, page, limit
# ══════════════════════════════════════════════════════════
def get_transactions(filters=None):
    if not ledger_enabled():
        return []
    filters = filters or {}
    qs = FinancialTransaction.objects.select_related('category')

    if filters.get('type') and filters['type'] != 'all':
        qs = qs.filter(type=filters['type'])
    if filters.get('category_ids'):
        qs = qs.filter(category_id__in=filters['category_ids'])
    if filters.get('date_from'):
        qs = qs.filter(date__gte=_as_date(filters['date_from']))
    if filters.get('date_to'):
        qs = qs.filter(date__lte=_as_date(filters['date_to']))
    if filters.get('search_term'):
        term = filters['search_term']
        qs = qs.filter(Q(description__icontains=term) | Q(category__name__icontains=term))

    order = SORT_FIELDS.get(filters.get('sort_by') or 'date', 'date')
    if filters.get('sort_order', 'desc') == 'desc':
        order = f'-{order}'
    qs = qs.order_by(order, '-created_at')

    limit = filters.get('limit')
    if limit:
        page  = max(int(filters.get('page') or 1), 1)
        start = (page - 1) * int(limit)
        qs = qs[start:start + int(limit)]
    return list(qs)


def get_categories(type=None):
    if not (getattr(settings, 'WATERBILL_FEATURES', None) or {}).get(CATEGORIES, True):
        return []
    qs = TransactionCategory.objects.filter(is_active=True)
    if type:
        qs = qs.filter(type=type)
    return list(qs)


def check_duplicate_transaction(data):
    """Entries with the same type, amount, date and category."""
    if not ledger_enabled():
        return []
    return list(FinancialTransaction.objects.filter(
        type        = data.get('type'),
        amount      = to_decimal(data.get('amount')),
        date        = _as_date(data.get('date')),
        category_id = data.get('category_id'),
    ))


# ══════════════════════════════════════════════════════════
#   FUNCTION 4 — build_financial_report
#   Totals plus per-category summaries for a date range
# ══════════════════════════════════════════════════════════
def _category_summaries(qs, kind, total):
    rows = (qs.filter(type=kind)
              .values('category_id', 'category__name')
              .annotate(total_amount=Sum('amount'), transaction_count=Count('id'))
              .order_by('-total_amount'))
    summaries = []
    for row in rows:
        amount = row['total_amount'] or Decimal('0')
        summaries.append({
            'category_id':         str(row['category_id']),
            'category':            row['category__name'],
            'total_amount':        amount,
            'transaction_count':   row['transaction_count'],
            'percentage_of_total': (amount * 100 / total).quantize(Decimal('0.01')) if total else Decimal('0'),
        })
    return summaries


def build_financial_report(start_date, end_date):
    start = _as_date(start_date)
    end   = _as_date(end_date)
    if start is None or end is None or start > end:
        raise ValueError('A valid start and end date are required (start <= end).')

    report = {
        'period':               {'start_date': start, 'end_date': end},
        'summary':              {'total_income': Decimal('0'), 'total_expenses': Decimal('0'),
                                 'net_profit': Decimal('0')},
        'income_by_category':   [],
        'expenses_by_category': [],
        'transactions':         [],
        'generated_at':         timezone.now(),
    }
    if not ledger_enabled():
        return report

    qs = FinancialTransaction.objects.filter(date__gte=start, date__lte=end).select_related('category')
    income   = qs.filter(type='income').aggregate(Sum('amount'))['amount__sum']  or Decimal('0')
    expenses = qs.filter(type='expense').aggregate(Sum('amount'))['amount__sum'] or Decimal('0')

    report['summary'] = {
        'total_income':   income,
        'total_expenses': expenses,
        'net_profit':     income - expenses,
    }
    report['income_by_category']   = _category_summaries(qs, 'income', income)
    report['expenses_by_category'] = _category_summaries(qs, 'expense', expenses)
    report['transactions']         = list(qs.order_by('date', 'created_at'))
    return report


# ══════════════════════════════════════════════════════════
#   FUNCTION 5 — record_rt_payment
#   Money handed over by an RT collector, booked as income under
#   "Pemasukan <RT>".  The billing month goes in the description so
#   late payments still count toward the right period.
# ══════════════════════════════════════════════════════════
@transaction.atomic
def record_rt_payment(rt, amount, billing_month, payment_date=None, user=''):
    if not ledger_enabled():
        raise TableNotProvisioned(TRANSACTIONS)

    category, created = TransactionCategory.objects.get_or_create(
        name     = rt_category_name(rt),
        type     = 'income',
        defaults = {'description': f'Water payments collected in {rt}'},
    )
    if created:
        logger.info('Created income category %s', category.name)

    return create_transaction({
        'type':        'income',
        'amount':      amount,
        'date':        payment_date or timezone.localdate(),
        'category_id': category.pk,
        'description': f'Water payment {rt} for {billing_month}',
    }, user=user)


# ══════════════════════════════════════════════════════════
#   FUNCTION 6 — rt_payment_status
#   Bill per RT (from the reporting pipeline) against what has been
#   booked for that billing month.
# ══════════════════════════════════════════════════════════
def _rt_payments(rt, year, month):
    first_day, last_day = month_bounds(year, month)
    billing_month = f'{year:04d}-{month:02d}'
    return FinancialTransaction.objects.filter(
        type                  = 'income',
        category__name        = rt_category_name(rt),
        date__gte             = first_day,
        date__lte             = last_day + relativedelta(months=LATE_PAYMENT_MONTHS),
        description__contains = billing_month,
    ).aggregate(paid=Sum('amount'), last=Max('date'))


def rt_payment_status(store, year, month, totals=None):
    totals = totals if totals is not None else rt_total_bills(store, year, month)
    statuses = []
    for total in totals:
        if total.rt == UNKNOWN_RT:
            continue
        paid, last = Decimal('0'), None
        if ledger_enabled():
            payments = _rt_payments(total.rt, year, month)
            paid = payments['paid'] or Decimal('0')
            last = payments['last']

        if paid >= total.total_bill:
            status = 'paid'
        elif paid > 0:
            status = 'partial'
        else:
            status = 'pending'

        statuses.append(RTPaymentStatus(
            rt                = total.rt,
            total_bill        = total.total_bill,
            paid_amount       = paid,
            pending_amount    = max(Decimal('0'), total.total_bill - paid),
            last_payment_date = last.isoformat() if last else None,
            payment_status    = status,
        ))
    return statuses
