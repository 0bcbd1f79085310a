import logging
from dataclasses import asdict

from django.contrib.auth.decorators import login_required
from django.core.exceptions import ValidationError
from django.core.serializers.json import DjangoJSONEncoder
from django.http import Http404, HttpResponse, JsonResponse
from django.utils import timezone
from django.views.decorators.http import require_GET, require_http_methods, require_POST

from . import finance
from .context import get_field_session
from .forms import (
    BillingPeriodForm, CustomerForm, DiscountForm, MeterAdjustmentForm, MeterReadingForm, RTPaymentForm,
    TransactionForm,
)
from .models import FinancialTransaction
from .pipeline import (
    format_for_export, generate_monthly_billing_report, rt_total_bills, validate_data_integrity, write_csv,
)
from .remote import RemoteStoreError
from .services import process_meter_reading

logger = logging.getLogger(__name__)


def _json(data, status=200):
    return JsonResponse(data, status=status, safe=False, encoder=DjangoJSONEncoder)


def _form_errors(form):
    return _json({'errors': form.errors.get_json_data()}, status=400)


def _period(request):
    today = timezone.localdate()
    return BillingPeriodForm({'year': today.year, 'month': today.month, **request.GET.dict()})


def _user_label(user):
    return user.get_full_name() or user.get_username()


def _transaction_record(entry):
    return {**entry.as_record(), 'category': entry.category.name}


# ══════════════════════════════════════════════════════════
#   VIEW 1 — dashboard
# ══════════════════════════════════════════════════════════
@login_required
@require_GET
def dashboard(request):
    session = get_field_session(request)
    today   = timezone.localdate()
    report  = generate_monthly_billing_report(session.store, today.year, today.month)
    totals  = rt_total_bills(session.store, today.year, today.month, report=report)
    return _json({
        'storage':           session.store.get_storage_stats(),
        'sync':              session.sync.get_status(),
        'month':             f'{today.year:04d}-{today.month:02d}',
        'summary':           report.summary,
        'rt_total_bills':    [asdict(t) for t in totals],
        'rt_payment_status': [asdict(s) for s in finance.rt_payment_status(
                                  session.store, today.year, today.month, totals=totals)],
    })


# ══════════════════════════════════════════════════════════
#   VIEWS 2–4 — Customers
# ══════════════════════════════════════════════════════════
@login_required
@require_GET
def customer_list(request):
    store = get_field_session(request).store
    q  = request.GET.get('q', '').strip().lower()
    rt = request.GET.get('rt', '').strip()

    customers = store.get_customers()
    if q:
        customers = [c for c in customers if q in (c.get('name') or '').lower()]
    if rt:
        customers = [c for c in customers if (c.get('rt') or '') == rt]
    return _json({'customers': sorted(customers, key=lambda c: c.get('name') or '')})


@login_required
@require_POST
def customer_create(request):
    store = get_field_session(request).store
    form  = CustomerForm(request.POST, store=store)
    if not form.is_valid():
        return _form_errors(form)
    customer_id = store.add_customer(form.cleaned_data)
    logger.info('Customer %s added by %s', customer_id, _user_label(request.user))
    return _json({'id': customer_id, 'warnings': form.warnings}, status=201)


@login_required
@require_POST
def customer_edit(request, customer_id):
    store = get_field_session(request).store
    if store.get_customer(customer_id) is None:
        raise Http404('Customer not found')
    form = CustomerForm(request.POST, store=store, customer_id=customer_id)
    if not form.is_valid():
        return _form_errors(form)
    store.update_customer(customer_id, form.cleaned_data)
    return _json({'id': customer_id, 'warnings': form.warnings})


# ══════════════════════════════════════════════════════════
#   VIEW 5 — Meter reading entry
#   ?preview=1 returns the usage and bill without saving.
# ══════════════════════════════════════════════════════════
@login_required
@require_POST
def reading_create(request):
    store = get_field_session(request).store
    form  = MeterReadingForm(request.POST, store=store,
                             exclude_reading_id=request.POST.get('exclude_reading_id') or None)
    if not form.is_valid():
        return _form_errors(form)

    cleaned     = form.cleaned_data
    customer_id = cleaned['customer_id']
    when        = cleaned['date'].isoformat()
    validation, usage, billing = process_meter_reading(
        store, customer_id, cleaned['reading'], when, form.exclude_reading_id)
    preview = {
        'warnings': validation.warnings,
        'usage':    asdict(usage) if usage else None,
        'billing':  asdict(billing) if billing else None,
    }
    if request.GET.get('preview'):
        return _json(preview)

    customer   = store.get_customer(customer_id)
    reading_id = store.add_reading(
        {'customer_id': customer_id, 'reading': cleaned['reading'], 'date': when},
        customer_name = customer.get('name'),
        customer_rt   = customer.get('rt'),
    )
    return _json({'id': reading_id, **preview}, status=201)


# ══════════════════════════════════════════════════════════
#   VIEWS 6–7 — Discounts (never deleted, only deactivated)
# ══════════════════════════════════════════════════════════
@login_required
@require_POST
def discount_create(request):
    store = get_field_session(request).store
    form  = DiscountForm(request.POST, store=store)
    if not form.is_valid():
        return _form_errors(form)

    cleaned = form.cleaned_data
    discount_id = store.add_discount({
        'customer_id':         cleaned['customer_id'],
        'discount_percentage': cleaned['discount_percentage'],
        'discount_amount':     cleaned['discount_amount'],
        'reason':              cleaned['reason'].strip(),
        'discount_month':      cleaned['discount_month'],
        'created_by':          _user_label(request.user),
    })
    return _json({'id': discount_id}, status=201)


@login_required
@require_POST
def discount_deactivate(request, discount_id):
    store = get_field_session(request).store
    if not store.deactivate_discount(discount_id):
        raise Http404('Discount not found')
    return _json({'id': discount_id, 'is_active': False})


# ══════════════════════════════════════════════════════════
#   VIEW 8 — Monthly billing report  (?format=json|csv|pdf)
# ══════════════════════════════════════════════════════════
@login_required
@require_GET
def monthly_report(request):
    form = _period(request)
    if not form.is_valid():
        return _form_errors(form)
    year, month = form.cleaned_data['year'], form.cleaned_data['month']
    rt  = form.cleaned_data.get('rt')
    fmt = request.GET.get('format', 'json')

    store  = get_field_session(request).store
    report = generate_monthly_billing_report(store, year, month, rt_numbers=[rt] if rt else None)
    try:
        rows = format_for_export(report.data, fmt)
    except ValueError as e:
        return _json({'errors': {'format': [str(e)]}}, status=400)

    if fmt == 'csv':
        response = HttpResponse(content_type='text/csv; charset=utf-8')
        response['Content-Disposition'] = f'attachment; filename="billing-{year:04d}-{month:02d}.csv"'
        write_csv(rows, response)
        return response

    is_valid, issues, warnings = validate_data_integrity(report.data)
    return _json({
        'year':         year,
        'month':        month,
        'summary':      report.summary,
        'rt_breakdown': report.rt_breakdown,
        'rows':         rows,
        'errors':       report.errors,
        'integrity':    {'is_valid': is_valid, 'issues': issues, 'warnings': warnings},
    })


@login_required
@require_GET
def rt_bills(request):
    form = _period(request)
    if not form.is_valid():
        return _form_errors(form)
    store  = get_field_session(request).store
    totals = rt_total_bills(store, form.cleaned_data['year'], form.cleaned_data['month'])
    return _json({'rt_total_bills': [asdict(t) for t in totals]})


# ══════════════════════════════════════════════════════════
#   VIEWS 9–11 — Sync
# ══════════════════════════════════════════════════════════
@login_required
@require_POST
def sync_now(request):
    result = get_field_session(request).sync.sync()
    return _json(asdict(result), status=200 if result.success else 409)


@login_required
@require_GET
def sync_status(request):
    session = get_field_session(request)
    connected, error = session.sync.check_connection()
    return _json({**session.sync.get_status(), 'connected': connected, 'connection_error': error})


@login_required
@require_POST
def set_connectivity(request):
    online  = request.POST.get('online') in ('1', 'true', 'on')
    session = get_field_session(request)
    result  = session.sync.set_online(online)
    request.session['waterbill_online'] = online
    return _json({
        'status': session.sync.get_status(),
        'sync':   asdict(result) if result else None,
    })


# ══════════════════════════════════════════════════════════
#   VIEWS 12–15 — Financial ledger
# ══════════════════════════════════════════════════════════
@login_required
@require_http_methods(['GET', 'POST'])
def transactions(request):
    if request.method == 'GET':
        filters = {
            'type':         request.GET.get('type'),
            'category_ids': request.GET.getlist('category'),
            'date_from':    request.GET.get('date_from'),
            'date_to':      request.GET.get('date_to'),
            'search_term':  request.GET.get('q'),
            'sort_by':      request.GET.get('sort_by'),
            'sort_order':   request.GET.get('sort_order', 'desc'),
            'page':         request.GET.get('page'),
            'limit':        request.GET.get('limit'),
        }
        return _json({'transactions': [_transaction_record(t) for t in finance.get_transactions(filters)]})

    form = TransactionForm(request.POST)
    if not form.is_valid():
        return _form_errors(form)
    data = form.as_data()
    duplicates = finance.check_duplicate_transaction(data)
    if duplicates and not request.POST.get('confirm_duplicate'):
        return _json({'duplicates': [_transaction_record(t) for t in duplicates]}, status=409)
    try:
        entry = finance.create_transaction(data, user=_user_label(request.user))
    except ValidationError as e:
        return _json({'errors': {'__all__': e.messages}}, status=400)
    except RemoteStoreError as e:
        return _json({'errors': {'__all__': [e.message]}}, status=503)
    return _json(_transaction_record(entry), status=201)


@login_required
@require_POST
def transaction_edit(request, pk):
    if request.POST.get('delete'):
        if not finance.delete_transaction(pk):
            raise Http404('Transaction not found')
        return _json({'id': str(pk), 'deleted': True})

    form = TransactionForm(request.POST)
    if not form.is_valid():
        return _form_errors(form)
    try:
        entry = finance.update_transaction(pk, form.as_data(), user=_user_label(request.user))
    except FinancialTransaction.DoesNotExist:
        raise Http404('Transaction not found') from None
    except ValidationError as e:
        return _json({'errors': {'__all__': e.messages}}, status=400)
    except RemoteStoreError as e:
        return _json({'errors': {'__all__': [e.message]}}, status=503)
    return _json(_transaction_record(entry))


@login_required
@require_GET
def financial_report(request):
    today = timezone.localdate()
    start = request.GET.get('start', today.replace(day=1).isoformat())
    end   = request.GET.get('end', today.isoformat())
    try:
        report = finance.build_financial_report(start, end)
    except ValueError as e:
        return _json({'errors': {'__all__': [str(e)]}}, status=400)
    report['transactions'] = [_transaction_record(t) for t in report['transactions']]
    return _json(report)


@login_required
@require_http_methods(['GET', 'POST'])
def rt_payments(request):
    store = get_field_session(request).store
    if request.method == 'GET':
        form = _period(request)
        if not form.is_valid():
            return _form_errors(form)
        statuses = finance.rt_payment_status(store, form.cleaned_data['year'], form.cleaned_data['month'])
        return _json({'rt_payment_status': [asdict(s) for s in statuses]})

    form = RTPaymentForm(request.POST)
    if not form.is_valid():
        return _form_errors(form)
    cleaned = form.cleaned_data
    try:
        entry = finance.record_rt_payment(
            rt            = cleaned['rt'],
            amount        = cleaned['amount'],
            billing_month = cleaned['billing_month'],
            payment_date  = cleaned.get('date'),
            user          = _user_label(request.user),
        )
    except ValidationError as e:
        return _json({'errors': {'__all__': e.messages}}, status=400)
    except RemoteStoreError as e:
        return _json({'errors': {'__all__': [e.message]}}, status=503)
    return _json(_transaction_record(entry), status=201)


# ══════════════════════════════════════════════════════════
#   VIEW 16 — Meter adjustments
#   The next reading after an adjustment is measured from its
#   new_reading instead of the last reading on the old gauge.
# ══════════════════════════════════════════════════════════
@login_required
@require_http_methods(['GET', 'POST'])
def adjustments(request):
    store = get_field_session(request).store
    if request.method == 'GET':
        customer_id = request.GET.get('customer')
        rows = store.get_customer_adjustments(customer_id) if customer_id else store.get_adjustments()
        rows = sorted(rows, key=lambda a: (str(a.get('adjustment_date')), str(a.get('created_at'))),
                      reverse=True)
        return _json({'adjustments': rows})

    form = MeterAdjustmentForm(request.POST, store=store)
    if not form.is_valid():
        return _form_errors(form)
    cleaned = form.cleaned_data
    adjustment_id = store.add_adjustment({
        'customer_id':     cleaned['customer_id'],
        'old_reading':     cleaned['old_reading'],
        'new_reading':     cleaned['new_reading'],
        'adjustment_type': cleaned['adjustment_type'],
        'reason':          cleaned['reason'].strip(),
        'adjustment_date': cleaned['adjustment_date'].isoformat(),
        'notes':           cleaned.get('notes') or '',
        'created_by':      _user_label(request.user),
    })
    logger.info('Meter adjustment %s (%s) recorded for customer %s',
                adjustment_id, cleaned['adjustment_type'], cleaned['customer_id'])
    return _json({'id': adjustment_id}, status=201)
