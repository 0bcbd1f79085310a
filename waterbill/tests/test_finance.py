from datetime import date
from decimal import Decimal

import pytest
from django.core.exceptions import ValidationError

from waterbill import finance
from waterbill.models import FinancialTransaction, TransactionCategory
from waterbill.remote import TableNotProvisioned

pytestmark = pytest.mark.django_db


@pytest.fixture
def categories():
    return {
        'rt01':  TransactionCategory.objects.create(name='Pemasukan RT 01', type='income'),
        'other': TransactionCategory.objects.create(name='Iuran Lain', type='income'),
        'pipes': TransactionCategory.objects.create(name='Perawatan Pipa', type='expense'),
    }


def entry(category, amount, day, kind=None, description=''):
    return {
        'type':        kind or category.type,
        'amount':      amount,
        'date':        day,
        'category_id': category.pk,
        'description': description,
    }


# ══════════════════════════════════════════════════════════
#   Cash book entries
# ══════════════════════════════════════════════════════════
def test_create_transaction(categories):
    created = finance.create_transaction(
        entry(categories['other'], '25000', '2024-05-02', description='  arisan  '), user='bendahara')

    assert created.amount == Decimal('25000')
    assert created.date == date(2024, 5, 2)
    assert created.description == 'arisan'
    assert created.created_by == 'bendahara'


def test_create_transaction_rejects_bad_input(categories):
    with pytest.raises(ValidationError):
        finance.create_transaction(entry(categories['other'], 0, '2024-05-02'))

    with pytest.raises(ValidationError):
        finance.create_transaction(entry(categories['pipes'], 1000, '2024-05-02', kind='income'))

    categories['other'].is_active = False
    categories['other'].save()
    with pytest.raises(ValidationError):
        finance.create_transaction(entry(categories['other'], 1000, '2024-05-02'))

    assert FinancialTransaction.objects.count() == 0


def test_update_and_delete_transaction(categories):
    created = finance.create_transaction(entry(categories['pipes'], 40000, '2024-05-03'))

    updated = finance.update_transaction(created.pk, {'amount': 45000}, user='ketua')
    assert updated.amount == Decimal('45000')
    assert updated.type == 'expense'
    assert updated.updated_by == 'ketua'

    assert finance.delete_transaction(created.pk)
    assert not finance.delete_transaction(created.pk)


def test_get_transactions_filters(categories):
    finance.create_transaction(entry(categories['rt01'],  75000, '2024-05-10', description='Mei'))
    finance.create_transaction(entry(categories['other'], 25000, '2024-05-02'))
    finance.create_transaction(entry(categories['pipes'], 40000, '2024-06-01'))

    assert [t.amount for t in finance.get_transactions()] == [40000, 75000, 25000]
    assert [t.type for t in finance.get_transactions({'type': 'expense'})] == ['expense']
    assert len(finance.get_transactions({'type': 'all'})) == 3
    assert len(finance.get_transactions({'date_from': '2024-05-05', 'date_to': '2024-05-31'})) == 1
    assert len(finance.get_transactions({'search_term': 'pipa'})) == 1
    assert len(finance.get_transactions({'category_ids': [categories['rt01'].pk]})) == 1

    by_amount = finance.get_transactions({'sort_by': 'amount', 'sort_order': 'asc', 'limit': 1, 'page': 2})
    assert [t.amount for t in by_amount] == [40000]


def test_duplicate_detection(categories):
    data = entry(categories['other'], 25000, '2024-05-02')
    assert finance.check_duplicate_transaction(data) == []

    finance.create_transaction(data)
    assert len(finance.check_duplicate_transaction(data)) == 1
    assert finance.check_duplicate_transaction({**data, 'amount': 25001}) == []


def test_get_categories(categories):
    assert {c.name for c in finance.get_categories('income')} == {'Pemasukan RT 01', 'Iuran Lain'}
    assert len(finance.get_categories()) == 3


# ══════════════════════════════════════════════════════════
#   Reports
# ══════════════════════════════════════════════════════════
def test_financial_report(categories):
    finance.create_transaction(entry(categories['rt01'],  75000, '2024-05-10'))
    finance.create_transaction(entry(categories['other'], 25000, '2024-05-02'))
    finance.create_transaction(entry(categories['pipes'], 40000, '2024-05-20'))
    finance.create_transaction(entry(categories['pipes'], 99000, '2024-07-01'))

    report = finance.build_financial_report('2024-05-01', '2024-05-31')

    assert report['summary'] == {
        'total_income':   Decimal('100000'),
        'total_expenses': Decimal('40000'),
        'net_profit':     Decimal('60000'),
    }
    income = report['income_by_category']
    assert [row['category'] for row in income] == ['Pemasukan RT 01', 'Iuran Lain']
    assert [row['percentage_of_total'] for row in income] == [Decimal('75.00'), Decimal('25.00')]
    assert report['expenses_by_category'][0]['transaction_count'] == 1
    assert len(report['transactions']) == 3


def test_financial_report_needs_a_valid_range():
    with pytest.raises(ValueError):
        finance.build_financial_report('2024-06-01', '2024-05-01')


# ══════════════════════════════════════════════════════════
#   RT collections
# ══════════════════════════════════════════════════════════
def test_record_rt_payment_creates_category():
    payment = finance.record_rt_payment('RT 04', 12000, '2024-05', payment_date='2024-06-02', user='rt4')

    assert payment.category.name == 'Pemasukan RT 04'
    assert payment.category.type == 'income'
    assert payment.description == 'Water payment RT 04 for 2024-05'
    assert payment.created_by == 'rt4'


@pytest.fixture
def billed(store):
    store.save_customers([
        {'id': 1, 'name': 'Budi', 'rt': 'RT 01'},
        {'id': 3, 'name': 'Agus', 'rt': 'RT 02'},
        {'id': 5, 'name': 'Eko',  'rt': 'RT 03'},
        {'id': 4, 'name': 'Dewi', 'rt': ''},
    ])
    store.save_readings([
        {'id': 11, 'customer_id': 1, 'reading': 100, 'date': '2024-04-15'},
        {'id': 12, 'customer_id': 1, 'reading': 125, 'date': '2024-05-15'},
        {'id': 31, 'customer_id': 3, 'reading': 200, 'date': '2024-05-10'},
    ])
    return store


def test_rt_payment_status(billed):
    finance.record_rt_payment('RT 01', 20000, '2024-05', payment_date='2024-06-05')
    finance.record_rt_payment('RT 01', 10000, '2024-04', payment_date='2024-05-05')
    finance.record_rt_payment('RT 01', 30000, '2024-05', payment_date='2024-09-01')
    finance.record_rt_payment('RT 02', 5000,  '2024-05', payment_date='2024-05-20')

    statuses = {s.rt: s for s in finance.rt_payment_status(billed, 2024, 5)}

    assert list(statuses) == ['RT 01', 'RT 02', 'RT 03']

    rt01 = statuses['RT 01']
    assert rt01.total_bill == 50000
    assert rt01.paid_amount == 20000
    assert rt01.pending_amount == 30000
    assert rt01.last_payment_date == '2024-06-05'
    assert rt01.payment_status == 'partial'

    assert statuses['RT 02'].payment_status == 'paid'
    # no readings, nothing owed
    assert statuses['RT 03'].total_bill == 0
    assert statuses['RT 03'].payment_status == 'paid'


# ══════════════════════════════════════════════════════════
#   Ledger switched off
# ══════════════════════════════════════════════════════════
def test_ledger_switched_off(settings, billed, categories):
    settings.WATERBILL_FEATURES = {'financial_transactions': False}

    with pytest.raises(TableNotProvisioned):
        finance.create_transaction(entry(categories['other'], 1000, '2024-05-02'))
    with pytest.raises(TableNotProvisioned):
        finance.record_rt_payment('RT 01', 1000, '2024-05')

    assert finance.get_transactions() == []
    assert finance.build_financial_report('2024-05-01', '2024-05-31')['summary']['net_profit'] == 0
    statuses = {s.rt: s.payment_status for s in finance.rt_payment_status(billed, 2024, 5)}
    assert statuses == {'RT 01': 'pending', 'RT 02': 'pending', 'RT 03': 'paid'}
