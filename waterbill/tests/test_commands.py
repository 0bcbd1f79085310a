from io import StringIO

import pytest
from django.core.management import CommandError, call_command

from waterbill.models import Customer


def run(*args):
    out = StringIO()
    call_command(*args, stdout=out)
    return out.getvalue()


@pytest.fixture
def billed(store):
    store.save_customers([
        {'id': 1, 'name': 'Budi', 'rt': 'RT 01', 'phone': ''},
        {'id': 2, 'name': 'Siti', 'rt': 'RT 01', 'phone': ''},
    ])
    store.save_readings([
        {'id': 11, 'customer_id': 1, 'reading': 100, 'date': '2024-04-15'},
        {'id': 12, 'customer_id': 1, 'reading': 125, 'date': '2024-05-15'},
    ])
    return store


# ── run_billing ────────────────────────────────────────────
def test_run_billing_prints_rows_and_rt_totals(billed):
    output = run('run_billing', '--month', '2024-05', '--namespace', billed.namespace)

    assert 'Budi' in output
    assert 'missing: Siti' in output
    assert 'Done. 2024-05: 1 bills, 25 m³, net Rp 50,000' in output


def test_run_billing_csv(billed):
    output = run('run_billing', '--month', '2024-05', '--namespace', billed.namespace, '--csv')
    lines = output.splitlines()
    assert lines[0].startswith('Customer,RT,Phone')
    assert lines[1].startswith('Budi,RT 01')


def test_run_billing_rejects_bad_month(billed):
    with pytest.raises(CommandError):
        run('run_billing', '--month', 'May', '--namespace', billed.namespace)
    with pytest.raises(CommandError):
        run('run_billing', '--month', '2024-13', '--namespace', billed.namespace)


# ── sync_offline ───────────────────────────────────────────
@pytest.mark.django_db
def test_sync_offline_pushes_queue(store):
    store.add_customer({'name': 'Budi', 'rt': 'RT 01', 'phone': ''})

    output = run('sync_offline', '--namespace', store.namespace)

    assert 'Done. 1 synced, 0 failed, 0 skipped.' in output
    assert Customer.objects.filter(name='Budi').exists()


@pytest.mark.django_db
def test_sync_offline_status(store):
    store.add_customer({'name': 'Budi'})
    output = run('sync_offline', '--namespace', store.namespace, '--status')

    lines = [line.split() for line in output.splitlines()]
    assert ['pending_items', '1'] in lines
    assert ['connected', 'True'] in lines


@pytest.mark.django_db
def test_sync_offline_dead_letters_and_requeue(store):
    store.add_customer({'name': 'Budi'})
    entry = {**store.get_sync_queue()[0], 'attempts': 3}
    store.remove_sync_item(entry['id'])
    store.add_dead_letter(entry, 'rejected')

    listing = run('sync_offline', '--namespace', store.namespace, '--dead-letters')
    assert entry['id'] in listing
    assert '1 dead letter(s).' in listing

    requeued = run('sync_offline', '--namespace', store.namespace, '--requeue', entry['id'], '--requeue', 'nope',
                   '--status')
    assert f'Requeued {entry["id"]}' in requeued
    assert 'No dead letter nope' in requeued
    assert len(store.get_sync_queue()) == 1


# ── import_csv ─────────────────────────────────────────────
def test_import_csv_readings(billed, tmp_path):
    sheet = tmp_path / 'readings.csv'
    sheet.write_text('customer_name,rt,reading,date\nSiti,1,40,15/05/2024\nJoko,1,10,15/05/2024\n')

    output = run('import_csv', 'readings', str(sheet), '--namespace', billed.namespace)

    assert 'ERROR: Row 3: Customer not found (Joko, RT 01)' in output
    assert 'Done. 1 of 2 readings imported, 1 error(s).' in output
    assert billed.get_customer_readings('2')[0]['date'] == '2024-05-15'


def test_import_csv_template(billed):
    output = run('import_csv', 'readings', '--template', '--namespace', billed.namespace, '--date', '2024-06-15')
    lines = output.splitlines()

    assert lines[0] == 'customer_name,rt,reading,date,phone'
    assert lines[1] == 'Budi,RT 01,,2024-06-15,'


def test_import_csv_needs_a_file(billed, tmp_path):
    with pytest.raises(CommandError):
        run('import_csv', 'readings', '--namespace', billed.namespace)
    with pytest.raises(CommandError):
        run('import_csv', 'readings', str(tmp_path / 'missing.csv'))
    with pytest.raises(CommandError):
        run('import_csv', 'transactions', '--template')
