from datetime import datetime, timezone as dt_timezone

import pytest

from waterbill.remote import ADJUSTMENTS, CUSTOMERS, DISCOUNTS, READINGS
from waterbill.sync import IDLE, OFFLINE, UPLOADING, SyncManager
from waterbill.tests.conftest import FakeRemote

NOW = datetime(2024, 6, 15, 10, 0, tzinfo=dt_timezone.utc)


def manager_for(store, remote, **kwargs):
    return SyncManager(store, remote, clock=lambda: NOW, **kwargs)


# ── Upload ─────────────────────────────────────────────────
def test_uploads_customers_before_their_readings_and_discounts(store, remote):
    # queued in the "wrong" order on purpose
    store.add_discount({'customer_id': '7', 'discount_amount': 5000,
                        'reason': 'Pipe burst', 'discount_month': '2024-06'})
    customer_id = store.add_customer({'name': 'Budi', 'rt': 'RT 01', 'phone': ''})
    store.add_reading({'customer_id': customer_id, 'reading': 10, 'date': '2024-06-01'})

    result = manager_for(store, remote).sync()

    assert result.success
    assert result.synced == 3
    assert [call[1] for call in remote.calls if call[0] == 'upsert'] == [CUSTOMERS, READINGS, DISCOUNTS]
    assert store.get_sync_queue() == []


def test_offline_ids_are_replaced_by_remote_ids(store, remote):
    customer_id = store.add_customer({'name': 'Budi', 'rt': 'RT 01'})
    store.add_reading({'customer_id': customer_id, 'reading': 10, 'date': '2024-06-01'})

    manager_for(store, remote).sync()

    customer_record, reading_record = remote.upserts()
    assert 'id' not in customer_record
    assert reading_record['customer_id'] == '100'
    assert store.get_customer('100')['synced'] is True
    assert store.get_readings()[0]['customer_id'] == '100'
    assert store.get_readings()[0]['id'] == '101'


def test_failing_item_goes_to_dead_letters_after_three_cycles(store, remote):
    remote.fail[CUSTOMERS] = 10
    store.add_customer({'name': 'Budi'})
    manager = manager_for(store, remote)

    for attempt in (1, 2):
        result = manager.sync()
        assert not result.success
        assert result.failed == 1
        assert store.get_sync_queue()[0]['attempts'] == attempt

    result = manager.sync()
    assert 'Removed customer after 3 failed attempts' in result.errors
    assert store.get_sync_queue() == []
    assert store.get_dead_letters()[0]['attempts'] == 3

    manager.sync()
    assert len(remote.upserts(CUSTOMERS)) == 3


def test_reading_waits_for_its_customer(store, remote):
    remote.fail[CUSTOMERS] = 1
    customer_id = store.add_customer({'name': 'Budi'})
    store.add_reading({'customer_id': customer_id, 'reading': 10, 'date': '2024-06-01'})
    manager = manager_for(store, remote)

    first = manager.sync()
    assert first.failed == 2
    assert remote.upserts(READINGS) == []

    second = manager.sync()
    assert second.success
    assert second.synced == 2
    assert remote.upserts(READINGS)[0]['customer_id'] == '100'


def test_discount_on_unprovisioned_table_is_dropped(store):
    remote = FakeRemote(missing={DISCOUNTS})
    store.add_discount({'customer_id': '7', 'discount_percentage': 10,
                        'reason': 'Lansia', 'discount_month': '2024-06'})

    result = manager_for(store, remote).sync()

    assert result.success
    assert result.skipped == 1
    assert store.get_sync_queue() == []
    assert store.get_dead_letters() == []


def test_discount_feature_switched_off(store):
    remote = FakeRemote(features={DISCOUNTS: False})
    store.save_discounts([{'id': 1, 'customer_id': 7, 'discount_amount': 1000,
                           'reason': 'cached', 'discount_month': '2024-06'}])

    manager_for(store, remote).sync()

    assert not [call for call in remote.calls if call[1] == DISCOUNTS]
    assert store.get_discounts()[0]['reason'] == 'cached'


def test_incomplete_discount_is_skipped(store, remote):
    store.add_discount({'customer_id': '7', 'reason': 'no value', 'discount_month': '2024-06'})

    result = manager_for(store, remote).sync()

    assert result.skipped == 1
    assert remote.upserts() == []


def test_adjustment_uploads_after_its_customer_and_readings(store, remote):
    customer_id = store.add_customer({'name': 'Budi', 'rt': 'RT 01'})
    store.add_adjustment({'customer_id': customer_id, 'old_reading': 130, 'new_reading': 0,
                          'adjustment_type': 'gauge_replacement', 'reason': 'Gauge cracked',
                          'adjustment_date': '2024-06-01'})
    store.add_reading({'customer_id': customer_id, 'reading': 4, 'date': '2024-06-10'})

    result = manager_for(store, remote).sync()

    assert result.synced == 3
    assert [call[1] for call in remote.calls if call[0] == 'upsert'] == [CUSTOMERS, READINGS, ADJUSTMENTS]
    assert remote.upserts(ADJUSTMENTS)[0]['customer_id'] == '100'
    assert store.get_adjustments()[0]['id'] == '102'
    assert store.get_adjustments()[0]['customer_id'] == '100'


def test_adjustment_on_unprovisioned_table_is_dropped(store):
    remote = FakeRemote(missing={ADJUSTMENTS})
    store.add_adjustment({'customer_id': '7', 'old_reading': 130, 'new_reading': 0,
                          'adjustment_type': 'meter_reset', 'reason': 'Reset',
                          'adjustment_date': '2024-06-01'})

    result = manager_for(store, remote).sync()

    assert result.success
    assert result.skipped == 1
    assert store.get_dead_letters() == []


# ── Download ───────────────────────────────────────────────
def test_download_replaces_snapshots(store, remote):
    store.add_customer({'id': '1', 'name': 'Old'}, skip_sync=True)
    remote.tables[CUSTOMERS] = [{'id': '2', 'name': 'Siti', 'rt': 'RT 02', 'phone': ''}]
    remote.tables[READINGS]  = [{'id': '9', 'customer_id': '2', 'reading': 40, 'date': '2024-06-01'}]

    result = manager_for(store, remote).sync()

    assert result.success
    assert [c['id'] for c in store.get_customers()] == ['2']
    assert store.get_readings()[0]['synced'] is True
    assert store.get_last_sync_time() == NOW.isoformat()


def test_empty_download_keeps_cached_snapshot(store, remote):
    store.add_customer({'id': '1', 'name': 'Budi'}, skip_sync=True)
    manager_for(store, remote).sync()
    assert [c['id'] for c in store.get_customers()] == ['1']


def test_readings_window_is_three_months(store, remote):
    manager_for(store, remote).sync()

    fetches = {call[1]: call for call in remote.calls if call[0] == 'fetch'}
    _, _, gte, order, ascending = fetches[READINGS]
    assert gte == {'date': datetime(2024, 3, 15, 10, 0, tzinfo=dt_timezone.utc).isoformat()}
    assert (order, ascending) == ('date', False)
    assert fetches[DISCOUNTS][3:] == ('created_at', False)


def test_download_failure_keeps_cache_and_still_uploads(store, remote):
    store.save_customers([{'id': 1, 'name': 'Budi'}])
    remote.missing.add(READINGS)
    store.add_customer({'name': 'Siti'})

    result = manager_for(store, remote).sync()

    assert result.synced == 1
    assert {c['name'] for c in store.get_customers()} == {'Budi', 'Siti'}


# ── State ──────────────────────────────────────────────────
def test_refuses_to_sync_when_offline_or_busy(store, remote):
    offline = manager_for(store, remote, online=False)
    assert offline.sync().errors == ['Device is offline']

    busy = manager_for(store, remote)
    busy.state = UPLOADING
    assert busy.sync().errors == ['Sync already in progress']
    assert remote.calls == []


def test_coming_back_online_triggers_sync(store, remote):
    manager = manager_for(store, remote, online=False)
    store.add_customer({'name': 'Budi'})

    result = manager.set_online(True)

    assert result.synced == 1
    assert manager.state == IDLE
    assert manager.set_online(False) is None
    assert manager.state == OFFLINE


def test_refresh_data(store, remote):
    remote.tables[CUSTOMERS] = [{'id': '2', 'name': 'Siti'}]
    manager = manager_for(store, remote)

    assert manager.refresh_data() == [CUSTOMERS]
    assert manager.state == IDLE

    manager.set_online(False)
    with pytest.raises(RuntimeError):
        manager.refresh_data()


def test_sync_complete_callbacks(store, remote):
    seen = []
    manager = manager_for(store, remote)
    callback = seen.append
    manager.on_sync_complete(callback)

    manager.sync()
    manager.remove_sync_callback(callback)
    manager.sync()

    assert len(seen) == 1
    assert seen[0].success


def test_check_connection_and_status(store, remote):
    manager = manager_for(store, remote)
    assert manager.check_connection() == (True, None)

    remote.offline = True
    ok, error = manager.check_connection()
    assert not ok
    assert 'connection refused' in error

    store.add_customer({'name': 'Budi'})
    status = manager.get_status()
    assert status['state'] == IDLE
    assert status['pending_items'] == 1
    assert status['sync_in_progress'] is False
