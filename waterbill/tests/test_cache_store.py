import pytest

from waterbill.cache_store import LocalCacheStore
from waterbill.tests.conftest import add_history


def test_add_customer_assigns_offline_id_and_queues_it(store):
    customer_id = store.add_customer({'name': 'Budi', 'rt': 'RT 01', 'phone': ''})

    assert customer_id.startswith('offline_')
    assert store.get_customer(customer_id)['synced'] is False
    queue = store.get_sync_queue()
    assert [item['type'] for item in queue] == ['customer']
    assert queue[0]['data']['id'] == customer_id
    assert queue[0]['attempts'] == 0


def test_skip_sync_does_not_queue(store):
    store.add_customer({'name': 'Budi'}, skip_sync=True)
    store.add_reading({'customer_id': '1', 'reading': 10, 'date': '2024-01-15'}, skip_sync=True)
    assert store.get_sync_queue() == []


def test_save_snapshot_replaces_whole_list(store):
    store.save_customers([{'id': 1, 'name': 'A'}, {'id': 2, 'name': 'B'}])
    store.save_customers([{'id': 3, 'name': 'C'}])

    customers = store.get_customers()
    assert [c['id'] for c in customers] == ['3']
    assert customers[0]['synced'] is True


def test_namespaces_are_isolated(store):
    other = LocalCacheStore(namespace=store.namespace + '-other')
    store.add_customer({'name': 'Budi'})
    try:
        assert other.get_customers() == []
        assert other.get_sync_queue() == []
    finally:
        other.clear_all()


def test_previous_reading_is_latest_strictly_before(store):
    add_history(store, '7', [100, 110, 125])

    previous = store.get_previous_reading('7', '2024-03-15')
    assert previous['reading'] == 110
    assert store.get_previous_reading('7', '2024-01-15') is None


def test_readings_before_newest_first_with_limit(store):
    add_history(store, '7', [100, 110, 125, 130])
    readings = store.get_readings_before('7', '2024-06-01', limit=2)
    assert [r['reading'] for r in readings] == [130, 125]


def test_duplicate_reading_same_calendar_month(store):
    ids = add_history(store, '7', [100])

    assert store.check_duplicate_reading('7', '2024-01-31')
    assert not store.check_duplicate_reading('7', '2024-02-01')
    assert not store.check_duplicate_reading('8', '2024-01-20')
    assert not store.check_duplicate_reading('7', '2024-01-20', exclude_id=ids[0])


def test_update_reading_queues_unless_synced(store):
    reading_id = store.add_reading({'customer_id': '7', 'reading': 10, 'date': '2024-01-15'}, skip_sync=True)

    assert store.update_reading(reading_id, {'reading': 12})
    assert len(store.get_sync_queue()) == 1

    assert store.update_reading(reading_id, {'reading': 13, 'synced': True})
    assert len(store.get_sync_queue()) == 1
    assert not store.update_reading('missing', {'reading': 1})


def test_active_discount_picks_most_recent_of_month(store):
    store.add_discount({'customer_id': '7', 'discount_percentage': 10, 'reason': 'first',
                        'discount_month': '2024-05', 'created_at': '2024-05-01T00:00:00'})
    newer = store.add_discount({'customer_id': '7', 'discount_percentage': 20, 'reason': 'second',
                                'discount_month': '2024-05', 'created_at': '2024-05-03T00:00:00'})

    assert store.get_customer_active_discount('7', '2024-05')['id'] == newer
    assert store.get_customer_active_discount('7', '2024-06') is None


def test_deactivated_discount_is_kept_but_not_active(store):
    discount_id = store.add_discount({'customer_id': '7', 'discount_amount': 5000,
                                      'reason': 'flood', 'discount_month': '2024-05'})
    assert store.deactivate_discount(discount_id)

    assert store.get_customer_active_discount('7', '2024-05') is None
    assert len(store.get_customer_discounts('7')) == 1


def test_enqueue_rejects_unknown_type(store):
    with pytest.raises(ValueError):
        store.enqueue('invoice', {})


def test_remap_offline_id_updates_snapshot_and_queue(store):
    customer_id = store.add_customer({'name': 'Budi', 'rt': 'RT 01'})
    store.add_reading({'customer_id': customer_id, 'reading': 10, 'date': '2024-01-15'})

    store.remap_offline_id('customer', customer_id, '42')

    assert store.get_customer('42')['synced'] is True
    assert store.get_readings()[0]['customer_id'] == '42'
    reading_item = [i for i in store.get_sync_queue() if i['type'] == 'reading'][0]
    assert reading_item['data']['customer_id'] == '42'


def test_dead_letter_requeue_resets_attempts(store):
    store.add_customer({'name': 'Budi'})
    entry = {**store.get_sync_queue()[0], 'attempts': 3}
    store.remove_sync_item(entry['id'])
    store.add_dead_letter(entry, 'rejected')

    assert store.get_dead_letters()[0]['error'] == 'rejected'
    assert store.requeue_dead_letter(entry['id'])
    assert store.get_dead_letters() == []
    assert store.get_sync_queue()[0]['attempts'] == 0
    assert not store.requeue_dead_letter('nope')


def test_storage_stats_and_clear(store):
    store.add_customer({'name': 'Budi'})
    store.set_last_sync_time('2024-01-01T00:00:00+07:00')

    stats = store.get_storage_stats()
    assert stats['customers'] == 1
    assert stats['pending_sync'] == 1
    assert stats['last_sync'] == '2024-01-01T00:00:00+07:00'

    store.clear_customers_cache()
    assert store.get_customers() == []
    assert len(store.get_sync_queue()) == 1

    store.clear_all()
    assert store.get_storage_stats()['pending_sync'] == 0


def test_each_cache_clears_on_its_own(store):
    add_history(store, '7', [100, 110])
    store.add_discount({'customer_id': '7', 'discount_amount': 5000,
                        'reason': 'Pipe burst', 'discount_month': '2024-05'})

    store.clear_readings_cache()
    assert store.get_readings() == []
    assert len(store.get_discounts()) == 1

    store.clear_discounts_cache()
    assert store.get_discounts() == []
    assert len(store.get_sync_queue()) == 1

    store.clear_sync_queue()
    assert store.get_sync_queue() == []

    store.clear_dead_letters()
    assert store.get_dead_letters() == []
    assert repr(store) == f'<LocalCacheStore namespace={store.namespace!r}>'


def gauge_swap(store, day='2024-03-01', new_reading=0, **extra):
    return store.add_adjustment({
        'customer_id': '7', 'old_reading': 130, 'new_reading': new_reading,
        'adjustment_type': 'gauge_replacement', 'reason': 'Gauge cracked', 'adjustment_date': day, **extra,
    }, skip_sync=True)


def test_adjustment_restarts_the_previous_reading(store):
    add_history(store, '7', [100, 120])
    gauge_swap(store)

    previous = store.get_previous_reading('7', '2024-03-15')
    assert previous['source'] == 'adjustment'
    assert previous['reading'] == 0

    # readings on or before the swap day still compare with the old gauge
    assert store.get_previous_reading('7', '2024-02-20')['reading'] == 120
    assert store.get_previous_reading('7', '2024-03-01T10:00:00')['reading'] == 120


def test_reading_after_an_adjustment_takes_over_again(store):
    add_history(store, '7', [100, 120])
    gauge_swap(store)
    store.add_reading({'customer_id': '7', 'reading': 12, 'date': '2024-03-15'}, skip_sync=True)

    previous = store.get_previous_reading('7', '2024-04-15')
    assert previous['reading'] == 12
    assert 'source' not in previous


def test_latest_adjustment_wins(store):
    gauge_swap(store, day='2024-02-01', new_reading=5)
    gauge_swap(store, day='2024-03-01', new_reading=9)

    assert store.get_latest_adjustment('7')['new_reading'] == 9
    assert store.get_latest_adjustment('7', before='2024-02-20')['new_reading'] == 5
    assert store.get_previous_reading('7', '2024-03-15')['reading'] == 9
    assert store.get_storage_stats()['adjustments'] == 2

    store.clear_adjustments_cache()
    assert store.get_adjustments() == []
