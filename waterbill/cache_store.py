"""
Local cache store.

Holds the last downloaded snapshots of customers, readings, discounts
and meter adjustments for one field session, plus the queue of writes made while offline.
Every value is stored under its own cache key and every write replaces
the whole value, so a reader never sees a half-written list.
"""
import logging

from django.conf import settings
from django.core.cache import caches
from django.utils import timezone

from .utils import generate_offline_id, month_key, now_iso, parse_reading_date

logger = logging.getLogger(__name__)


class LocalCacheStore:
    CUSTOMERS_KEY   = 'offline_customers'
    READINGS_KEY    = 'offline_readings'
    DISCOUNTS_KEY   = 'offline_discounts'
    ADJUSTMENTS_KEY = 'offline_adjustments'
    SYNC_QUEUE_KEY  = 'sync_queue'
    LAST_SYNC_KEY   = 'last_sync'
    DEAD_LETTER_KEY = 'dead_letters'

    QUEUE_TYPES = ('customer', 'reading', 'discount', 'adjustment')

    def __init__(self, namespace='default', cache=None):
        self.namespace = namespace
        if cache is None:
            cache = caches[getattr(settings, 'WATERBILL_CACHE_ALIAS', 'offline')]
        self.cache = cache

    def __repr__(self):
        return f'<LocalCacheStore namespace={self.namespace!r}>'

    def _key(self, name):
        return f'waterbill:{self.namespace}:{name}'

    def _read(self, name, default=None):
        value = self.cache.get(self._key(name))
        return default if value is None else value

    def _write(self, name, value):
        self.cache.set(self._key(name), value, timeout=None)

    def _delete(self, name):
        self.cache.delete(self._key(name))

    # ══════════════════════════════════════════════════════
    #   Customers
    # ══════════════════════════════════════════════════════
    def save_customers(self, customers):
        stamp = now_iso()
        self._write(self.CUSTOMERS_KEY, [
            {**customer, 'id': str(customer['id']), 'synced': True, 'last_updated': stamp}
            for customer in customers
        ])

    def get_customers(self):
        return self._read(self.CUSTOMERS_KEY, [])

    def get_customer(self, customer_id):
        customer_id = str(customer_id)
        for customer in self.get_customers():
            if str(customer.get('id')) == customer_id:
                return customer
        return None

    def add_customer(self, customer, skip_sync=False):
        customers = self.get_customers()
        record = {
            **customer,
            'id':           str(customer.get('id') or generate_offline_id()),
            'synced':       False,
            'last_updated': now_iso(),
        }
        customers.append(record)
        self._write(self.CUSTOMERS_KEY, customers)
        if not skip_sync:
            self.enqueue('customer', record)
        return record['id']

    def update_customer(self, customer_id, updates):
        customers = self.get_customers()
        for index, customer in enumerate(customers):
            if str(customer.get('id')) == str(customer_id):
                customers[index] = {**customer, **updates, 'synced': False, 'last_updated': now_iso()}
                self._write(self.CUSTOMERS_KEY, customers)
                self.enqueue('customer', customers[index])
                return True
        return False

    # ══════════════════════════════════════════════════════
    #   Readings
    # ══════════════════════════════════════════════════════
    def save_readings(self, readings):
        self._write(self.READINGS_KEY, [
            {
                **reading,
                'id':          str(reading['id']),
                'customer_id': str(reading['customer_id']),
                'synced':      True,
                'created_at':  reading.get('created_at') or reading.get('date'),
            }
            for reading in readings
        ])

    def get_readings(self):
        return self._read(self.READINGS_KEY, [])

    def add_reading(self, reading, customer_name=None, customer_rt=None, skip_sync=False):
        readings = self.get_readings()
        record = {
            **reading,
            'id':            str(reading.get('id') or generate_offline_id()),
            'customer_id':   str(reading['customer_id']),
            'synced':        False,
            'created_at':    now_iso(),
            'customer_name': customer_name,
            'customer_rt':   customer_rt,
        }
        readings.append(record)
        self._write(self.READINGS_KEY, readings)
        if not skip_sync:
            self.enqueue('reading', record)
        return record['id']

    def update_reading(self, reading_id, updates):
        readings = self.get_readings()
        for index, reading in enumerate(readings):
            if str(reading.get('id')) == str(reading_id):
                merged = {**reading, **updates}
                readings[index] = merged
                self._write(self.READINGS_KEY, readings)
                if not merged.get('synced'):
                    self.enqueue('reading', merged)
                return True
        return False

    def get_customer_readings(self, customer_id):
        customer_id = str(customer_id)
        return [r for r in self.get_readings() if str(r.get('customer_id')) == customer_id]

    def get_readings_before(self, customer_id, before, limit=None):
        """Readings of one customer dated strictly before ``before``, newest first."""
        cutoff = parse_reading_date(before)
        if cutoff is None:
            return []
        dated = []
        for reading in self.get_customer_readings(customer_id):
            when = parse_reading_date(reading.get('date'))
            if when is not None and when < cutoff:
                dated.append((when, reading))
        dated.sort(key=lambda pair: pair[0], reverse=True)
        readings = [reading for _, reading in dated]
        return readings[:limit] if limit else readings

    def get_previous_reading(self, customer_id, before):
        """
        The value a reading taken at ``before`` is measured from: the
        latest reading strictly before it, unless a meter adjustment
        dated on or after that reading's day (and before ``before``'s
        day) restarted the gauge.
        """
        readings = self.get_readings_before(customer_id, before, limit=1)
        previous = readings[0] if readings else None

        adjustment = self.get_latest_adjustment(customer_id, before)
        if adjustment is None:
            return previous
        adjusted_on = parse_reading_date(adjustment.get('adjustment_date')).date()
        if previous is not None and parse_reading_date(previous.get('date')).date() > adjusted_on:
            return previous
        return {
            'id':              adjustment.get('id'),
            'customer_id':     adjustment.get('customer_id'),
            'reading':         adjustment.get('new_reading'),
            'date':            adjustment.get('adjustment_date'),
            'source':          'adjustment',
            'adjustment_type': adjustment.get('adjustment_type'),
        }

    def check_duplicate_reading(self, customer_id, reading_date, exclude_id=None):
        target = parse_reading_date(reading_date)
        if target is None:
            return False
        for reading in self.get_customer_readings(customer_id):
            if exclude_id and str(reading.get('id')) == str(exclude_id):
                continue
            when = parse_reading_date(reading.get('date'))
            if when is not None and (when.year, when.month) == (target.year, target.month):
                return True
        return False

    # ══════════════════════════════════════════════════════
    #   Discounts
    #   Discounts are never deleted, only deactivated.
    # ══════════════════════════════════════════════════════
    def save_discounts(self, discounts):
        stamp = now_iso()
        self._write(self.DISCOUNTS_KEY, [
            {
                **discount,
                'id':           str(discount['id']),
                'customer_id':  str(discount['customer_id']),
                'synced':       True,
                'last_updated': stamp,
            }
            for discount in discounts
        ])

    def get_discounts(self):
        return self._read(self.DISCOUNTS_KEY, [])

    def add_discount(self, discount, skip_sync=False):
        discounts = self.get_discounts()
        stamp = now_iso()
        record = {
            'is_active':  True,
            'created_at': stamp,
            **discount,
            'id':           str(discount.get('id') or generate_offline_id()),
            'customer_id':  str(discount['customer_id']),
            'synced':       False,
            'last_updated': stamp,
        }
        discounts.append(record)
        self._write(self.DISCOUNTS_KEY, discounts)
        if not skip_sync:
            self.enqueue('discount', record)
        return record['id']

    def update_discount(self, discount_id, updates):
        discounts = self.get_discounts()
        for index, discount in enumerate(discounts):
            if str(discount.get('id')) == str(discount_id):
                discounts[index] = {**discount, **updates, 'synced': False, 'last_updated': now_iso()}
                self._write(self.DISCOUNTS_KEY, discounts)
                self.enqueue('discount', discounts[index])
                return True
        return False

    def deactivate_discount(self, discount_id):
        return self.update_discount(discount_id, {'is_active': False})

    def get_customer_discounts(self, customer_id):
        customer_id = str(customer_id)
        return [d for d in self.get_discounts() if str(d.get('customer_id')) == customer_id]

    def get_customer_active_discount(self, customer_id, billing_month=None):
        target = billing_month or month_key(timezone.localdate())
        matches = [
            d for d in self.get_customer_discounts(customer_id)
            if d.get('is_active') and d.get('discount_month') == target
        ]
        matches.sort(key=lambda d: str(d.get('created_at') or ''), reverse=True)
        return matches[0] if matches else None

    # ══════════════════════════════════════════════════════
    #   Meter adjustments (gauge replacement, correction, reset)
    # ══════════════════════════════════════════════════════
    def save_adjustments(self, adjustments):
        stamp = now_iso()
        self._write(self.ADJUSTMENTS_KEY, [
            {
                **adjustment,
                'id':           str(adjustment['id']),
                'customer_id':  str(adjustment['customer_id']),
                'synced':       True,
                'last_updated': stamp,
            }
            for adjustment in adjustments
        ])

    def get_adjustments(self):
        return self._read(self.ADJUSTMENTS_KEY, [])

    def add_adjustment(self, adjustment, skip_sync=False):
        adjustments = self.get_adjustments()
        stamp = now_iso()
        record = {
            'created_at': stamp,
            **adjustment,
            'id':           str(adjustment.get('id') or generate_offline_id()),
            'customer_id':  str(adjustment['customer_id']),
            'synced':       False,
            'last_updated': stamp,
        }
        adjustments.append(record)
        self._write(self.ADJUSTMENTS_KEY, adjustments)
        if not skip_sync:
            self.enqueue('adjustment', record)
        return record['id']

    def get_customer_adjustments(self, customer_id):
        customer_id = str(customer_id)
        return [a for a in self.get_adjustments() if str(a.get('customer_id')) == customer_id]

    def get_latest_adjustment(self, customer_id, before=None):
        """Newest adjustment of one customer, limited to days before ``before`` when given."""
        cutoff = parse_reading_date(before) if before is not None else None
        dated = []
        for adjustment in self.get_customer_adjustments(customer_id):
            when = parse_reading_date(adjustment.get('adjustment_date'))
            if when is None:
                continue
            if cutoff is not None and when.date() >= cutoff.date():
                continue
            dated.append(((when.date(), str(adjustment.get('created_at') or '')), adjustment))
        if not dated:
            return None
        dated.sort(key=lambda pair: pair[0], reverse=True)
        return dated[0][1]

    # ══════════════════════════════════════════════════════
    #   Sync queue
    # ══════════════════════════════════════════════════════
    def enqueue(self, kind, data):
        if kind not in self.QUEUE_TYPES:
            raise ValueError(f'Unknown sync item type: {kind}')
        queue = self.get_sync_queue()
        entry = {
            'id':        generate_offline_id(),
            'type':      kind,
            'data':      dict(data),
            'timestamp': now_iso(),
            'attempts':  0,
        }
        queue.append(entry)
        self._write(self.SYNC_QUEUE_KEY, queue)
        return entry['id']

    def get_sync_queue(self):
        return self._read(self.SYNC_QUEUE_KEY, [])

    def update_sync_item(self, entry):
        queue = self.get_sync_queue()
        for index, item in enumerate(queue):
            if item['id'] == entry['id']:
                queue[index] = entry
                self._write(self.SYNC_QUEUE_KEY, queue)
                return True
        return False

    def remove_sync_item(self, entry_id):
        self._write(self.SYNC_QUEUE_KEY, [i for i in self.get_sync_queue() if i['id'] != entry_id])

    def clear_sync_queue(self):
        self._write(self.SYNC_QUEUE_KEY, [])

    def remap_offline_id(self, kind, old_id, new_id):
        """
        Replaces an offline id with the id assigned by the remote store,
        both in the cached snapshot and in queued items that still refer
        to it.
        """
        old_id, new_id = str(old_id), str(new_id)
        if old_id == new_id:
            return

        snapshot_key = {
            'customer':   self.CUSTOMERS_KEY,
            'reading':    self.READINGS_KEY,
            'discount':   self.DISCOUNTS_KEY,
            'adjustment': self.ADJUSTMENTS_KEY,
        }[kind]
        records = self._read(snapshot_key, [])
        for record in records:
            if str(record.get('id')) == old_id:
                record['id'] = new_id
                record['synced'] = True
        self._write(snapshot_key, records)

        if kind == 'customer':
            for key in (self.READINGS_KEY, self.DISCOUNTS_KEY, self.ADJUSTMENTS_KEY):
                dependents = self._read(key, [])
                for record in dependents:
                    if str(record.get('customer_id')) == old_id:
                        record['customer_id'] = new_id
                self._write(key, dependents)

        queue = self.get_sync_queue()
        for item in queue:
            data = item['data']
            if item['type'] == kind and str(data.get('id')) == old_id:
                data['id'] = new_id
            if kind == 'customer' and str(data.get('customer_id')) == old_id:
                data['customer_id'] = new_id
        self._write(self.SYNC_QUEUE_KEY, queue)

    # ══════════════════════════════════════════════════════
    #   Dead letters (queue items dropped after repeated failures)
    # ══════════════════════════════════════════════════════
    def add_dead_letter(self, entry, error):
        letters = self.get_dead_letters()
        letters.append({**entry, 'error': str(error), 'dropped_at': now_iso()})
        self._write(self.DEAD_LETTER_KEY, letters)

    def get_dead_letters(self):
        return self._read(self.DEAD_LETTER_KEY, [])

    def requeue_dead_letter(self, entry_id):
        letters = self.get_dead_letters()
        for letter in letters:
            if letter['id'] == entry_id:
                queue = self.get_sync_queue()
                queue.append({
                    'id':        letter['id'],
                    'type':      letter['type'],
                    'data':      letter['data'],
                    'timestamp': now_iso(),
                    'attempts':  0,
                })
                self._write(self.SYNC_QUEUE_KEY, queue)
                self._write(self.DEAD_LETTER_KEY, [l for l in letters if l['id'] != entry_id])
                logger.info('Requeued %s item %s from dead letters', letter['type'], entry_id)
                return True
        return False

    def clear_dead_letters(self):
        self._delete(self.DEAD_LETTER_KEY)

    # ══════════════════════════════════════════════════════
    #   Housekeeping
    # ══════════════════════════════════════════════════════
    def get_last_sync_time(self):
        return self._read(self.LAST_SYNC_KEY)

    def set_last_sync_time(self, timestamp):
        self._write(self.LAST_SYNC_KEY, timestamp)

    def get_storage_stats(self):
        return {
            'customers':    len(self.get_customers()),
            'readings':     len(self.get_readings()),
            'discounts':    len(self.get_discounts()),
            'adjustments':  len(self.get_adjustments()),
            'pending_sync': len(self.get_sync_queue()),
            'dead_letters': len(self.get_dead_letters()),
            'last_sync':    self.get_last_sync_time(),
        }

    def clear_customers_cache(self):
        self._delete(self.CUSTOMERS_KEY)
        logger.info('Customers cache cleared for %s', self.namespace)

    def clear_readings_cache(self):
        self._delete(self.READINGS_KEY)
        logger.info('Readings cache cleared for %s', self.namespace)

    def clear_discounts_cache(self):
        self._delete(self.DISCOUNTS_KEY)
        logger.info('Discounts cache cleared for %s', self.namespace)

    def clear_adjustments_cache(self):
        self._delete(self.ADJUSTMENTS_KEY)
        logger.info('Meter adjustments cache cleared for %s', self.namespace)

    def clear_all(self):
        for name in (self.CUSTOMERS_KEY, self.READINGS_KEY, self.DISCOUNTS_KEY, self.ADJUSTMENTS_KEY,
                     self.SYNC_QUEUE_KEY, self.LAST_SYNC_KEY, self.DEAD_LETTER_KEY):
            self._delete(name)
        logger.info('All offline data cleared for %s', self.namespace)
