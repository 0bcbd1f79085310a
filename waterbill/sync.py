"""
Sync manager: moves data between a field session's local cache store and
the remote store.

A sync cycle downloads fresh snapshots first, then uploads the queued
offline writes one at a time in dependency order (customers before the
records that reference them).  A queue item that keeps failing is
dropped after ``max_attempts`` cycles and parked in the cache store's
dead-letter list.
"""
import logging

from dateutil.relativedelta import relativedelta
from django.utils import timezone

from .remote import ADJUSTMENTS, CUSTOMERS, DISCOUNTS, READINGS, RemoteStoreError, TableNotProvisioned
from .results import SyncResult
from .utils import is_offline_id, to_decimal

logger = logging.getLogger(__name__)

IDLE        = 'idle'
DOWNLOADING = 'downloading'
UPLOADING   = 'uploading'
OFFLINE     = 'offline'

UPLOAD_ORDER = {'customer': 0, 'reading': 1, 'discount': 2, 'adjustment': 3}

# item types whose remote table may be missing; their items are dropped, not retried
OPTIONAL_TYPES = ('discount', 'adjustment')


class SyncManager:
    def __init__(self, store, remote, online=True, max_attempts=3,
                 reading_window_months=3, clock=None):
        self.store                 = store
        self.remote                = remote
        self.max_attempts          = max_attempts
        self.reading_window_months = reading_window_months
        self.clock                 = clock or timezone.now
        self.state                 = IDLE if online else OFFLINE
        self._callbacks            = []

    @property
    def is_online(self):
        return self.state != OFFLINE

    @property
    def in_progress(self):
        return self.state in (DOWNLOADING, UPLOADING)

    def on_sync_complete(self, callback):
        self._callbacks.append(callback)

    def remove_sync_callback(self, callback):
        self._callbacks = [cb for cb in self._callbacks if cb != callback]

    def set_online(self, online):
        """
        Records a connectivity change.  Coming back online from OFFLINE
        runs a sync right away and returns its result.
        """
        if not online:
            self.state = OFFLINE
            logger.info('%s went offline', self.store.namespace)
            return None

        if self.state == OFFLINE:
            self.state = IDLE
            logger.info('%s is back online, syncing', self.store.namespace)
            return self.sync()
        return None

    # ══════════════════════════════════════════════════════
    #   Full cycle
    # ══════════════════════════════════════════════════════
    def sync(self):
        if self.in_progress:
            return SyncResult(success=False, errors=['Sync already in progress'])
        if self.state == OFFLINE:
            return SyncResult(success=False, errors=['Device is offline'])

        result = SyncResult()
        try:
            self.state = DOWNLOADING
            self._download()

            self.state = UPLOADING
            self._upload(result)

            self.store.set_last_sync_time(self.clock().isoformat())
            result.success = result.failed == 0
        finally:
            self.state = IDLE

        logger.info('Sync finished for %s: %d synced, %d failed, %d skipped',
                    self.store.namespace, result.synced, result.failed, result.skipped)
        for callback in list(self._callbacks):
            callback(result)
        return result

    def refresh_data(self):
        """Re-downloads the snapshots without uploading anything."""
        if self.state == OFFLINE:
            raise RuntimeError('Cannot refresh data while offline')
        if self.in_progress:
            raise RuntimeError('Sync already in progress')
        try:
            self.state = DOWNLOADING
            return self._download()
        finally:
            self.state = IDLE

    def check_connection(self):
        try:
            self.remote.ping()
        except RemoteStoreError as e:
            return False, str(e)
        return True, None

    def get_status(self):
        return {
            'state':            self.state,
            'is_online':        self.is_online,
            'sync_in_progress': self.in_progress,
            'pending_items':    len(self.store.get_sync_queue()),
            'dead_letters':     len(self.store.get_dead_letters()),
            'last_sync':        self.store.get_last_sync_time(),
        }

    # ══════════════════════════════════════════════════════
    #   Download phase
    #   Each snapshot is fetched and saved on its own; a failing
    #   table leaves its previous snapshot in place.
    # ══════════════════════════════════════════════════════
    def _download(self):
        since = self.clock() - relativedelta(months=self.reading_window_months)
        downloaded = []

        if self._download_table(CUSTOMERS, self.store.save_customers, order='name'):
            downloaded.append(CUSTOMERS)

        if self._download_table(READINGS, self.store.save_readings,
                                gte={'date': since.isoformat()}, order='date', ascending=False):
            downloaded.append(READINGS)

        for table, save in ((DISCOUNTS, self.store.save_discounts), (ADJUSTMENTS, self.store.save_adjustments)):
            if not self.remote.supports(table):
                logger.info('%s are not enabled on the remote store, skipping download', table)
            elif self._download_table(table, save, order='created_at', ascending=False):
                downloaded.append(table)

        return downloaded

    def _download_table(self, table, save, **query):
        try:
            rows = self.remote.fetch(table, **query)
        except TableNotProvisioned:
            logger.warning('Table %s is not provisioned, keeping the cached snapshot', table)
            return False
        except RemoteStoreError as e:
            logger.warning('Could not download %s: %s', table, e)
            return False

        if not rows:
            logger.debug('No %s returned by the remote store', table)
            return False
        try:
            save(rows)
        except (KeyError, TypeError) as e:
            logger.error('Malformed %s rows from the remote store: %s', table, e)
            return False
        logger.debug('Downloaded %d %s', len(rows), table)
        return True

    # ══════════════════════════════════════════════════════
    #   Upload phase
    # ══════════════════════════════════════════════════════
    def _upload(self, result):
        queue = sorted(
            self.store.get_sync_queue(),
            key=lambda item: (UPLOAD_ORDER.get(item['type'], len(UPLOAD_ORDER)), item['timestamp']),
        )
        logger.info('Uploading %d queued items for %s', len(queue), self.store.namespace)

        for entry_id in [item['id'] for item in queue]:
            # re-read: an earlier upload may have remapped ids in this entry
            entry = self._queued(entry_id)
            if entry is None:
                continue

            try:
                saved = self._upload_item(entry)
            except TableNotProvisioned as e:
                if entry['type'] not in OPTIONAL_TYPES:
                    self._record_failure(entry, e, result)
                    continue
                logger.warning('Dropping %s %s: %s', entry['type'], entry['data'].get('id'), e)
                self.store.remove_sync_item(entry_id)
                result.skipped += 1
                continue
            except RemoteStoreError as e:
                self._record_failure(entry, e, result)
                continue

            self.store.remove_sync_item(entry_id)
            if saved is None:
                result.skipped += 1
                continue

            local_id = entry['data'].get('id')
            if is_offline_id(local_id) and saved.get('id'):
                self.store.remap_offline_id(entry['type'], local_id, saved['id'])
            result.synced += 1

    def _queued(self, entry_id):
        for item in self.store.get_sync_queue():
            if item['id'] == entry_id:
                return item
        return None

    def _record_failure(self, entry, exc, result):
        kind     = entry['type']
        attempts = entry.get('attempts', 0) + 1
        entry    = {**entry, 'attempts': attempts}

        result.failed += 1
        result.errors.append(f'Failed to sync {kind}: {getattr(exc, "message", exc)}')

        if attempts >= self.max_attempts:
            self.store.remove_sync_item(entry['id'])
            self.store.add_dead_letter(entry, exc)
            result.errors.append(f'Removed {kind} after {self.max_attempts} failed attempts')
            logger.error('Removed %s %s after %d failed attempts: %s',
                         kind, entry['id'], attempts, exc)
        else:
            self.store.update_sync_item(entry)
            logger.warning('Failed to sync %s %s (attempt %d): %s', kind, entry['id'], attempts, exc)

    def _upload_item(self, entry):
        kind = entry['type']
        data = entry['data']
        if kind == 'customer':
            return self.remote.upsert(CUSTOMERS, self._with_id(data, {
                'name':  data.get('name'),
                'rt':    data.get('rt'),
                'phone': data.get('phone'),
            }))
        if kind == 'reading':
            self._require_synced_customer(data)
            return self.remote.upsert(READINGS, self._with_id(data, {
                'customer_id': data['customer_id'],
                'reading':     to_decimal(data.get('reading')),
                'date':        data.get('date'),
            }))
        if kind == 'discount':
            return self._upload_discount(data)
        if kind == 'adjustment':
            self._require_synced_customer(data)
            return self.remote.upsert(ADJUSTMENTS, self._with_id(data, {
                'customer_id':     data['customer_id'],
                'old_reading':     to_decimal(data.get('old_reading')),
                'new_reading':     to_decimal(data.get('new_reading')),
                'adjustment_type': data.get('adjustment_type'),
                'reason':          data.get('reason'),
                'adjustment_date': data.get('adjustment_date'),
                'notes':           data.get('notes') or '',
                'created_by':      data.get('created_by') or 'admin',
            }))
        raise RemoteStoreError('unknown_type', f'Unknown sync item type: {kind}')

    def _upload_discount(self, data):
        percentage = to_decimal(data.get('discount_percentage'))
        amount     = to_decimal(data.get('discount_amount'))
        missing = [name for name in ('customer_id', 'discount_month', 'reason') if not data.get(name)]
        if percentage <= 0 and amount <= 0:
            missing.append('discount value')
        if missing:
            logger.warning('Skipping invalid discount %s, missing %s', data.get('id'), ', '.join(missing))
            return None

        self._require_synced_customer(data)
        return self.remote.upsert(DISCOUNTS, self._with_id(data, {
            'customer_id':         data['customer_id'],
            'discount_percentage': percentage,
            'discount_amount':     amount,
            'reason':              data['reason'],
            'discount_month':      data['discount_month'],
            'created_by':          data.get('created_by') or 'admin',
            'created_at':          data.get('created_at'),
            'is_active':           data.get('is_active') is not False,
        }))

    @staticmethod
    def _with_id(data, record):
        if not is_offline_id(data.get('id')):
            record['id'] = data['id']
        return record

    @staticmethod
    def _require_synced_customer(data):
        if is_offline_id(data.get('customer_id')):
            raise RemoteStoreError(
                'unresolved_customer',
                f'Customer {data.get("customer_id")} has not been synced yet')
