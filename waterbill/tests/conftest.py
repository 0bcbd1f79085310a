import itertools
import uuid

import pytest

from waterbill.cache_store import LocalCacheStore
from waterbill.remote import RemoteStore, RemoteStoreError, TableNotProvisioned


class FakeRemote(RemoteStore):
    """
    In-memory remote store.  `fail` maps a table to the number of upserts
    that should raise before it starts accepting writes again.
    """

    def __init__(self, features=None, missing=()):
        super().__init__(features)
        self.tables  = {}
        self.missing = set(missing)
        self.fail    = {}
        self.calls   = []
        self.offline = False
        self._ids    = itertools.count(100)

    def _check(self, table):
        self.require(table)
        if self.offline:
            raise RemoteStoreError('network', 'connection refused')
        if table in self.missing:
            raise TableNotProvisioned(table)

    def fetch(self, table, filters=None, gte=None, order=None, ascending=True, limit=None):
        self._check(table)
        self.calls.append(('fetch', table, gte, order, ascending))
        rows = [dict(row) for row in self.tables.get(table, [])]
        return rows[:limit] if limit else rows

    def upsert(self, table, record):
        self._check(table)
        self.calls.append(('upsert', table, dict(record)))
        if self.fail.get(table, 0) > 0:
            self.fail[table] -= 1
            raise RemoteStoreError('23503', f'insert into {table} rejected', 409)

        saved = dict(record)
        saved['id'] = str(record.get('id') or next(self._ids))
        rows = [row for row in self.tables.setdefault(table, []) if row['id'] != saved['id']]
        rows.append(saved)
        self.tables[table] = rows
        return saved

    def upserts(self, table=None):
        return [call[2] for call in self.calls if call[0] == 'upsert' and table in (None, call[1])]


@pytest.fixture
def store():
    store = LocalCacheStore(namespace=f'test-{uuid.uuid4().hex}')
    yield store
    store.clear_all()


@pytest.fixture
def remote():
    return FakeRemote()


def add_history(store, customer_id, values, year=2024, start_month=1, day=15):
    """Adds one synced reading per month, oldest first."""
    ids = []
    for offset, value in enumerate(values):
        month = start_month + offset
        y, m  = year + (month - 1) // 12, (month - 1) % 12 + 1
        ids.append(store.add_reading(
            {'customer_id': customer_id, 'reading': value, 'date': f'{y:04d}-{m:02d}-{day:02d}'},
            skip_sync=True,
        ))
    return ids
