"""
Remote store: the system of record for customers, readings, discounts
and the financial ledger.

Two backends share one small interface:

* ``DjangoStore`` keeps the collections in this project's own database
  through the ``waterbill`` models.
* ``PostgrestStore`` talks to a hosted PostgREST / Supabase endpoint.

Whether an optional collection exists is an explicit capability
(``WATERBILL_FEATURES``), checked with ``supports()`` before any call.
"""
import json
import logging
from abc import ABC, abstractmethod

import requests
from django.apps import apps
from django.conf import settings
from django.core.serializers.json import DjangoJSONEncoder
from django.db import DatabaseError, IntegrityError, transaction

logger = logging.getLogger(__name__)

CUSTOMERS    = 'customers'
READINGS     = 'meter_readings'
DISCOUNTS    = 'customer_discounts'
ADJUSTMENTS  = 'meter_adjustments'
TRANSACTIONS = 'financial_transactions'
CATEGORIES   = 'transaction_categories'


class RemoteStoreError(Exception):
    def __init__(self, code, message, status=None):
        super().__init__(message)
        self.code    = code
        self.message = message
        self.status  = status

    def __str__(self):
        return f'[{self.code}] {self.message}'


class TableNotProvisioned(RemoteStoreError):
    """The collection does not exist on the remote store (feature not set up)."""

    def __init__(self, table, message=None, status=None):
        super().__init__('not_provisioned', message or f'Table {table} is not provisioned', status)
        self.table = table


class RemoteStore(ABC):
    def __init__(self, features=None):
        self.features = dict(features or {})

    def supports(self, table):
        return self.features.get(table, True)

    def require(self, table):
        if not self.supports(table):
            raise TableNotProvisioned(table)

    def ping(self):
        self.fetch(CUSTOMERS, limit=1)

    @abstractmethod
    def fetch(self, table, filters=None, gte=None, order=None, ascending=True, limit=None):
        """Rows of `table` as plain dicts."""

    @abstractmethod
    def upsert(self, table, record):
        """Inserts or updates one row and returns it as stored."""


# ══════════════════════════════════════════════════════════
#   BACKEND 1 — PostgrestStore  (hosted Supabase / PostgREST)
# ══════════════════════════════════════════════════════════
class PostgrestStore(RemoteStore):
    # undefined_table (Postgres) and schema-cache miss (PostgREST)
    NOT_PROVISIONED_CODES = ('42P01', 'PGRST205')

    def __init__(self, url, key, features=None, timeout=15, session=None):
        super().__init__(features)
        if not url:
            raise ValueError('A PostgREST URL is required (set SUPABASE_URL).')
        self.base_url = url.rstrip('/') + '/rest/v1'
        self.timeout  = timeout
        self.session  = session or requests.Session()
        self.session.headers.update({
            'apikey':        key,
            'Authorization': f'Bearer {key}',
            'Content-Type':  'application/json',
            'Accept':        'application/json',
        })

    def _error_from(self, response, table):
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        code    = body.get('code') or str(response.status_code)
        message = body.get('message') or response.text or response.reason
        if code in self.NOT_PROVISIONED_CODES:
            return TableNotProvisioned(table, message, response.status_code)
        return RemoteStoreError(code, message, response.status_code)

    def _request(self, method, table, **kwargs):
        self.require(table)
        try:
            response = self.session.request(
                method, f'{self.base_url}/{table}', timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise RemoteStoreError('network', str(e)) from e

        if not response.ok:
            raise self._error_from(response, table)
        if not response.content:
            return []
        return response.json()

    def fetch(self, table, filters=None, gte=None, order=None, ascending=True, limit=None):
        params = [('select', '*')]
        for column, value in (filters or {}).items():
            if value is not None:
                params.append((column, f'eq.{value}'))
        for column, value in (gte or {}).items():
            params.append((column, f'gte.{value}'))
        if order:
            params.append(('order', f'{order}.{"asc" if ascending else "desc"}'))
        if limit:
            params.append(('limit', str(limit)))
        return self._request('GET', table, params=params)

    def upsert(self, table, record):
        rows = self._request(
            'POST', table,
            data=json.dumps([record], cls=DjangoJSONEncoder),
            headers={'Prefer': 'resolution=merge-duplicates,return=representation'},
        )
        return rows[0] if rows else dict(record)


# ══════════════════════════════════════════════════════════
#   BACKEND 2 — DjangoStore  (this project's own database)
# ══════════════════════════════════════════════════════════
class DjangoStore(RemoteStore):
    MODELS = {
        CUSTOMERS:    'Customer',
        READINGS:     'MeterReading',
        DISCOUNTS:    'CustomerDiscount',
        ADJUSTMENTS:  'MeterAdjustment',
        TRANSACTIONS: 'FinancialTransaction',
        CATEGORIES:   'TransactionCategory',
    }

    def _model(self, table):
        self.require(table)
        try:
            return apps.get_model('waterbill', self.MODELS[table])
        except KeyError:
            raise TableNotProvisioned(table) from None

    def fetch(self, table, filters=None, gte=None, order=None, ascending=True, limit=None):
        model = self._model(table)
        qs    = model.objects.all()
        if filters:
            qs = qs.filter(**{k: v for k, v in filters.items() if v is not None})
        if gte:
            qs = qs.filter(**{f'{column}__gte': value for column, value in gte.items()})
        if order:
            qs = qs.order_by(order if ascending else f'-{order}')
        if limit:
            qs = qs[:limit]
        try:
            return [obj.as_record() for obj in qs]
        except DatabaseError as e:
            raise RemoteStoreError('database', str(e)) from e

    def upsert(self, table, record):
        model = self._model(table)
        try:
            fields = model.fields_from_record(record)
        except (KeyError, ValueError, TypeError) as e:
            raise RemoteStoreError('invalid_record', f'Cannot store {table} record: {e}') from e
        pk = str(record.get('id') or '')
        try:
            with transaction.atomic():
                if pk.isdigit():
                    obj, _ = model.objects.update_or_create(pk=int(pk), defaults=fields)
                else:
                    obj = model.objects.create(**fields)
        except IntegrityError as e:
            raise RemoteStoreError('integrity', str(e)) from e
        except DatabaseError as e:
            raise RemoteStoreError('database', str(e)) from e
        return obj.as_record()


def get_remote_store():
    config   = getattr(settings, 'WATERBILL_REMOTE', {}) or {}
    features = getattr(settings, 'WATERBILL_FEATURES', {}) or {}
    backend  = config.get('BACKEND', 'django')

    if backend == 'postgrest':
        return PostgrestStore(
            url      = config.get('URL'),
            key      = config.get('KEY', ''),
            features = features,
            timeout  = config.get('TIMEOUT', 15),
        )
    if backend == 'django':
        return DjangoStore(features)
    raise ValueError(f'Unknown remote backend: {backend}')
