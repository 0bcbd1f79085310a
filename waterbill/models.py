from decimal import Decimal

from django.db import models
from django.utils import timezone

from .utils import parse_reading_date, to_decimal


def _record_id(value):
    return None if value is None else str(value)


# ═══════════════════════════════════════════════════════════
#   MODEL 1 — Customer  (one household meter)
# ═══════════════════════════════════════════════════════════
class Customer(models.Model):
    name        = models.CharField(max_length=150)
    rt          = models.CharField(max_length=20, blank=True,
                      help_text='Neighborhood unit, e.g. "RT 01"')
    phone       = models.CharField(max_length=20, blank=True)
    created_at  = models.DateTimeField(auto_now_add=True)
    updated_at  = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'customers'
        ordering = ['name']

    def __str__(self):
        return f'{self.name} ({self.rt or "no RT"})'

    def as_record(self):
        return {
            'id':    _record_id(self.pk),
            'name':  self.name,
            'rt':    self.rt,
            'phone': self.phone,
        }

    @classmethod
    def fields_from_record(cls, record):
        return {
            'name':  record.get('name') or '',
            'rt':    record.get('rt') or '',
            'phone': record.get('phone') or '',
        }


# ═══════════════════════════════════════════════════════════
#   MODEL 2 — MeterReading  (cumulative meter value)
#   `date` is when the reading was submitted, not when the meter
#   was physically read.
# ═══════════════════════════════════════════════════════════
class MeterReading(models.Model):
    customer    = models.ForeignKey(Customer, on_delete=models.CASCADE,
                      related_name='meter_readings')
    reading     = models.DecimalField(max_digits=12, decimal_places=2)
    date        = models.DateTimeField(default=timezone.now)
    created_at  = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'meter_readings'
        ordering = ['-date']

    def __str__(self):
        return f'{self.customer_id} | {self.date:%Y-%m-%d} | {self.reading} m³'

    def as_record(self):
        return {
            'id':          _record_id(self.pk),
            'customer_id': _record_id(self.customer_id),
            'reading':     self.reading,
            'date':        self.date.isoformat() if self.date else None,
        }

    @classmethod
    def fields_from_record(cls, record):
        when = parse_reading_date(record.get('date')) or timezone.now()
        if timezone.is_naive(when):
            when = timezone.make_aware(when)
        return {
            'customer_id': int(record['customer_id']),
            'reading':     to_decimal(record.get('reading')),
            'date':        when,
        }


# ═══════════════════════════════════════════════════════════
#   MODEL 3 — CustomerDiscount  (one month, percentage OR amount)
#   Never deleted; switched off with is_active = False.
# ═══════════════════════════════════════════════════════════
class CustomerDiscount(models.Model):
    customer            = models.ForeignKey(Customer, on_delete=models.CASCADE,
                              related_name='discounts')
    discount_percentage = models.DecimalField(max_digits=5, decimal_places=2,
                              default=Decimal('0'))
    discount_amount     = models.DecimalField(max_digits=12, decimal_places=2,
                              default=Decimal('0'))
    reason              = models.TextField()
    discount_month      = models.CharField(max_length=7, help_text='YYYY-MM')
    is_active           = models.BooleanField(default=True)
    created_by          = models.CharField(max_length=150, blank=True)
    created_at          = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'customer_discounts'
        ordering = ['-created_at']

    def __str__(self):
        value = (f'{self.discount_percentage}%' if self.discount_percentage
                 else f'Rp {self.discount_amount}')
        return f'{self.customer_id} | {self.discount_month} | {value}'

    def as_record(self):
        return {
            'id':                  _record_id(self.pk),
            'customer_id':         _record_id(self.customer_id),
            'discount_percentage': self.discount_percentage,
            'discount_amount':     self.discount_amount,
            'reason':              self.reason,
            'discount_month':      self.discount_month,
            'is_active':           self.is_active,
            'created_by':          self.created_by,
            'created_at':          self.created_at.isoformat() if self.created_at else None,
        }

    @classmethod
    def fields_from_record(cls, record):
        return {
            'customer_id':         int(record['customer_id']),
            'discount_percentage': to_decimal(record.get('discount_percentage')),
            'discount_amount':     to_decimal(record.get('discount_amount')),
            'reason':              record.get('reason') or '',
            'discount_month':      record.get('discount_month') or '',
            'is_active':           record.get('is_active') is not False,
            'created_by':          record.get('created_by') or 'admin',
        }


# ═══════════════════════════════════════════════════════════
#   MODEL 4 — TransactionCategory  (income / expense heading)
#   RT collections are booked under "Pemasukan <RT>".
# ═══════════════════════════════════════════════════════════
class TransactionCategory(models.Model):
    TYPE_CHOICES = [
        ('income',  'Income'),
        ('expense', 'Expense'),
    ]

    name        = models.CharField(max_length=100)
    type        = models.CharField(max_length=10, choices=TYPE_CHOICES)
    description = models.TextField(blank=True)
    is_active   = models.BooleanField(default=True)
    created_at  = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'transaction_categories'
        ordering = ['type', 'name']
        unique_together = ['name', 'type']
        verbose_name_plural = 'Transaction categories'

    def __str__(self):
        return f'{self.name} ({self.get_type_display()})'

    def as_record(self):
        return {
            'id':          _record_id(self.pk),
            'name':        self.name,
            'type':        self.type,
            'description': self.description,
            'is_active':   self.is_active,
        }

    @classmethod
    def fields_from_record(cls, record):
        return {
            'name':        record.get('name') or '',
            'type':        record.get('type') or 'income',
            'description': record.get('description') or '',
            'is_active':   record.get('is_active') is not False,
        }


# ═══════════════════════════════════════════════════════════
#   MODEL 5 — FinancialTransaction  (cash book entry)
# ═══════════════════════════════════════════════════════════
class FinancialTransaction(models.Model):
    type        = models.CharField(max_length=10, choices=TransactionCategory.TYPE_CHOICES)
    amount      = models.DecimalField(max_digits=14, decimal_places=2)
    date        = models.DateField()
    category    = models.ForeignKey(TransactionCategory, on_delete=models.PROTECT,
                      related_name='transactions')
    description = models.TextField(blank=True)
    created_by  = models.CharField(max_length=150, blank=True)
    updated_by  = models.CharField(max_length=150, blank=True)
    created_at  = models.DateTimeField(auto_now_add=True)
    updated_at  = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'financial_transactions'
        ordering = ['-date', '-created_at']

    def __str__(self):
        return f'{self.date} | {self.get_type_display()} | Rp {self.amount}'

    def as_record(self):
        return {
            'id':          _record_id(self.pk),
            'type':        self.type,
            'amount':      self.amount,
            'date':        self.date.isoformat() if self.date else None,
            'category_id': _record_id(self.category_id),
            'description': self.description,
            'created_by':  self.created_by,
            'updated_by':  self.updated_by,
        }

    @classmethod
    def fields_from_record(cls, record):
        when = parse_reading_date(record.get('date'))
        return {
            'type':        record.get('type') or 'income',
            'amount':      to_decimal(record.get('amount')),
            'date':        when.date() if when else timezone.localdate(),
            'category_id': int(record['category_id']),
            'description': record.get('description') or '',
            'created_by':  record.get('created_by') or '',
            'updated_by':  record.get('updated_by') or '',
        }


# ═══════════════════════════════════════════════════════════
#   MODEL 6 — MeterAdjustment  (gauge replacement / correction)
#   The latest adjustment's new_reading becomes the starting value
#   for the next reading after adjustment_date.
# ═══════════════════════════════════════════════════════════
class MeterAdjustment(models.Model):
    GAUGE_REPLACEMENT = 'gauge_replacement'
    MANUAL_CORRECTION = 'manual_correction'
    METER_RESET       = 'meter_reset'
    TYPE_CHOICES = [
        (GAUGE_REPLACEMENT, 'Gauge replacement'),
        (MANUAL_CORRECTION, 'Manual correction'),
        (METER_RESET,       'Meter reset'),
    ]

    customer        = models.ForeignKey(Customer, on_delete=models.CASCADE,
                          related_name='meter_adjustments')
    old_reading     = models.DecimalField(max_digits=12, decimal_places=2,
                          help_text='Last value on the old gauge')
    new_reading     = models.DecimalField(max_digits=12, decimal_places=2,
                          help_text='Starting value after the adjustment')
    adjustment_type = models.CharField(max_length=30, choices=TYPE_CHOICES, default=GAUGE_REPLACEMENT)
    reason          = models.TextField()
    adjustment_date = models.DateField(default=timezone.localdate)
    notes           = models.TextField(blank=True)
    created_by      = models.CharField(max_length=150, blank=True)
    created_at      = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'meter_adjustments'
        ordering = ['-adjustment_date', '-created_at']

    def __str__(self):
        return (f'{self.customer_id} | {self.adjustment_date} | {self.get_adjustment_type_display()} '
                f'{self.old_reading} → {self.new_reading}')

    def as_record(self):
        return {
            'id':              _record_id(self.pk),
            'customer_id':     _record_id(self.customer_id),
            'old_reading':     self.old_reading,
            'new_reading':     self.new_reading,
            'adjustment_type': self.adjustment_type,
            'reason':          self.reason,
            'adjustment_date': self.adjustment_date.isoformat() if self.adjustment_date else None,
            'notes':           self.notes,
            'created_by':      self.created_by,
            'created_at':      self.created_at.isoformat() if self.created_at else None,
        }

    @classmethod
    def fields_from_record(cls, record):
        when = parse_reading_date(record.get('adjustment_date'))
        return {
            'customer_id':     int(record['customer_id']),
            'old_reading':     to_decimal(record.get('old_reading')),
            'new_reading':     to_decimal(record.get('new_reading')),
            'adjustment_type': record.get('adjustment_type') or cls.GAUGE_REPLACEMENT,
            'reason':          record.get('reason') or '',
            'adjustment_date': when.date() if when else timezone.localdate(),
            'notes':           record.get('notes') or '',
            'created_by':      record.get('created_by') or 'admin',
        }
