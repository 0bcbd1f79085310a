from django import forms
from django.utils import timezone

from .models import MeterAdjustment, TransactionCategory
from .utils import month_key
from .validation import (
    MAX_READING, MIN_READING, validate_customer, validate_date, validate_discount,
    validate_meter_adjustment, validate_meter_reading, validate_transaction,
)


class StoreForm(forms.Form):
    """
    Form checked against a field session's cache store.  Blocking
    results become form errors; warnings are kept on ``self.warnings``
    for the caller to show.
    """

    def __init__(self, *args, store=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.store    = store
        self.warnings = []

    def apply_results(self, results):
        for result in results:
            if not result.is_valid:
                self.add_error(None, forms.ValidationError(result.message, code=result.code))
            elif result.message:
                self.warnings.append(result.message)


# ──────────────────────────────────────────────────────────
#   FORM 1 — CustomerForm
# ──────────────────────────────────────────────────────────
class CustomerForm(StoreForm):
    name  = forms.CharField(max_length=150)
    rt    = forms.CharField(max_length=20, required=False, label='RT',
                widget=forms.TextInput(attrs={'placeholder': 'RT 01'}))
    phone = forms.CharField(max_length=20, required=False)

    def __init__(self, *args, customer_id=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.customer_id = customer_id

    def clean(self):
        cleaned = super().clean()
        if not self.errors:
            self.apply_results(validate_customer(self.store, {**cleaned, 'id': self.customer_id}))
        return cleaned


# ──────────────────────────────────────────────────────────
#   FORM 2 — MeterReadingForm
# ──────────────────────────────────────────────────────────
class MeterReadingForm(StoreForm):
    customer_id = forms.CharField()
    reading     = forms.DecimalField(max_digits=12, decimal_places=2,
                      min_value=MIN_READING, max_value=MAX_READING, label='Meter reading (m³)')
    date        = forms.DateField(widget=forms.DateInput(attrs={'type': 'date'}))

    def __init__(self, *args, exclude_reading_id=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.exclude_reading_id = exclude_reading_id

    def clean(self):
        cleaned = super().clean()
        customer_id = cleaned.get('customer_id')
        reading     = cleaned.get('reading')
        when        = cleaned.get('date')
        if customer_id is None or reading is None or when is None:
            return cleaned

        if self.store.get_customer(customer_id) is None:
            raise forms.ValidationError('Unknown customer.', code='CUSTOMER_NOT_FOUND')

        self.apply_results([validate_date(when, 'Reading date')])
        validation = validate_meter_reading(
            self.store, customer_id, reading, when.isoformat(), self.exclude_reading_id)
        self.apply_results(validation.results)
        return cleaned


# ──────────────────────────────────────────────────────────
#   FORM 3 — DiscountForm  (percentage OR fixed amount)
# ──────────────────────────────────────────────────────────
class DiscountForm(StoreForm):
    customer_id         = forms.CharField()
    discount_percentage = forms.DecimalField(max_digits=5, decimal_places=2, required=False,
                              min_value=0, label='Discount (%)')
    discount_amount     = forms.DecimalField(max_digits=12, decimal_places=2, required=False,
                              min_value=0, label='Discount (Rp)')
    reason              = forms.CharField(widget=forms.Textarea(attrs={'rows': 2}))
    discount_month      = forms.CharField(max_length=7, label='Month (YYYY-MM)')

    def __init__(self, *args, discount_id=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.discount_id = discount_id
        if not self.is_bound and 'discount_month' not in self.initial:
            self.initial['discount_month'] = month_key(timezone.localdate())

    def clean(self):
        cleaned = super().clean()
        if 'customer_id' in self.errors:
            return cleaned
        record = {
            'id':                  self.discount_id,
            'customer_id':         cleaned.get('customer_id'),
            'discount_percentage': cleaned.get('discount_percentage') or 0,
            'discount_amount':     cleaned.get('discount_amount') or 0,
            'reason':              cleaned.get('reason') or '',
            'discount_month':      cleaned.get('discount_month') or '',
        }
        self.apply_results(validate_discount(self.store, record))
        cleaned.update(record)
        return cleaned


# ──────────────────────────────────────────────────────────
#   FORM 4 — TransactionForm  (cash book entry)
# ──────────────────────────────────────────────────────────
class TransactionForm(forms.Form):
    type        = forms.ChoiceField(choices=TransactionCategory.TYPE_CHOICES)
    amount      = forms.DecimalField(max_digits=14, decimal_places=2, label='Amount (Rp)')
    date        = forms.DateField(widget=forms.DateInput(attrs={'type': 'date'}))
    category    = forms.ModelChoiceField(queryset=TransactionCategory.objects.filter(is_active=True))
    description = forms.CharField(required=False, widget=forms.Textarea(attrs={'rows': 2}))

    def clean(self):
        cleaned = super().clean()
        results = validate_transaction({
            'type':   cleaned.get('type'),
            'amount': cleaned.get('amount'),
            'date':   cleaned.get('date'),
        })
        for result in results:
            if not result.is_valid:
                self.add_error(None, forms.ValidationError(result.message, code=result.code))

        category = cleaned.get('category')
        if category and cleaned.get('type') and category.type != cleaned['type']:
            self.add_error('category', 'Category does not match the transaction type.')
        return cleaned

    def as_data(self):
        cleaned = self.cleaned_data
        return {
            'type':        cleaned['type'],
            'amount':      cleaned['amount'],
            'date':        cleaned['date'],
            'category_id': cleaned['category'].pk,
            'description': cleaned.get('description') or '',
        }


# ──────────────────────────────────────────────────────────
#   FORM 5 — BillingPeriodForm  (monthly report / RT sheets)
# ──────────────────────────────────────────────────────────
class BillingPeriodForm(forms.Form):
    year  = forms.IntegerField(min_value=2000, max_value=2100)
    month = forms.IntegerField(min_value=1, max_value=12)
    rt    = forms.CharField(max_length=20, required=False, label='RT (optional)')


class RTPaymentForm(forms.Form):
    rt            = forms.CharField(max_length=20, label='RT')
    amount        = forms.DecimalField(max_digits=14, decimal_places=2, min_value=1, label='Amount received (Rp)')
    billing_month = forms.RegexField(regex=r'^\d{4}-(0[1-9]|1[0-2])$', label='Billing month (YYYY-MM)')
    date          = forms.DateField(required=False, widget=forms.DateInput(attrs={'type': 'date'}))


# ──────────────────────────────────────────────────────────
#   FORM 6 — MeterAdjustmentForm  (gauge replacement / reset)
# ──────────────────────────────────────────────────────────
class MeterAdjustmentForm(StoreForm):
    customer_id     = forms.CharField()
    old_reading     = forms.DecimalField(max_digits=12, decimal_places=2, min_value=MIN_READING,
                          max_value=MAX_READING, label='Last reading on the old gauge (m³)')
    new_reading     = forms.DecimalField(max_digits=12, decimal_places=2, min_value=MIN_READING,
                          max_value=MAX_READING, label='Starting reading (m³)')
    adjustment_type = forms.ChoiceField(choices=MeterAdjustment.TYPE_CHOICES,
                          initial=MeterAdjustment.GAUGE_REPLACEMENT)
    reason          = forms.CharField(widget=forms.Textarea(attrs={'rows': 2}))
    adjustment_date = forms.DateField(widget=forms.DateInput(attrs={'type': 'date'}))
    notes           = forms.CharField(required=False, widget=forms.Textarea(attrs={'rows': 2}))

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        if not self.is_bound and 'adjustment_date' not in self.initial:
            self.initial['adjustment_date'] = timezone.localdate()

    def clean(self):
        cleaned = super().clean()
        if self.errors:
            return cleaned
        if self.store.get_customer(cleaned['customer_id']) is None:
            raise forms.ValidationError('Unknown customer.', code='CUSTOMER_NOT_FOUND')
        self.apply_results(validate_meter_adjustment(cleaned))
        return cleaned
