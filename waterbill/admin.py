from django.contrib import admin
from .models import (
    Customer, MeterReading, CustomerDiscount, MeterAdjustment,
    TransactionCategory, FinancialTransaction,
)

# ── Customize admin site headers ─────────────────────────────
admin.site.site_header  = 'RT Water Billing'
admin.site.site_title   = 'Water Billing Admin'
admin.site.index_title  = 'Administration'


class MeterReadingInline(admin.TabularInline):
    model   = MeterReading
    extra   = 0
    fields  = ['date', 'reading']
    ordering = ['-date']


@admin.register(Customer)
class CustomerAdmin(admin.ModelAdmin):
    list_display    = ['name', 'rt', 'phone', 'created_at']
    list_filter     = ['rt']
    search_fields   = ['name', 'phone']
    ordering        = ['rt', 'name']
    readonly_fields = ['created_at', 'updated_at']
    inlines         = [MeterReadingInline]


@admin.register(MeterReading)
class MeterReadingAdmin(admin.ModelAdmin):
    list_display  = ['customer', 'date', 'reading', 'created_at']
    list_filter   = ['date', 'customer__rt']
    search_fields = ['customer__name']
    date_hierarchy = 'date'
    ordering      = ['-date']


@admin.register(CustomerDiscount)
class CustomerDiscountAdmin(admin.ModelAdmin):
    list_display  = ['customer', 'discount_month', 'discount_percentage',
                      'discount_amount', 'is_active', 'created_by']
    list_filter   = ['is_active', 'discount_month']
    search_fields = ['customer__name', 'reason']
    actions       = ['deactivate']

    @admin.action(description='Deactivate selected discounts')
    def deactivate(self, request, queryset):
        updated = queryset.update(is_active=False)
        self.message_user(request, f'{updated} discount(s) deactivated.')

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(MeterAdjustment)
class MeterAdjustmentAdmin(admin.ModelAdmin):
    list_display    = ['customer', 'adjustment_date', 'adjustment_type',
                       'old_reading', 'new_reading', 'created_by']
    list_filter     = ['adjustment_type', 'adjustment_date']
    search_fields   = ['customer__name', 'reason', 'notes']
    date_hierarchy  = 'adjustment_date'
    readonly_fields = ['created_at']


@admin.register(TransactionCategory)
class TransactionCategoryAdmin(admin.ModelAdmin):
    list_display  = ['name', 'type', 'is_active']
    list_filter   = ['type', 'is_active']
    search_fields = ['name']


@admin.register(FinancialTransaction)
class FinancialTransactionAdmin(admin.ModelAdmin):
    list_display    = ['date', 'type', 'category', 'amount', 'description', 'created_by']
    list_filter     = ['type', 'category', 'date']
    search_fields   = ['description', 'category__name']
    date_hierarchy  = 'date'
    readonly_fields = ['created_by', 'updated_by', 'created_at', 'updated_at']
