from django.urls import path
from . import views

urlpatterns = [

#     ── Dashboard ─────────────────────────────────────────
    path('',                                    views.dashboard,           name='dashboard'),

#     ── Customers ─────────────────────────────────────────
    path('customers/',                          views.customer_list,       name='customer-list'),
    path('customers/add/',                      views.customer_create,     name='customer-create'),
    path('customers/<str:customer_id>/edit/',   views.customer_edit,       name='customer-edit'),

#     ── Meter Readings ────────────────────────────────────
    path('readings/add/',                       views.reading_create,      name='reading-create'),

#     ── Meter Adjustments ─────────────────────────────────
    path('adjustments/',                        views.adjustments,         name='adjustments'),

#     ── Discounts ─────────────────────────────────────────
    path('discounts/add/',                      views.discount_create,     name='discount-create'),
    path('discounts/<str:discount_id>/deactivate/', views.discount_deactivate, name='discount-deactivate'),

#     ── Reports ───────────────────────────────────────────
    path('reports/monthly/',                    views.monthly_report,      name='monthly-report'),
    path('reports/rt-bills/',                   views.rt_bills,            name='rt-bills'),

#     ── Sync ──────────────────────────────────────────────
    path('sync/',                               views.sync_now,            name='sync-now'),
    path('sync/status/',                        views.sync_status,         name='sync-status'),
    path('sync/connectivity/',                  views.set_connectivity,    name='sync-connectivity'),

#     ── Financial ledger ──────────────────────────────────
    path('finance/transactions/',               views.transactions,        name='transactions'),
    path('finance/transactions/<int:pk>/',      views.transaction_edit,    name='transaction-edit'),
    path('finance/report/',                     views.financial_report,    name='financial-report'),
    path('finance/rt-payments/',                views.rt_payments,         name='rt-payments'),
]
