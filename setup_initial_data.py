#!/usr/bin/env python
"""
Setup script to populate the RT water billing system with initial data.
Run this after `migrate` and after creating your superuser account.
"""
import os
import django

# Setup Django environment
os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'pamrt.settings')
django.setup()

from datetime import datetime
from decimal import Decimal

from dateutil.relativedelta import relativedelta
from django.utils import timezone

from waterbill.finance import rt_category_name
from waterbill.models import Customer, MeterReading, TransactionCategory

RTS = ['RT 01', 'RT 02', 'RT 03']


def create_categories():
    """Create the income/expense headings of the cash book"""
    print("🔧 Creating transaction categories...")

    categories = [(rt_category_name(rt), 'income', f'Water payments collected in {rt}') for rt in RTS]
    categories += [
        ('Iuran Lain',      'income',  'Other contributions'),
        ('Perawatan Pipa',  'expense', 'Pipe and meter maintenance'),
        ('Listrik Pompa',   'expense', 'Electricity for the pump'),
        ('Administrasi',    'expense', 'Printing and administration'),
    ]

    created_count = 0
    for name, kind, description in categories:
        _, created = TransactionCategory.objects.get_or_create(
            name     = name,
            type     = kind,
            defaults = {'description': description},
        )
        if created:
            created_count += 1
            print(f"✅ Created {kind} category: {name}")
    print(f"📊 {created_count} new categories")


def create_sample_customers():
    """Create a few households with three months of readings"""
    print("\n👥 Creating sample customers...")

    customers_data = [
        {'name': 'Budi Santoso',   'rt': 'RT 01', 'phone': '081234567890'},
        {'name': 'Siti Aminah',    'rt': 'RT 01', 'phone': '085711122233'},
        {'name': 'Agus Wibowo',    'rt': 'RT 02', 'phone': '+6281398765432'},
        {'name': 'Dewi Lestari',   'rt': 'RT 03', 'phone': ''},
    ]

    this_month = timezone.localdate().replace(day=5)
    created_count = 0
    for index, data in enumerate(customers_data):
        customer, created = Customer.objects.get_or_create(name=data['name'], defaults=data)
        if not created:
            print(f"✅ Customer already exists: {customer.name}")
            continue

        reading = Decimal(100 + index * 40)
        for months_back in (3, 2, 1):
            day = this_month - relativedelta(months=months_back)
            MeterReading.objects.create(
                customer = customer,
                reading  = reading,
                date     = timezone.make_aware(datetime(day.year, day.month, day.day, 9, 0)),
            )
            reading += 8 + index * 3
        created_count += 1
        print(f"✅ Created customer: {customer.name} ({customer.rt}) with 3 readings")

    print(f"\n📊 Summary: {created_count} new customers created")


def main():
    print("🚀 Setting up RT Water Billing...")
    print("=" * 50)

    create_categories()
    create_sample_customers()

    print("\n" + "=" * 50)
    print("🎉 Initial setup complete!")
    print("\nNext Steps:")
    print("1. Access admin panel at: http://127.0.0.1:8000/admin/")
    print("2. Pull data into the billing cache: python manage.py sync_offline")
    print("3. Print this month's bills: python manage.py run_billing --refresh")


if __name__ == '__main__':
    main()
