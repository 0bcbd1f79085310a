from django.core.management.base import BaseCommand, CommandError
from django.utils import timezone

from waterbill.context import FieldSession
from waterbill.pipeline import (
    format_for_export, generate_monthly_billing_report, rt_total_bills, validate_data_integrity, write_csv,
)


class Command(BaseCommand):
    help = 'Print the monthly billing report (per customer and per RT) from a cache namespace'

    def add_arguments(self, parser):
        parser.add_argument('--month',     type=str,
                            help='YYYY-MM (default: current month)')
        parser.add_argument('--namespace', type=str, default='billing',
                            help='Cache namespace to read (default: billing)')
        parser.add_argument('--rt',        type=str, action='append', default=[],
                            help='Limit to an RT, e.g. "RT 01" (repeatable)')
        parser.add_argument('--refresh',   action='store_true',
                            help='Download customers/readings/discounts from the remote store first')
        parser.add_argument('--csv',       action='store_true',
                            help='Write the report rows as CSV instead of the text summary')

    def handle(self, *args, **options):
        if options['month']:
            try:
                year, month = map(int, options['month'].split('-'))
            except ValueError:
                raise CommandError('--month must look like YYYY-MM') from None
        else:
            today = timezone.localdate()
            year, month = today.year, today.month

        session = FieldSession.build(options['namespace'])
        if options['refresh']:
            downloaded = session.sync.refresh_data()
            self.stdout.write(f'Refreshed: {", ".join(downloaded) or "nothing"}')

        try:
            report = generate_monthly_billing_report(session.store, year, month, rt_numbers=options['rt'])
        except ValueError as e:
            raise CommandError(str(e)) from e

        if options['csv']:
            write_csv(format_for_export(report.data, 'csv'), self.stdout)
            return

        for row in format_for_export(report.data, 'csv'):
            self.stdout.write(
                f'{row["Customer"]:<25} {row["RT"]:<8} {row["Usage (m³)"]:>8} m³  '
                f'Rp {row["Total Bill"]:>10,.0f}'
            )

        for error in report.errors:
            self.stdout.write(self.style.ERROR(f'ERROR: {error}'))

        _, issues, warnings = validate_data_integrity(report.data)
        for issue in issues:
            self.stdout.write(self.style.ERROR(f'INTEGRITY: {issue}'))
        for warning in warnings:
            self.stdout.write(self.style.WARNING(warning))

        self.stdout.write('')
        for total in rt_total_bills(session.store, year, month, report=report):
            missing = f'  missing: {", ".join(total.missing_readings)}' if total.missing_readings else ''
            self.stdout.write(
                f'{total.rt:<10} {total.customer_count:>3} customers  '
                f'{total.total_usage:>8} m³  Rp {total.total_bill:>12,.0f}{missing}'
            )

        summary = report.summary
        self.stdout.write(self.style.SUCCESS(
            f'Done. {year:04d}-{month:02d}: {summary["total_readings"]} bills, '
            f'{summary["total_usage"]} m³, net Rp {summary["net_billing"]:,.0f} '
            f'(discounts Rp {summary["total_discounts"]:,.0f}). {len(report.errors)} errors.'
        ))
