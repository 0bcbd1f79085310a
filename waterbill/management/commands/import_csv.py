from django.core.management.base import BaseCommand, CommandError

from waterbill.context import FieldSession
from waterbill.imports import import_meter_readings, import_transactions, read_csv, reading_template
from waterbill.pipeline import write_csv


class Command(BaseCommand):
    help = 'Import meter readings into a cache namespace, or cash book entries into the ledger, from CSV'

    def add_arguments(self, parser):
        parser.add_argument('kind',        choices=['readings', 'transactions'])
        parser.add_argument('path',        nargs='?',
                            help='CSV file to import (not needed with --template)')
        parser.add_argument('--namespace', type=str, default='billing',
                            help='Cache namespace that receives readings (default: billing)')
        parser.add_argument('--user',      type=str, default='import',
                            help='created_by for transactions without one (default: import)')
        parser.add_argument('--template',  action='store_true',
                            help='Print a readings sheet with one row per cached customer')
        parser.add_argument('--date',      type=str, default='',
                            help='Reading date to pre-fill in the template')
        parser.add_argument('--sync',      action='store_true',
                            help='Run a sync cycle after importing readings')

    def handle(self, *args, **options):
        kind = options['kind']

        if options['template']:
            if kind != 'readings':
                raise CommandError('--template is only available for readings')
            session = FieldSession.build(options['namespace'])
            rows = reading_template(session.store, options['date'])
            write_csv(rows, self.stdout)
            return

        if not options['path']:
            raise CommandError('A CSV file is required')
        try:
            with open(options['path'], newline='', encoding='utf-8-sig') as handle:
                rows = read_csv(handle)
        except OSError as e:
            raise CommandError(f'Cannot read {options["path"]}: {e}') from e

        if kind == 'readings':
            session = FieldSession.build(options['namespace'])
            result  = import_meter_readings(session.store, rows)
        else:
            session = None
            result  = import_transactions(rows, user=options['user'])

        for warning in result.warnings:
            self.stdout.write(self.style.WARNING(f'WARNING: {warning}'))
        for error in result.errors:
            self.stdout.write(self.style.ERROR(f'ERROR: {error}'))

        style = self.style.SUCCESS if result.success else self.style.WARNING
        self.stdout.write(style(
            f'Done. {result.imported} of {len(rows)} {kind} imported, {len(result.errors)} error(s).'
        ))

        if session is not None and options['sync'] and result.imported:
            synced = session.sync.sync()
            self.stdout.write(f'Sync: {synced.synced} synced, {synced.failed} failed.')
