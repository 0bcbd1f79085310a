from django.core.management.base import BaseCommand

from waterbill.context import FieldSession


class Command(BaseCommand):
    help = 'Run one sync cycle for a cache namespace, or inspect its dead letters'

    def add_arguments(self, parser):
        parser.add_argument('--namespace',    type=str, default='billing',
                            help='Cache namespace to sync (default: billing)')
        parser.add_argument('--dead-letters', action='store_true',
                            help='List queue items dropped after repeated failures')
        parser.add_argument('--requeue',      type=str, action='append', default=[],
                            help='Put a dead-letter item back on the queue (repeatable)')
        parser.add_argument('--status',       action='store_true',
                            help='Only print the sync status')

    def handle(self, *args, **options):
        session = FieldSession.build(options['namespace'])
        store   = session.store

        if options['dead_letters']:
            letters = store.get_dead_letters()
            for letter in letters:
                self.stdout.write(
                    f'{letter["id"]}  {letter["type"]:<9} attempts={letter["attempts"]}  '
                    f'{letter["dropped_at"]}  {letter["error"]}'
                )
            self.stdout.write(f'{len(letters)} dead letter(s).')
            return

        for entry_id in options['requeue']:
            if store.requeue_dead_letter(entry_id):
                self.stdout.write(self.style.SUCCESS(f'Requeued {entry_id}'))
            else:
                self.stdout.write(self.style.ERROR(f'No dead letter {entry_id}'))

        if options['status']:
            connected, error = session.sync.check_connection()
            for key, value in session.sync.get_status().items():
                self.stdout.write(f'{key:<17} {value}')
            self.stdout.write(f'{"connected":<17} {connected}{f" ({error})" if error else ""}')
            return

        result = session.sync.sync()
        for error in result.errors:
            self.stdout.write(self.style.ERROR(f'ERROR: {error}'))

        style = self.style.SUCCESS if result.success else self.style.WARNING
        self.stdout.write(style(
            f'Done. {result.synced} synced, {result.failed} failed, {result.skipped} skipped.'
        ))
