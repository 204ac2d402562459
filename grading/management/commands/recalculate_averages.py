import uuid

from django.core.management.base import BaseCommand, CommandError

from grading.results import SEMESTERS
from grading.services import get_service


def _uuid(value, label):
    try:
        return uuid.UUID(value)
    except ValueError:
        raise CommandError(f'Invalid {label} id: {value}')


class Command(BaseCommand):
    help = 'Recalculate stored averages and rankings from the raw grades'

    def add_arguments(self, parser):
        parser.add_argument(
            '--year',
            required=True,
            help='Academic year (e.g., "2024-2025")'
        )
        parser.add_argument(
            '--class',
            dest='class_id',
            help='Class id to recalculate'
        )
        parser.add_argument(
            '--semester',
            type=int,
            choices=SEMESTERS,
            help='Semester (1 or 2)'
        )
        parser.add_argument(
            '--subject',
            dest='subject_id',
            help='Subject id (only with --config-scope)'
        )
        parser.add_argument(
            '--config-scope',
            action='store_true',
            help='Recalculate a whole config scope; omitted ids mean "all"'
        )

    def handle(self, *args, **options):
        year = options['year']
        class_id = _uuid(options['class_id'], 'class') if options.get('class_id') else None
        subject_id = _uuid(options['subject_id'], 'subject') if options.get('subject_id') else None
        semester = options.get('semester')
        service = get_service()

        if options['config_scope']:
            batches = service.on_config_changed(year, class_id=class_id, subject_id=subject_id, semester=semester)
        else:
            if class_id is None or semester is None:
                raise CommandError('--class and --semester are required unless --config-scope is given')
            if subject_id is not None:
                raise CommandError('--subject can only be used with --config-scope')
            batches = [service.calculate_class_averages(class_id, semester, year)]

        if not batches:
            self.stdout.write(self.style.WARNING('No grades found for the given scope'))
            return

        failed = 0
        for batch in batches:
            self.stdout.write(
                f'Class {batch.class_id}: {len(batch.successes)} student(s) recalculated, '
                f'{len(batch.rankings)} ranking(s) rebuilt'
            )
            for failure in batch.failures:
                self.stdout.write(self.style.ERROR(f'  Failed: {failure}'))
            failed += len(batch.failures)

        if failed:
            raise CommandError(f'{failed} chain(s) failed')
        self.stdout.write(self.style.SUCCESS('All averages recalculated'))
