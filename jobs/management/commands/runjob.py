"""
Django management command for running an arbitrary executable as a job.

Useful for checking the queue, timeouts and output parsing against a real
binary, e.g. ./manage.py runjob --timeout 5 -- yt-dlp --version
"""
from django.core.management.base import BaseCommand, CommandError

from jobs.management.reporting import make_event_printer, report_job
from jobs.operations import run_job
from jobs.service.config import resolve_executable
from jobs.service.job import JobSpec
from jobs.service.job_queue import QueueClosed, QueueOverflow


class Command(BaseCommand):
    help = 'Run an executable through the job queue and stream its progress'

    def add_arguments(self, parser):
        parser.add_argument('executable', type=str, help='Executable name or path')
        parser.add_argument('args', nargs='*', help='Arguments passed to the executable')
        parser.add_argument('--cwd', type=str, default=None, help='Working directory')
        parser.add_argument(
            '--timeout', type=float, default=None, help='Deadline in seconds (default: from settings)'
        )
        parser.add_argument(
            '--tool',
            type=str,
            default=None,
            choices=['yt-dlp', 'ffmpeg'],
            help='Output format to parse (default: detect from executable name)',
        )
        parser.add_argument('--verbose', action='store_true', help='Enable verbose output')
        parser.add_argument('--json', action='store_true', help='Output result as JSON')

    def handle(self, *args, **options):
        verbose = options['verbose']
        output_json = options['json']

        spec = JobSpec(
            executable=resolve_executable(options['executable']),
            args=list(args),
            cwd=options['cwd'],
            timeout=options['timeout'],
            tool=options['tool'],
        )

        try:
            job = run_job(
                spec,
                on_event=None if output_json else make_event_printer(self, verbose),
                logger=self.stdout.write if verbose and not output_json else None,
            )
        except (QueueOverflow, QueueClosed) as e:
            raise CommandError(f'Could not queue job: {e}')

        report_job(self, job, output_json)
