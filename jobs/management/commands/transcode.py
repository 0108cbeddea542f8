"""
Django management command for transcoding media with ffmpeg.

This is a thin CLI wrapper around build_transcode_spec and the shared job queue.
"""
from pathlib import Path

from django.core.management.base import BaseCommand, CommandError

from jobs.management.reporting import make_event_printer, report_job
from jobs.operations import run_job
from jobs.service.commands import build_transcode_spec
from jobs.service.job_queue import QueueClosed, QueueOverflow


class Command(BaseCommand):
    help = 'Transcode a media file with ffmpeg'

    def add_arguments(self, parser):
        parser.add_argument('input', type=str, help='Input media file')
        parser.add_argument('output', type=str, help='Output media file')
        parser.add_argument(
            '--type',
            type=str,
            default='video',
            choices=['audio', 'video'],
            help='Media type to produce (default: video)',
        )
        parser.add_argument('--title', type=str, default='', help='Title metadata')
        parser.add_argument('--author', type=str, default='', help='Artist metadata')
        parser.add_argument(
            '--timeout', type=float, default=None, help='Deadline in seconds (default: from settings)'
        )
        parser.add_argument('--verbose', action='store_true', help='Enable verbose output')
        parser.add_argument('--json', action='store_true', help='Output result as JSON')

    def handle(self, *args, **options):
        input_path = Path(options['input'])
        verbose = options['verbose']
        output_json = options['json']

        if not input_path.exists():
            raise CommandError(f'Input file not found: {input_path}')

        spec = build_transcode_spec(
            input_path,
            options['output'],
            media_type=options['type'],
            metadata={'title': options['title'], 'author': options['author']},
            timeout=options['timeout'],
        )

        try:
            job = run_job(
                spec,
                on_event=None if output_json else make_event_printer(self, verbose),
                logger=self.stdout.write if verbose and not output_json else None,
            )
        except (QueueOverflow, QueueClosed) as e:
            raise CommandError(f'Could not queue transcode: {e}')

        report_job(self, job, output_json)
