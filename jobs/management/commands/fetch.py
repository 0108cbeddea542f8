"""
Django management command for fetching media with yt-dlp.

Runs yt-dlp through the shared job queue, streaming its progress.
"""
from django.core.management.base import BaseCommand, CommandError

from jobs.management.reporting import make_event_printer, report_job
from jobs.operations import run_job
from jobs.service.commands import build_fetch_spec
from jobs.service.job_queue import QueueClosed, QueueOverflow


class Command(BaseCommand):
    help = 'Download media from a URL with yt-dlp'

    def add_arguments(self, parser):
        parser.add_argument('url', type=str, help='URL of the media page or file')
        parser.add_argument(
            '--type',
            type=str,
            default='video',
            choices=['audio', 'video'],
            help='Media type to download (default: video)',
        )
        parser.add_argument(
            '--outdir', type=str, default='.', help='Output directory (default: current directory)'
        )
        parser.add_argument(
            '--timeout', type=float, default=None, help='Deadline in seconds (default: from settings)'
        )
        parser.add_argument(
            '--ytdlp-args', type=str, default=None, help='Extra yt-dlp arguments (default: from settings)'
        )
        parser.add_argument('--verbose', action='store_true', help='Enable verbose output')
        parser.add_argument('--json', action='store_true', help='Output result as JSON')

    def handle(self, *args, **options):
        url = options['url']
        verbose = options['verbose']
        output_json = options['json']

        spec = build_fetch_spec(
            url,
            outdir=options['outdir'],
            media_type=options['type'],
            ytdlp_extra_args=options['ytdlp_args'],
            timeout=options['timeout'],
        )

        if verbose and not output_json:
            self.stdout.write(self.style.NOTICE(f'Fetching: {url}'))

        try:
            job = run_job(
                spec,
                on_event=None if output_json else make_event_printer(self, verbose),
                logger=self.stdout.write if verbose and not output_json else None,
            )
        except (QueueOverflow, QueueClosed) as e:
            raise CommandError(f'Could not queue download: {e}')

        report_job(self, job, output_json)
