"""
Shared output helpers for the job management commands.
"""
import json
import sys

from django.core.management.base import CommandError

from jobs.service.constants import (
    EVENT_ERROR,
    EVENT_LOG,
    EVENT_MERGING,
    EVENT_PERCENT,
    EVENT_WARNING,
    STATUS_SUCCEEDED,
)


def make_event_printer(command, verbose=False):
    """
    Build an on_event callback that writes progress to the command's stdout.

    Log lines are only shown with --verbose.
    """

    def on_event(event):
        if event.kind == EVENT_PERCENT:
            command.stdout.write(f'  {event.payload:5.1f}%')
        elif event.kind == EVENT_MERGING:
            command.stdout.write(f'  Merging into {event.payload}')
        elif event.kind == EVENT_WARNING:
            command.stdout.write(command.style.WARNING(f'  Warning: {event.payload}'))
        elif event.kind == EVENT_ERROR:
            command.stdout.write(command.style.ERROR(f'  Error: {event.payload}'))
        elif event.kind == EVENT_LOG and verbose:
            command.stdout.write(f'  {event.payload}')

    return on_event


def report_job(command, job, output_json=False):
    """
    Print the final job state and fail the command if the job did not succeed.

    Raises:
        CommandError: When the job did not succeed (human-readable mode)
    """
    if output_json:
        output = job.to_dict()
        output['success'] = job.status == STATUS_SUCCEEDED
        command.stdout.write(json.dumps(output, indent=2))
        if job.status != STATUS_SUCCEEDED:
            sys.exit(1)
        return

    if job.status != STATUS_SUCCEEDED:
        raise CommandError(f'{job.spec.label}: {job.status}: {job.reason}')

    command.stdout.write(command.style.SUCCESS(f'✓ {job.spec.label} complete'))
    command.stdout.write(f'  Job: {job.id}')
    command.stdout.write(f'  Exit code: {job.exit_code}')
    if job.duration_seconds is not None:
        command.stdout.write(f'  Duration: {job.duration_seconds:.1f}s')
