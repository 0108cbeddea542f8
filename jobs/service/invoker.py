"""
Process invocation and supervision.

Spawns one external command per job (never through a shell), pumps its
stdout and stderr into the job's output buffer and event stream, waits for
it to exit, and classifies the outcome.
"""
import os
import queue
import re
import subprocess
import threading
import time

from jobs.service.constants import (
    FAILURE_CANCELLED,
    FAILURE_RUNTIME,
    FAILURE_TIMEOUT,
    STATUS_CANCELLED,
    STATUS_FAILED,
    STATUS_SUCCEEDED,
    STATUS_TIMED_OUT,
    STREAM_STDERR,
    STREAM_STDOUT,
    TERMINATE_CANCEL,
    TERMINATE_TIMEOUT,
)
from jobs.service.parser import DEFAULT_HEARTBEAT_SECONDS, ProgressParser
from jobs.utils import format_command, write_log

# Both tools redraw progress lines with a bare carriage return
LINE_SPLIT_RE = re.compile(rb'\r\n|\r|\n')

# Lines longer than this are flushed in pieces
MAX_LINE_BYTES = 64 * 1024

READ_CHUNK_BYTES = 4096


class SpawnError(Exception):
    """Raised when the executable cannot be started (missing, not executable, bad cwd)"""
    pass


def build_environment(spec):
    """Coordinator environment with the job's overrides applied on top"""
    env = os.environ.copy()
    env.update(spec.env)
    return env


def iter_lines(stream):
    """
    Yield decoded lines from a binary pipe as soon as they are complete.

    Splits on '\\n', '\\r\\n' and bare '\\r'. Empty lines are skipped.
    """
    read = getattr(stream, 'read1', stream.read)
    pending = b''
    while True:
        chunk = read(READ_CHUNK_BYTES)
        if not chunk:
            break
        pending += chunk
        parts = LINE_SPLIT_RE.split(pending)
        pending = parts.pop()
        for part in parts:
            if part:
                yield part.decode('utf-8', errors='replace')
        if len(pending) > MAX_LINE_BYTES:
            yield pending.decode('utf-8', errors='replace')
            pending = b''
    if pending:
        yield pending.decode('utf-8', errors='replace')


def _pump(stream, stream_name, lines):
    """Reader thread body: forward lines, then a None sentinel"""
    try:
        for line in iter_lines(stream):
            lines.put((stream_name, line))
    except (OSError, ValueError):
        # Pipe closed underneath us
        pass
    finally:
        lines.put((stream_name, None))
        try:
            stream.close()
        except OSError:
            pass


class ProcessInvoker:
    """Spawns and supervises the external process for one job at a time"""

    def __init__(self, heartbeat_interval=DEFAULT_HEARTBEAT_SECONDS, user=None, group=None,
                 drain_timeout=2.0, logger=None):
        self.heartbeat_interval = heartbeat_interval
        self.user = user
        self.group = group
        self.drain_timeout = drain_timeout
        self._logger = logger

    def _log(self, message):
        if self._logger:
            self._logger(message)

    def _write_job_log(self, job, message):
        try:
            write_log(job.log_path, message)
        except OSError as e:
            self._log(f'Job {job.id}: cannot write log {job.log_path}: {e}')

    def spawn(self, job):
        """
        Start the job's executable.

        Args:
            job: Job that has just been admitted

        Returns:
            subprocess.Popen

        Raises:
            SpawnError: If no process could be created
        """
        spec = job.spec
        kwargs = {
            'stdin': subprocess.DEVNULL,
            'stdout': subprocess.PIPE,
            'stderr': subprocess.PIPE,
            'cwd': spec.cwd,
            'env': build_environment(spec),
        }
        if os.name == 'posix':
            # Own process group, so termination also reaches child processes
            kwargs['start_new_session'] = True
            if self.user:
                kwargs['user'] = self.user
            if self.group:
                kwargs['group'] = self.group

        command = format_command(spec.argv)
        self._log(f'Running: {command}')
        self._write_job_log(job, f'Running: {command}')

        try:
            process = subprocess.Popen(spec.argv, **kwargs)
        except (OSError, ValueError, LookupError, subprocess.SubprocessError) as e:
            reason = getattr(e, 'strerror', None) or str(e)
            raise SpawnError(f'Cannot start {spec.executable}: {reason}') from e

        job.pid = process.pid
        self._write_job_log(job, f'PID: {process.pid}')
        return process

    def supervise(self, job, process):
        """
        Consume the process output until it exits, then reap it.

        Returns:
            int: The process exit code (negative for death by signal)
        """
        parser = ProgressParser(job.spec.detect_tool(), self.heartbeat_interval)
        lines = queue.Queue()
        readers = [
            threading.Thread(
                target=_pump, args=(process.stdout, STREAM_STDOUT, lines),
                name=f'job-{job.id}-stdout', daemon=True,
            ),
            threading.Thread(
                target=_pump, args=(process.stderr, STREAM_STDERR, lines),
                name=f'job-{job.id}-stderr', daemon=True,
            ),
        ]
        for reader in readers:
            reader.start()

        open_streams = len(readers)
        exited_at = None
        while open_streams:
            try:
                stream_name, line = lines.get(timeout=0.1)
            except queue.Empty:
                if process.poll() is not None:
                    # Pipes may be held open by orphaned children
                    exited_at = exited_at or time.monotonic()
                    if time.monotonic() - exited_at > self.drain_timeout:
                        self._log(f'Job {job.id}: output still open after exit, detaching')
                        break
                continue

            if line is None:
                open_streams -= 1
                continue
            self._handle_line(job, parser, stream_name, line)

        exit_code = process.wait()

        while True:
            try:
                stream_name, line = lines.get_nowait()
            except queue.Empty:
                break
            if line is not None:
                self._handle_line(job, parser, stream_name, line)

        return exit_code

    def _handle_line(self, job, parser, stream_name, line):
        job.append_output(stream_name, line)
        self._write_job_log(job, f'[{stream_name}] {line}')

        for event in parser.feed(line, stream_name):
            job.add_event(event)

        if parser.fatal_error and job.fatal_error is None:
            job.record_fatal(parser.fatal_error)
            self._log(f'Job {job.id}: fatal error reported: {parser.fatal_error}')

    def classify(self, job, exit_code):
        """
        Decide the terminal status for a job whose process has exited.

        Returns:
            tuple: (status, failure kind or None, human-readable reason)
        """
        if job.termination == TERMINATE_TIMEOUT:
            return STATUS_TIMED_OUT, FAILURE_TIMEOUT, f'Timed out after {job.timeout:g}s'

        if job.termination == TERMINATE_CANCEL:
            return STATUS_CANCELLED, FAILURE_CANCELLED, 'Cancelled by request'

        if job.fatal_error:
            return STATUS_FAILED, FAILURE_RUNTIME, f'{job.fatal_error} (exit code {exit_code})'

        if exit_code == 0:
            return STATUS_SUCCEEDED, None, 'Completed'

        if exit_code < 0:
            reason = f'{job.spec.label} was killed by signal {-exit_code}'
        else:
            reason = f'{job.spec.label} exited with code {exit_code}'
        tail = list(job.error_tail)[-3:]
        if tail:
            reason = f'{reason}: ' + ' | '.join(tail)
        return STATUS_FAILED, FAILURE_RUNTIME, reason
