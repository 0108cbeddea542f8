"""
Job data model.

JobSpec describes what to run, Job tracks one submission of it through
its lifecycle, and ProgressEvent is one parsed unit of its output.
"""
import os
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Mapping, Optional, Sequence, Union

from django.utils import timezone

from jobs.service.constants import (
    ERROR_TAIL_LINES,
    STATUS_QUEUED,
    STATUS_RUNNING,
    STREAM_STDERR,
    STREAM_STDOUT,
    TERMINAL_STATUSES,
    TOOL_FFMPEG,
    TOOL_YTDLP,
    TRANSITIONS,
)
from jobs.utils import generate_job_id


class InvalidTransition(Exception):
    """Raised when a job status change would move backwards or skip a state"""
    pass


@dataclass(frozen=True)
class JobSpec:
    """Immutable description of an external command to run"""
    executable: str
    args: Sequence[str] = ()
    cwd: Optional[str] = None
    env: Mapping[str, str] = field(default_factory=dict)
    timeout: Optional[float] = None
    priority: Optional[int] = None
    name: str = ''
    tool: Optional[str] = None
    log_path: Optional[str] = None

    def __post_init__(self):
        if not self.executable:
            raise ValueError('executable is required')
        if isinstance(self.args, (str, bytes)):
            raise ValueError('args must be a sequence of arguments, not a single string')
        if self.timeout is not None and self.timeout < 0:
            raise ValueError('timeout must not be negative')

        # Frozen dataclass: normalize through object.__setattr__
        object.__setattr__(self, 'executable', str(self.executable))
        object.__setattr__(self, 'args', tuple(str(arg) for arg in self.args))
        env = {str(key): str(value) for key, value in (self.env or {}).items()}
        object.__setattr__(self, 'env', MappingProxyType(env))
        if self.cwd is not None:
            object.__setattr__(self, 'cwd', str(self.cwd))
        if self.log_path is not None:
            object.__setattr__(self, 'log_path', str(self.log_path))

    @property
    def argv(self):
        """Full argument vector, executable first"""
        return [self.executable, *self.args]

    @property
    def label(self):
        return self.name or os.path.basename(self.executable)

    def detect_tool(self):
        """
        Determine which tool's output format to parse.

        Returns:
            str or None: 'yt-dlp', 'ffmpeg', or None for unknown executables
        """
        if self.tool:
            return self.tool
        base = os.path.basename(self.executable).lower()
        if base.endswith('.exe'):
            base = base[:-4]
        if base in ('yt-dlp', 'yt_dlp', 'youtube-dl') or base.startswith('yt-dlp_'):
            return TOOL_YTDLP
        if base in ('ffmpeg', 'ffprobe'):
            return TOOL_FFMPEG
        return None


@dataclass(frozen=True)
class ProgressEvent:
    """A structured unit of parsed process output"""
    kind: str
    payload: Union[float, str]
    stream: str = STREAM_STDOUT
    timestamp: datetime = field(default_factory=timezone.now)

    def to_dict(self):
        return {
            'timestamp': self.timestamp.isoformat(),
            'kind': self.kind,
            'payload': self.payload,
            'stream': self.stream,
        }


class OutputBuffer:
    """
    Line buffer holding at most `capacity` bytes of UTF-8 text.

    Appending past the capacity drops the oldest lines. A single line larger
    than the whole buffer keeps only its tail.
    """

    def __init__(self, capacity):
        self.capacity = max(0, int(capacity))
        self.dropped_bytes = 0
        self._lines = deque()
        self._size = 0

    @staticmethod
    def _line_size(line):
        # +1 for the newline separator
        return len(line.encode('utf-8')) + 1

    def append(self, line):
        size = self._line_size(line)
        if size > self.capacity:
            self.dropped_bytes += self._size
            self._lines.clear()
            self._size = 0
            keep = self.capacity - 1
            if keep <= 0:
                self.dropped_bytes += size
                return
            line = line.encode('utf-8')[-keep:].decode('utf-8', errors='ignore')
            new_size = self._line_size(line)
            self.dropped_bytes += size - new_size
            size = new_size

        self._lines.append(line)
        self._size += size
        while self._size > self.capacity:
            oldest = self._lines.popleft()
            removed = self._line_size(oldest)
            self._size -= removed
            self.dropped_bytes += removed

    @property
    def size(self):
        return self._size

    def lines(self):
        return list(self._lines)

    def text(self):
        return '\n'.join(self._lines)

    def __len__(self):
        return len(self._lines)


class Job:
    """
    One submission of a JobSpec, tracked from QUEUED to a terminal status.

    Status changes, events and output are guarded by a per-job condition so
    that pollers and subscribers can read while the owning thread writes.
    """

    def __init__(self, spec, job_id=None, output_buffer_bytes=64 * 1024):
        self.id = job_id or generate_job_id()
        self.spec = spec
        self.status = STATUS_QUEUED
        self.created_at = timezone.now()
        self.started_at = None
        self.ended_at = None
        self.exit_code = None
        self.pid = None
        self.failure = None
        self.reason = ''
        self.fatal_error = None
        self.termination = None
        self.timeout = None
        self.deadline = None
        self.log_path = spec.log_path
        self.events = []
        self.output = OutputBuffer(output_buffer_bytes)
        self.error_tail = deque(maxlen=ERROR_TAIL_LINES)
        self._condition = threading.Condition()

    def __repr__(self):
        return f'<Job {self.id} {self.spec.label} {self.status}>'

    @property
    def is_finished(self):
        return self.status in TERMINAL_STATUSES

    @property
    def duration_seconds(self):
        if not self.started_at:
            return None
        end = self.ended_at or timezone.now()
        return (end - self.started_at).total_seconds()

    def transition(self, new_status, reason=None, failure=None):
        """
        Move the job to a new status.

        Raises:
            InvalidTransition: If the move is not allowed from the current status
        """
        with self._condition:
            allowed = TRANSITIONS.get(self.status, frozenset())
            if new_status not in allowed:
                raise InvalidTransition(f'{self.id}: {self.status} -> {new_status}')

            self.status = new_status
            if new_status == STATUS_RUNNING:
                self.started_at = timezone.now()
            if new_status in TERMINAL_STATUSES:
                self.ended_at = timezone.now()
                self.failure = failure
                self.reason = reason or ''
            self._condition.notify_all()

    def start_clock(self, timeout):
        """Set the deadline (monotonic seconds) for a job that has just started"""
        with self._condition:
            self.timeout = timeout or None
            self.deadline = time.monotonic() + timeout if timeout else None
            return self.deadline

    def request_termination(self, kind):
        """
        Record a termination request; the first request wins.

        Returns:
            bool: True if this call recorded the request
        """
        with self._condition:
            if self.status != STATUS_RUNNING or self.termination is not None:
                return False
            self.termination = kind
            return True

    def add_event(self, event):
        with self._condition:
            self.events.append(event)
            self._condition.notify_all()

    def append_output(self, stream, line):
        with self._condition:
            self.output.append(line)
            if stream == STREAM_STDERR:
                self.error_tail.append(line)

    def record_fatal(self, message):
        with self._condition:
            if self.fatal_error is None:
                self.fatal_error = message

    def output_text(self):
        with self._condition:
            return self.output.text()

    def wait(self, timeout=None):
        """
        Block until the job reaches a terminal status.

        Returns:
            bool: True if the job finished within the timeout
        """
        with self._condition:
            return self._condition.wait_for(lambda: self.is_finished, timeout=timeout)

    def iter_events(self):
        """
        Yield events in production order, ending once the job is terminal.

        The iterator is single-pass; call again for a fresh replay from the
        first event.
        """
        index = 0
        while True:
            with self._condition:
                self._condition.wait_for(
                    lambda: index < len(self.events) or self.is_finished
                )
                batch = self.events[index:]
                finished = self.is_finished
            index += len(batch)
            yield from batch
            if finished and not batch:
                return

    def to_dict(self):
        with self._condition:
            return {
                'id': self.id,
                'name': self.spec.label,
                'argv': self.spec.argv,
                'status': self.status,
                'exit_code': self.exit_code,
                'failure': self.failure,
                'reason': self.reason,
                'pid': self.pid,
                'created_at': self.created_at.isoformat(),
                'started_at': self.started_at.isoformat() if self.started_at else None,
                'ended_at': self.ended_at.isoformat() if self.ended_at else None,
                'events': len(self.events),
                'output_tail': list(self.output.lines())[-10:],
            }
