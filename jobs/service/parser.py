"""
Progress and output parsing for yt-dlp and ffmpeg.

Turns raw output lines into ProgressEvents. Percentage events are
throttled: one is emitted only when the percentage goes up, or when the
heartbeat interval has passed since the last one.
"""
import re
import time

from jobs.service.constants import (
    EVENT_ERROR,
    EVENT_LOG,
    EVENT_MERGING,
    EVENT_PERCENT,
    EVENT_WARNING,
    STREAM_STDOUT,
    TOOL_FFMPEG,
)
from jobs.service.job import ProgressEvent

# yt-dlp markers (also used for unknown tools)
YTDLP_PERCENT_RE = re.compile(r'^\[download\]\s+(\d{1,3}(?:\.\d+)?)%')
YTDLP_MERGE_RE = re.compile(r'^\[Merger\]\s+Merging formats into\s+"?(.*?)"?\s*$')
YTDLP_WARNING_RE = re.compile(r'^WARNING:\s*(.*)$')
YTDLP_ERROR_RE = re.compile(r'^ERROR:\s*(.*)$')

# ffmpeg markers
FFMPEG_DURATION_RE = re.compile(r'Duration:\s*(\d+):(\d{2}):(\d{2}(?:\.\d+)?)')
FFMPEG_TIME_RE = re.compile(r'\b(?:out_)?time=\s*(\d+):(\d{2}):(\d{2}(?:\.\d+)?)')
FFMPEG_WARNING_RE = re.compile(r'\bwarning\b', re.IGNORECASE)
FFMPEG_FATAL_MARKERS = (
    'Conversion failed!',
    'No such file or directory',
    'Invalid data found when processing input',
    'Permission denied',
    'Unknown encoder',
    'Error opening input',
    'Error opening output',
    'Error while opening encoder',
    'does not contain any stream',
    'At least one output file must be specified',
)

DEFAULT_HEARTBEAT_SECONDS = 8.0


def _clock_to_seconds(hours, minutes, seconds):
    return int(hours) * 3600 + int(minutes) * 60 + float(seconds)


class ProgressParser:
    """
    Per-job line classifier.

    Holds the only state parsing needs: the highest percentage emitted, when
    it was emitted, and (for ffmpeg) the input duration. Create one per job
    and drop it when the job ends.
    """

    def __init__(self, tool=None, heartbeat_interval=DEFAULT_HEARTBEAT_SECONDS,
                 clock=time.monotonic):
        self.tool = tool
        self.heartbeat_interval = heartbeat_interval
        self.fatal_error = None
        self.duration_seconds = None
        self._clock = clock
        self._last_percent = None
        self._last_emit = None

    @property
    def last_percent(self):
        return self._last_percent

    def feed(self, line, stream=STREAM_STDOUT):
        """
        Classify one line of output.

        Args:
            line: Output line without its terminator
            stream: 'stdout' or 'stderr'

        Returns:
            list[ProgressEvent]: Zero or more events for this line
        """
        line = line.rstrip()
        if not line.strip():
            return []

        if self.tool == TOOL_FFMPEG:
            return self._feed_ffmpeg(line, stream)
        return self._feed_ytdlp(line, stream)

    def _feed_ytdlp(self, line, stream):
        match = YTDLP_PERCENT_RE.match(line)
        if match:
            return self._percent(float(match.group(1)), stream)

        match = YTDLP_MERGE_RE.match(line)
        if match:
            return [ProgressEvent(EVENT_MERGING, match.group(1), stream)]

        match = YTDLP_WARNING_RE.match(line)
        if match:
            return [ProgressEvent(EVENT_WARNING, match.group(1), stream)]

        match = YTDLP_ERROR_RE.match(line)
        if match:
            return [self._fatal(match.group(1) or line, stream)]

        return [ProgressEvent(EVENT_LOG, line, stream)]

    def _feed_ffmpeg(self, line, stream):
        match = FFMPEG_DURATION_RE.search(line)
        if match and self.duration_seconds is None:
            self.duration_seconds = _clock_to_seconds(*match.groups())
            return [ProgressEvent(EVENT_LOG, line, stream)]

        match = FFMPEG_TIME_RE.search(line)
        if match and self.duration_seconds:
            elapsed = _clock_to_seconds(*match.groups())
            return self._percent(elapsed / self.duration_seconds * 100.0, stream)

        if any(marker in line for marker in FFMPEG_FATAL_MARKERS):
            return [self._fatal(line, stream)]

        if FFMPEG_WARNING_RE.search(line):
            return [ProgressEvent(EVENT_WARNING, line, stream)]

        return [ProgressEvent(EVENT_LOG, line, stream)]

    def _fatal(self, message, stream):
        if self.fatal_error is None:
            self.fatal_error = message
        return ProgressEvent(EVENT_ERROR, message, stream)

    def _percent(self, value, stream):
        value = round(min(100.0, max(0.0, value)), 1)
        now = self._clock()

        if self._last_percent is None or value > self._last_percent:
            self._last_percent = value
            self._last_emit = now
            return [ProgressEvent(EVENT_PERCENT, value, stream)]

        # Heartbeat repeats the high-water mark so the sequence never goes down
        if now - self._last_emit >= self.heartbeat_interval:
            self._last_emit = now
            return [ProgressEvent(EVENT_PERCENT, self._last_percent, stream)]

        return []
