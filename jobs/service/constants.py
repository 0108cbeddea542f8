"""
Job status, failure and event constants.

Centralized definitions shared by the queue, the invoker and the parser.
"""

# Job statuses
STATUS_QUEUED = 'QUEUED'
STATUS_RUNNING = 'RUNNING'
STATUS_SUCCEEDED = 'SUCCEEDED'
STATUS_FAILED = 'FAILED'
STATUS_CANCELLED = 'CANCELLED'
STATUS_TIMED_OUT = 'TIMED_OUT'

TERMINAL_STATUSES = frozenset(
    [STATUS_SUCCEEDED, STATUS_FAILED, STATUS_CANCELLED, STATUS_TIMED_OUT]
)

# Allowed forward transitions; terminal statuses have none
TRANSITIONS = {
    STATUS_QUEUED: frozenset([STATUS_RUNNING, STATUS_CANCELLED]),
    STATUS_RUNNING: frozenset(
        [STATUS_SUCCEEDED, STATUS_FAILED, STATUS_CANCELLED, STATUS_TIMED_OUT]
    ),
}

# Failure kinds recorded on terminal jobs
FAILURE_SPAWN_ERROR = 'spawn-error'
FAILURE_RUNTIME = 'runtime-failure'
FAILURE_TIMEOUT = 'timeout'
FAILURE_CANCELLED = 'cancelled'
FAILURE_INTERNAL = 'internal-error'

# Termination requests
TERMINATE_CANCEL = 'cancel'
TERMINATE_TIMEOUT = 'timeout'

# Progress event kinds
EVENT_PERCENT = 'download-percent'
EVENT_MERGING = 'merging'
EVENT_WARNING = 'warning'
EVENT_ERROR = 'error-line'
EVENT_LOG = 'log-line'

# Output streams
STREAM_STDOUT = 'stdout'
STREAM_STDERR = 'stderr'

# Known tools
TOOL_YTDLP = 'yt-dlp'
TOOL_FFMPEG = 'ffmpeg'

# Number of stderr lines kept for failure reasons
ERROR_TAIL_LINES = 20
