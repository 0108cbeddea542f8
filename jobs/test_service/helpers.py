"""
Shared helpers for tests that spawn real processes.

Child processes are the current Python interpreter running a small inline
script, so tests do not depend on yt-dlp or ffmpeg being installed.
"""
import os
import sys
import time

from jobs.service.job import JobSpec

PYTHON = sys.executable


def python_spec(code, **kwargs):
    """JobSpec running `python -c code`"""
    return JobSpec(PYTHON, ['-c', code], **kwargs)


def sleep_spec(seconds, **kwargs):
    return python_spec(f'import time; time.sleep({seconds})', **kwargs)


def process_gone(pid):
    """True once no process with this pid exists (it has been reaped)"""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return True
    except PermissionError:
        return False
    return False


def wait_until(predicate, timeout=5.0, interval=0.02):
    """Poll predicate until it is true or the timeout passes"""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()
