"""
High-level operations that can be used by host services and management commands.

This module owns the process-wide JobQueue, built from Django settings on
first use, so every caller in a process shares one concurrency limit.
"""

import threading

from jobs.service.job_queue import JobQueue

_job_queue = None
_lock = threading.Lock()


def get_job_queue(logger=None):
    """
    Get the shared job queue, creating it from settings if needed.

    Args:
        logger: Optional callable(message) for logging; only used when the
            queue is created by this call

    Returns:
        JobQueue
    """
    global _job_queue
    with _lock:
        if _job_queue is None:
            _job_queue = JobQueue.from_settings(logger=logger)
        return _job_queue


def shutdown_job_queue(wait=True, timeout=None):
    """Shut down the shared queue (if one was created) and forget it"""
    global _job_queue
    with _lock:
        job_queue, _job_queue = _job_queue, None
    if job_queue is not None:
        job_queue.shutdown(wait=wait, timeout=timeout)


def run_job(spec, wait=True, on_event=None, job_queue=None, logger=None):
    """
    Submit a job to the shared queue and optionally follow it to the end.

    This is the core operation used by:
    - Management commands: ./manage.py fetch, transcode, runjob
    - Host services that want a blocking call

    Args:
        spec: JobSpec to run
        wait: If True, block until the job is terminal. If False, return
            right after submission.
        on_event: Optional callable(ProgressEvent), called in order while waiting
        job_queue: Queue to use instead of the shared one
        logger: Optional callable(message) for logging

    Returns:
        Job: The job (terminal when wait=True)

    Example:
        >>> job = run_job(JobSpec('ffmpeg', ['-version']))
        >>> print(job.status)
        SUCCEEDED
    """

    def log(message):
        if logger:
            logger(message)

    job_queue = job_queue or get_job_queue()
    handle = job_queue.submit(spec)
    log(f'Submitted job {handle.id}: {spec.label}')

    if not wait:
        return handle.status()

    try:
        for event in handle.subscribe():
            if on_event:
                on_event(event)
    except KeyboardInterrupt:
        log(f'Interrupted, cancelling job {handle.id}')
        handle.cancel()
        handle.wait()
        raise

    job = handle.wait()
    log(f'Job {job.id} finished: {job.status}')
    return job
