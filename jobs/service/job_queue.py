"""
Job queue and concurrency limiter.

JobQueue is the coordinator: it accepts submissions without waiting,
admits queued jobs while fewer than `max_concurrent_jobs` are running,
hands each admitted job to a supervisor thread, and keeps finished jobs
until the caller acknowledges them.
"""
import heapq
import itertools
import os
import subprocess
import threading
from dataclasses import dataclass, field

from jobs.service.constants import (
    FAILURE_CANCELLED,
    FAILURE_INTERNAL,
    FAILURE_SPAWN_ERROR,
    STATUS_CANCELLED,
    STATUS_FAILED,
    STATUS_QUEUED,
    STATUS_RUNNING,
    TERMINATE_CANCEL,
)
from jobs.service.invoker import ProcessInvoker, SpawnError
from jobs.service.job import Job
from jobs.service.parser import DEFAULT_HEARTBEAT_SECONDS
from jobs.service.watchdog import Watchdog, send_stop_signal
from jobs.utils import write_log


class QueueOverflow(Exception):
    """Raised by submit() when the configured queue capacity is reached"""
    pass


class QueueClosed(Exception):
    """Raised by submit() after shutdown()"""
    pass


class UnknownJob(LookupError):
    """Raised for handles that were never submitted or were already acknowledged"""
    pass


@dataclass(frozen=True)
class JobHandle:
    """Caller's reference to a submitted job"""
    id: str
    queue: 'JobQueue' = field(repr=False, compare=False)

    def status(self):
        return self.queue.status(self)

    def subscribe(self):
        return self.queue.subscribe(self)

    def cancel(self):
        return self.queue.cancel(self)

    def wait(self, timeout=None):
        return self.queue.wait(self, timeout=timeout)

    def acknowledge(self):
        return self.queue.acknowledge(self)


def _job_id(handle):
    if isinstance(handle, JobHandle):
        return handle.id
    if isinstance(handle, Job):
        return handle.id
    return str(handle)


class JobQueue:
    """
    Bounded-concurrency coordinator for external process jobs.

    Queued jobs are admitted highest priority first, FIFO among equal
    priorities. The admitted-job counter is only touched under `_lock`.
    """

    def __init__(self, max_concurrent_jobs=2, default_timeout=None,
                 output_buffer_bytes=64 * 1024, grace_period=5.0,
                 heartbeat_interval=DEFAULT_HEARTBEAT_SECONDS, queue_capacity=None,
                 job_log_dir=None, user=None, group=None, logger=None):
        if max_concurrent_jobs < 1:
            raise ValueError('max_concurrent_jobs must be at least 1')

        self.max_concurrent_jobs = max_concurrent_jobs
        self.default_timeout = default_timeout
        self.output_buffer_bytes = output_buffer_bytes
        self.queue_capacity = queue_capacity
        self.job_log_dir = job_log_dir
        self._logger = logger

        self.invoker = ProcessInvoker(
            heartbeat_interval=heartbeat_interval,
            user=user,
            group=group,
            drain_timeout=max(1.0, grace_period),
            logger=logger,
        )
        self.watchdog = Watchdog(grace_period=grace_period, logger=logger)

        self._lock = threading.Lock()
        self._pending = []
        self._sequence = itertools.count()
        self._jobs = {}
        self._processes = {}
        self._running = 0
        self._closed = False

    @classmethod
    def from_settings(cls, logger=None):
        """Create a queue configured from the MEDIAEXEC_* Django settings"""
        from jobs.service.config import get_queue_options

        return cls(logger=logger, **get_queue_options())

    def _log(self, message):
        if self._logger:
            self._logger(message)

    def _write_job_log(self, job, message):
        """Append to the job's log file; a failed write never fails the job"""
        try:
            write_log(job.log_path, message)
        except OSError as e:
            self._log(f'Job {job.id}: cannot write log {job.log_path}: {e}')

    # Submission API

    def submit(self, spec):
        """
        Queue a job and return immediately.

        If a slot is free the job is admitted and spawned before this
        returns, so its status is already RUNNING (or FAILED when the
        executable could not be started).

        Raises:
            QueueOverflow: If queue_capacity jobs are already waiting
            QueueClosed: If the queue has been shut down
        """
        job = Job(spec, output_buffer_bytes=self.output_buffer_bytes)
        if self.job_log_dir and not job.log_path:
            job.log_path = os.path.join(self.job_log_dir, f'{job.id}.log')

        with self._lock:
            if self._closed:
                raise QueueClosed('Job queue has been shut down')
            if (self.queue_capacity is not None
                    and self._running >= self.max_concurrent_jobs
                    and len(self._pending) >= self.queue_capacity):
                raise QueueOverflow(
                    f'Queue is full ({self.queue_capacity} jobs waiting)'
                )
            self._jobs[job.id] = job
            priority = spec.priority or 0
            heapq.heappush(self._pending, (-priority, next(self._sequence), job))

        self._log(f'Queued job {job.id}: {spec.label}')
        self._write_job_log(job, '=== JOB QUEUED ===')
        self._write_job_log(job, f'Job: {job.id}')
        self._write_job_log(job, f'Name: {spec.label}')

        self._admit_pending()
        return JobHandle(job.id, self)

    def status(self, handle):
        """
        Get the job for a handle.

        Raises:
            UnknownJob: If the handle is not known to this queue
        """
        job_id = _job_id(handle)
        with self._lock:
            job = self._jobs.get(job_id)
        if job is None:
            raise UnknownJob(job_id)
        return job

    def subscribe(self, handle):
        """
        Stream the job's progress events.

        Returns:
            iterator[ProgressEvent]: Finite, ends once the job is terminal
        """
        return self.status(handle).iter_events()

    def wait(self, handle, timeout=None):
        """Block until the job is terminal (or the timeout passes) and return it"""
        job = self.status(handle)
        job.wait(timeout=timeout)
        return job

    def cancel(self, handle):
        """
        Cancel a job without waiting for it to stop.

        A queued job is cancelled on the spot and never spawned. A running
        job is stopped gracefully, then killed after the grace period.

        Returns:
            bool: True if a cancellation was started by this call
        """
        job_id = _job_id(handle)
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise UnknownJob(job_id)

            if job.status == STATUS_QUEUED:
                self._pending = [entry for entry in self._pending if entry[2] is not job]
                heapq.heapify(self._pending)
                job.transition(STATUS_CANCELLED, 'Cancelled before start', FAILURE_CANCELLED)
                cancelled_queued = True
            else:
                cancelled_queued = False
                process = self._processes.get(job_id)
                if job.status == STATUS_RUNNING and process is None:
                    # Still spawning; _launch picks the request up
                    return job.request_termination(TERMINATE_CANCEL)

        if cancelled_queued:
            self._log(f'Cancelled queued job {job.id}')
            self._write_job_log(job, '=== CANCELLED ===')
            return True

        if job.is_finished or process is None:
            return False
        return self.watchdog.terminate(job, process, TERMINATE_CANCEL)

    def acknowledge(self, handle):
        """
        Discard a finished job's record.

        Returns:
            Job: The discarded job

        Raises:
            ValueError: If the job has not finished yet
        """
        job_id = _job_id(handle)
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise UnknownJob(job_id)
            if not job.is_finished:
                raise ValueError(f'Job {job_id} is still {job.status}')
            del self._jobs[job_id]
        return job

    def jobs(self):
        with self._lock:
            return list(self._jobs.values())

    def queued_count(self):
        with self._lock:
            return len(self._pending)

    def running_count(self):
        with self._lock:
            return self._running

    def shutdown(self, wait=True, timeout=None):
        """
        Stop accepting jobs, cancel queued ones and terminate running ones.

        Args:
            wait: Block until running jobs have finished
            timeout: Upper bound in seconds for each wait
        """
        with self._lock:
            self._closed = True
            queued = [entry[2] for entry in self._pending]
            self._pending = []
            for job in queued:
                job.transition(STATUS_CANCELLED, 'Queue shut down', FAILURE_CANCELLED)
            running = [
                (job, self._processes.get(job.id))
                for job in self._jobs.values()
                if job.status == STATUS_RUNNING
            ]

        if queued or running:
            self._log(f'Shutting down: {len(queued)} queued, {len(running)} running')

        for job, process in running:
            if process is not None:
                self.watchdog.terminate(job, process, TERMINATE_CANCEL)
            else:
                job.request_termination(TERMINATE_CANCEL)

        if not wait:
            return
        for job, _ in running:
            job.wait(timeout=timeout)

        # Kill checks still pending are discarded by watchdog.stop()
        with self._lock:
            stragglers = [
                (job, self._processes.get(job.id))
                for job, _ in running
                if not job.is_finished
            ]
        for job, process in stragglers:
            if process is not None:
                self._log(f'Job {job.id} still running at shutdown, killing')
                send_stop_signal(process, forceful=True)
        for job, _ in stragglers:
            job.wait(timeout=timeout)
        self.watchdog.stop()

    # Admission and supervision

    def _admit_pending(self):
        while True:
            with self._lock:
                if (self._closed or not self._pending
                        or self._running >= self.max_concurrent_jobs):
                    return
                _, _, job = heapq.heappop(self._pending)
                self._running += 1
                job.transition(STATUS_RUNNING)
            self._launch(job)

    def _launch(self, job):
        timeout = job.spec.timeout if job.spec.timeout is not None else self.default_timeout
        job.start_clock(timeout)
        self._write_job_log(job, '=== RUNNING ===')

        try:
            process = self.invoker.spawn(job)
        except SpawnError as e:
            self._log(f'Job {job.id} failed to start: {e}')
            self._finish(job, STATUS_FAILED, FAILURE_SPAWN_ERROR, str(e))
            return

        try:
            with self._lock:
                self._processes[job.id] = process
                stop_now = job.termination is not None
            self._log(f'Started job {job.id} (pid {process.pid})')

            self.watchdog.watch(job, process)
            if stop_now:
                self.watchdog.stop_process(job, process)

            threading.Thread(
                target=self._supervise, args=(job, process),
                name=f'job-{job.id}', daemon=True,
            ).start()
        except Exception as e:
            self._abandon(job, process, e)

    def _supervise(self, job, process):
        try:
            exit_code = self.invoker.supervise(job, process)
            job.exit_code = exit_code
            status, failure, reason = self.invoker.classify(job, exit_code)
            self._finish(job, status, failure, reason)
        except Exception as e:
            self._abandon(job, process, e)
        self._admit_pending()

    def _abandon(self, job, process, error):
        """Fail one job after an error in our own handling of it"""
        if job.is_finished:
            return
        self._log(f'Internal error while supervising job {job.id}: {error}')
        send_stop_signal(process, forceful=True)
        try:
            process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            pass
        job.exit_code = process.returncode
        self._finish(job, STATUS_FAILED, FAILURE_INTERNAL, f'Internal error: {error}')

    def _finish(self, job, status, failure, reason):
        # Waiters wake on the transition, so the slot and log come first
        with self._lock:
            self._processes.pop(job.id, None)
            self._running -= 1

        try:
            self._log(f'Job {job.id} {status}: {reason}')
            self._write_job_log(job, f'=== {status} ===')
            self._write_job_log(job, reason)
        finally:
            job.transition(status, reason, failure)
