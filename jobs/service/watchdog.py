"""
Cancellation and timeout enforcement.

A single monitor thread keeps a time-ordered schedule of checks for all
running jobs: deadline checks, and the forced-kill re-check that follows a
graceful stop signal after the grace period.
"""
import heapq
import itertools
import os
import signal
import threading
import time

from jobs.service.constants import TERMINATE_TIMEOUT

CHECK_DEADLINE = 'deadline'
CHECK_KILL = 'kill'


def send_stop_signal(process, forceful=False):
    """
    Signal a process and its children.

    Processes are started in their own session, so on POSIX the whole
    process group is signalled (yt-dlp runs ffmpeg as a child).

    Returns:
        bool: True if a signal was delivered
    """
    if process.poll() is not None:
        return False
    try:
        if os.name == 'posix':
            os.killpg(process.pid, signal.SIGKILL if forceful else signal.SIGTERM)
        elif forceful:
            process.kill()
        else:
            process.terminate()
    except ProcessLookupError:
        return False
    except PermissionError:
        if forceful:
            process.kill()
        else:
            process.terminate()
    return True


class Watchdog:
    """Deadline and two-phase termination scheduler shared by all jobs"""

    def __init__(self, grace_period=5.0, logger=None, clock=time.monotonic):
        self.grace_period = grace_period
        self._logger = logger
        self._clock = clock
        self._schedule = []
        self._sequence = itertools.count()
        self._condition = threading.Condition()
        self._thread = None
        self._stopped = False

    def _log(self, message):
        if self._logger:
            self._logger(message)

    def _ensure_thread(self):
        if self._thread is None:
            self._thread = threading.Thread(
                target=self._run, name='mediaexec-watchdog', daemon=True
            )
            self._thread.start()

    def _schedule_at(self, when, action, job, process):
        with self._condition:
            if self._stopped:
                return
            heapq.heappush(self._schedule, (when, next(self._sequence), action, job, process))
            self._ensure_thread()
            self._condition.notify()

    def watch(self, job, process):
        """Start enforcing the job's deadline, if it has one"""
        if job.deadline is not None:
            self._schedule_at(job.deadline, CHECK_DEADLINE, job, process)

    def terminate(self, job, process, kind):
        """
        Begin graceful-then-forceful termination of a running job.

        Only the first request for a job has any effect; it decides whether
        the job ends as CANCELLED or TIMED_OUT.

        Returns:
            bool: True if this call started the termination
        """
        if not job.request_termination(kind):
            return False
        self.stop_process(job, process)
        return True

    def stop_process(self, job, process):
        """Send the graceful stop signal now and schedule the forced kill"""
        self._log(f'Stopping job {job.id} ({job.termination}), pid {process.pid}')
        send_stop_signal(process)
        self._schedule_at(self._clock() + self.grace_period, CHECK_KILL, job, process)

    def pending(self):
        with self._condition:
            return len(self._schedule)

    def stop(self):
        with self._condition:
            self._stopped = True
            self._schedule.clear()
            self._condition.notify_all()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=2)

    def _run(self):
        while True:
            with self._condition:
                while not self._stopped:
                    if self._schedule:
                        delay = self._schedule[0][0] - self._clock()
                        if delay <= 0:
                            break
                        self._condition.wait(timeout=delay)
                    else:
                        self._condition.wait()
                if self._stopped:
                    return
                _, _, action, job, process = heapq.heappop(self._schedule)

            try:
                self._fire(action, job, process)
            except Exception as e:
                self._log(f'Watchdog check failed for job {job.id}: {e}')

    def _fire(self, action, job, process):
        if process.poll() is not None:
            return

        if action == CHECK_DEADLINE:
            if not job.is_finished:
                self._log(f'Job {job.id} exceeded its deadline')
                self.terminate(job, process, TERMINATE_TIMEOUT)
        elif action == CHECK_KILL:
            self._log(f'Job {job.id} still alive after {self.grace_period}s, killing')
            send_stop_signal(process, forceful=True)
