"""
Tests for service/job_queue.py

These run real child processes (the current Python interpreter), so they
cover admission, termination and output capture end to end.
"""
import os
import sys
import tempfile
import time
import unittest
from unittest.mock import patch

from django.test import TestCase

from jobs.service.constants import (
    EVENT_ERROR,
    EVENT_PERCENT,
    FAILURE_CANCELLED,
    FAILURE_INTERNAL,
    FAILURE_RUNTIME,
    FAILURE_SPAWN_ERROR,
    FAILURE_TIMEOUT,
    STATUS_CANCELLED,
    STATUS_FAILED,
    STATUS_QUEUED,
    STATUS_RUNNING,
    STATUS_SUCCEEDED,
    STATUS_TIMED_OUT,
)
from jobs.service.job import JobSpec
from jobs.service.job_queue import JobQueue, QueueClosed, QueueOverflow, UnknownJob
from jobs.test_service.helpers import process_gone, python_spec, sleep_spec, wait_until

GRACE = 0.5

IGNORE_SIGTERM = (
    "import signal, time\n"
    "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
    "print('ready', flush=True)\n"
    "time.sleep(30)\n"
)


class JobQueueTestCase(TestCase):

    def make_queue(self, **kwargs):
        kwargs.setdefault('grace_period', GRACE)
        job_queue = JobQueue(**kwargs)
        self.addCleanup(job_queue.shutdown, timeout=10)
        return job_queue


class AdmissionTest(JobQueueTestCase):
    """Tests for the concurrency limit and queue order"""

    def test_runs_immediately_under_limit(self):
        job_queue = self.make_queue(max_concurrent_jobs=2)
        handle = job_queue.submit(sleep_spec(5))

        job = handle.status()
        self.assertEqual(job.status, STATUS_RUNNING)
        self.assertIsNotNone(job.pid)
        self.assertIsNotNone(job.started_at)

    def test_excess_jobs_wait_in_queue(self):
        job_queue = self.make_queue(max_concurrent_jobs=2)
        handles = [job_queue.submit(sleep_spec(5)) for _ in range(7)]

        statuses = [h.status().status for h in handles]
        self.assertEqual(statuses.count(STATUS_RUNNING), 2)
        self.assertEqual(statuses.count(STATUS_QUEUED), 5)
        self.assertEqual(job_queue.running_count(), 2)
        self.assertEqual(job_queue.queued_count(), 5)

    def test_next_job_admitted_after_completion(self):
        job_queue = self.make_queue(max_concurrent_jobs=1)
        first = job_queue.submit(sleep_spec(0.3))
        second = job_queue.submit(python_spec('pass'))

        self.assertEqual(second.status().status, STATUS_QUEUED)
        self.assertEqual(first.wait(timeout=10).status, STATUS_SUCCEEDED)
        self.assertEqual(second.wait(timeout=10).status, STATUS_SUCCEEDED)
        self.assertLessEqual(first.status().ended_at, second.status().started_at)

    def test_running_count_never_exceeds_limit(self):
        job_queue = self.make_queue(max_concurrent_jobs=2)
        handles = [job_queue.submit(sleep_spec(0.2)) for _ in range(6)]

        observed = []
        while not all(h.status().is_finished for h in handles):
            observed.append(job_queue.running_count())
            time.sleep(0.01)

        self.assertLessEqual(max(observed), 2)
        self.assertTrue(all(h.status().status == STATUS_SUCCEEDED for h in handles))

    def test_higher_priority_admitted_first(self):
        job_queue = self.make_queue(max_concurrent_jobs=1)
        blocker = job_queue.submit(sleep_spec(0.3))
        low = job_queue.submit(python_spec('pass', priority=1, name='low'))
        high = job_queue.submit(python_spec('pass', priority=10, name='high'))
        default = job_queue.submit(python_spec('pass', name='default'))

        for handle in (blocker, low, high, default):
            handle.wait(timeout=10)

        order = sorted((low, high, default), key=lambda h: h.status().started_at)
        self.assertEqual([h.status().spec.name for h in order], ['high', 'low', 'default'])

    def test_equal_priority_is_fifo(self):
        job_queue = self.make_queue(max_concurrent_jobs=1)
        job_queue.submit(sleep_spec(0.2))
        handles = [job_queue.submit(python_spec('pass', name=str(i))) for i in range(4)]

        for handle in handles:
            handle.wait(timeout=10)

        order = sorted(handles, key=lambda h: h.status().started_at)
        self.assertEqual([h.status().spec.name for h in order], ['0', '1', '2', '3'])

    def test_queue_capacity(self):
        job_queue = self.make_queue(max_concurrent_jobs=1, queue_capacity=1)
        job_queue.submit(sleep_spec(5))
        job_queue.submit(sleep_spec(5))

        with self.assertRaises(QueueOverflow):
            job_queue.submit(sleep_spec(5))
        self.assertEqual(job_queue.queued_count(), 1)

    def test_submit_after_shutdown(self):
        job_queue = self.make_queue()
        job_queue.shutdown()
        with self.assertRaises(QueueClosed):
            job_queue.submit(python_spec('pass'))


class CancelTest(JobQueueTestCase):
    """Tests for cancelling queued and running jobs"""

    def test_cancel_queued_job_never_spawns(self):
        job_queue = self.make_queue(max_concurrent_jobs=1)
        blocker = job_queue.submit(sleep_spec(0.3))
        queued = job_queue.submit(python_spec('pass'))

        with patch.object(job_queue.invoker, 'spawn', wraps=job_queue.invoker.spawn) as mock_spawn:
            self.assertTrue(queued.cancel())
            blocker.wait(timeout=10)
            time.sleep(0.1)

        job = queued.status()
        self.assertEqual(job.status, STATUS_CANCELLED)
        self.assertEqual(job.failure, FAILURE_CANCELLED)
        self.assertIsNone(job.started_at)
        self.assertIsNone(job.pid)
        mock_spawn.assert_not_called()
        self.assertEqual(job_queue.queued_count(), 0)

    def test_cancel_running_job(self):
        job_queue = self.make_queue()
        handle = job_queue.submit(sleep_spec(30))
        pid = handle.status().pid

        self.assertTrue(handle.cancel())
        job = handle.wait(timeout=10)

        self.assertEqual(job.status, STATUS_CANCELLED)
        self.assertEqual(job.failure, FAILURE_CANCELLED)
        self.assertTrue(process_gone(pid))

    def test_cancel_finished_job_is_noop(self):
        job_queue = self.make_queue()
        handle = job_queue.submit(python_spec('pass'))
        handle.wait(timeout=10)

        self.assertFalse(handle.cancel())
        self.assertEqual(handle.status().status, STATUS_SUCCEEDED)

    def test_cancel_twice(self):
        job_queue = self.make_queue()
        handle = job_queue.submit(sleep_spec(30))

        self.assertTrue(handle.cancel())
        self.assertFalse(handle.cancel())
        self.assertEqual(handle.wait(timeout=10).status, STATUS_CANCELLED)

    def test_cancel_unknown_job(self):
        job_queue = self.make_queue()
        with self.assertRaises(UnknownJob):
            job_queue.cancel('no-such-job')


class TimeoutTest(JobQueueTestCase):
    """Tests for deadline enforcement"""

    def test_timeout_stops_job(self):
        job_queue = self.make_queue()
        started = time.monotonic()
        handle = job_queue.submit(sleep_spec(10, timeout=1))
        pid = handle.status().pid

        job = handle.wait(timeout=10)
        elapsed = time.monotonic() - started

        self.assertEqual(job.status, STATUS_TIMED_OUT)
        self.assertEqual(job.failure, FAILURE_TIMEOUT)
        self.assertEqual(job.reason, 'Timed out after 1s')
        self.assertLess(elapsed, 1 + GRACE + 2)
        self.assertTrue(process_gone(pid))

    def test_default_timeout_applies(self):
        job_queue = self.make_queue(default_timeout=0.5)
        job = job_queue.submit(sleep_spec(10)).wait(timeout=10)
        self.assertEqual(job.status, STATUS_TIMED_OUT)

    def test_zero_timeout_overrides_default(self):
        job_queue = self.make_queue(default_timeout=0.2)
        job = job_queue.submit(sleep_spec(0.5, timeout=0)).wait(timeout=10)
        self.assertEqual(job.status, STATUS_SUCCEEDED)
        self.assertIsNone(job.deadline)

    @unittest.skipUnless(os.name == 'posix', 'signals are POSIX only')
    def test_process_ignoring_sigterm_is_killed(self):
        job_queue = self.make_queue()
        handle = job_queue.submit(python_spec(IGNORE_SIGTERM, timeout=30))
        self.assertTrue(wait_until(lambda: 'ready' in handle.status().output.lines()))

        started = time.monotonic()
        handle.cancel()
        job = handle.wait(timeout=10)

        self.assertEqual(job.status, STATUS_CANCELLED)
        self.assertEqual(job.exit_code, -9)
        self.assertGreaterEqual(time.monotonic() - started, GRACE * 0.9)


class OutcomeTest(JobQueueTestCase):
    """Tests for terminal status classification of real runs"""

    def test_success(self):
        job_queue = self.make_queue()
        job = job_queue.submit(python_spec("print('hello')")).wait(timeout=10)

        self.assertEqual(job.status, STATUS_SUCCEEDED)
        self.assertEqual(job.exit_code, 0)
        self.assertIsNone(job.failure)
        self.assertEqual(job.output.lines(), ['hello'])

    def test_missing_executable_fails_synchronously(self):
        job_queue = self.make_queue()
        handle = job_queue.submit(JobSpec('/nonexistent/bin/yt-dlp', ['--version']))

        job = handle.status()
        self.assertEqual(job.status, STATUS_FAILED)
        self.assertEqual(job.failure, FAILURE_SPAWN_ERROR)
        self.assertIn('/nonexistent/bin/yt-dlp', job.reason)
        self.assertEqual(job_queue.running_count(), 0)

    def test_spawn_error_frees_slot(self):
        job_queue = self.make_queue(max_concurrent_jobs=1)
        job_queue.submit(JobSpec('/nonexistent/bin/ffmpeg'))
        job = job_queue.submit(python_spec('pass')).wait(timeout=10)
        self.assertEqual(job.status, STATUS_SUCCEEDED)

    def test_bad_working_directory(self):
        job_queue = self.make_queue()
        job = job_queue.submit(python_spec('pass', cwd='/nonexistent/dir')).status()
        self.assertEqual(job.failure, FAILURE_SPAWN_ERROR)

    def test_nonzero_exit_includes_stderr(self):
        job_queue = self.make_queue()
        code = "import sys; sys.stderr.write('disk full\\n'); sys.exit(3)"
        job = job_queue.submit(python_spec(code)).wait(timeout=10)

        self.assertEqual(job.status, STATUS_FAILED)
        self.assertEqual(job.failure, FAILURE_RUNTIME)
        self.assertEqual(job.exit_code, 3)
        self.assertIn('exited with code 3', job.reason)
        self.assertIn('disk full', job.reason)

    def test_fatal_marker_fails_zero_exit(self):
        job_queue = self.make_queue()
        code = "print('ERROR: [generic] Unable to download webpage')"
        job = job_queue.submit(python_spec(code)).wait(timeout=10)

        self.assertEqual(job.exit_code, 0)
        self.assertEqual(job.status, STATUS_FAILED)
        self.assertIn('Unable to download webpage', job.reason)
        self.assertEqual(job.events[-1].kind, EVENT_ERROR)

    def test_progress_events_in_order(self):
        job_queue = self.make_queue()
        code = (
            "for p in (5, 40, 40, 80, 100):\n"
            "    print(f'[download] {p:5.1f}% of 3.00MiB', flush=True)\n"
        )
        handle = job_queue.submit(python_spec(code))

        percents = [e.payload for e in handle.subscribe() if e.kind == EVENT_PERCENT]
        self.assertEqual(percents, [5.0, 40.0, 80.0, 100.0])
        self.assertEqual(handle.status().status, STATUS_SUCCEEDED)

    def test_output_buffer_is_bounded(self):
        job_queue = self.make_queue(output_buffer_bytes=1024)
        code = "for i in range(2000): print(f'line {i:05d}')"
        job = job_queue.submit(python_spec(code)).wait(timeout=10)

        self.assertEqual(job.status, STATUS_SUCCEEDED)
        self.assertLessEqual(job.output.size, 1024)
        self.assertEqual(job.output.lines()[-1], 'line 01999')
        self.assertGreater(job.output.dropped_bytes, 0)

    def test_environment_and_cwd(self):
        job_queue = self.make_queue()
        with tempfile.TemporaryDirectory() as temp_dir:
            code = "import os; print(os.environ['JOB_MARKER'], os.path.basename(os.getcwd()))"
            spec = python_spec(code, cwd=temp_dir, env={'JOB_MARKER': 'marker'})
            job = job_queue.submit(spec).wait(timeout=10)

        self.assertEqual(job.output.lines(), [f'marker {os.path.basename(temp_dir)}'])

    def test_arguments_reach_process_literally(self):
        job_queue = self.make_queue()
        argument = '"; echo pwned; `id` $HOME'
        spec = JobSpec(sys.executable, ['-c', 'import sys; print(sys.argv[1])', argument])
        job = job_queue.submit(spec).wait(timeout=10)
        self.assertEqual(job.output.lines(), [argument])

    def test_internal_error_fails_only_that_job(self):
        job_queue = self.make_queue(max_concurrent_jobs=1)
        with patch.object(job_queue.invoker, 'classify', side_effect=RuntimeError('parser bug')):
            broken = job_queue.submit(python_spec('pass')).wait(timeout=10)

        self.assertEqual(broken.status, STATUS_FAILED)
        self.assertEqual(broken.failure, FAILURE_INTERNAL)
        self.assertIn('parser bug', broken.reason)

        healthy = job_queue.submit(python_spec('pass')).wait(timeout=10)
        self.assertEqual(healthy.status, STATUS_SUCCEEDED)
        self.assertEqual(job_queue.running_count(), 0)

    def test_job_log_file(self):
        with tempfile.TemporaryDirectory() as log_dir:
            job_queue = self.make_queue(job_log_dir=log_dir)
            job = job_queue.submit(python_spec("print('logged line')")).wait(timeout=10)

            self.assertEqual(job.log_path, os.path.join(log_dir, f'{job.id}.log'))
            with open(job.log_path) as f:
                content = f.read()

        self.assertIn('=== JOB QUEUED ===', content)
        self.assertIn('[stdout] logged line', content)
        self.assertIn('=== SUCCEEDED ===', content)

    def test_unwritable_log_path_does_not_fail_job(self):
        messages = []
        job_queue = self.make_queue(logger=messages.append)
        spec = python_spec("print('still runs')", log_path='/dev/null/sub/job.log')

        handle = job_queue.submit(spec)
        job = handle.wait(timeout=10)

        self.assertEqual(job.status, STATUS_SUCCEEDED)
        self.assertEqual(job.output.lines(), ['still runs'])
        self.assertTrue(any('cannot write log' in m for m in messages))

    def test_unwritable_log_dir_keeps_queue_moving(self):
        """Jobs admitted from a supervisor thread also finish"""
        job_queue = self.make_queue(max_concurrent_jobs=1, job_log_dir='/dev/null/logs')
        handles = [job_queue.submit(python_spec('pass')) for _ in range(3)]

        statuses = [h.wait(timeout=10).status for h in handles]

        self.assertEqual(statuses, [STATUS_SUCCEEDED] * 3)
        self.assertEqual(job_queue.running_count(), 0)
        self.assertEqual(job_queue.queued_count(), 0)


class RecordTest(JobQueueTestCase):
    """Tests for job record retention"""

    def test_finished_job_kept_until_acknowledged(self):
        job_queue = self.make_queue()
        handle = job_queue.submit(python_spec('pass'))
        handle.wait(timeout=10)

        self.assertEqual(handle.status().status, STATUS_SUCCEEDED)
        job = handle.acknowledge()
        self.assertEqual(job.status, STATUS_SUCCEEDED)

        with self.assertRaises(UnknownJob):
            handle.status()

    def test_acknowledge_running_job_rejected(self):
        job_queue = self.make_queue()
        handle = job_queue.submit(sleep_spec(5))
        with self.assertRaises(ValueError):
            handle.acknowledge()

    def test_status_accepts_job_id(self):
        job_queue = self.make_queue()
        handle = job_queue.submit(python_spec('pass'))
        self.assertIs(job_queue.status(handle.id), handle.status())

    def test_unknown_handle(self):
        job_queue = self.make_queue()
        with self.assertRaises(UnknownJob):
            job_queue.status('missing')


class ShutdownTest(JobQueueTestCase):

    def test_shutdown_cancels_everything(self):
        job_queue = self.make_queue(max_concurrent_jobs=1)
        running = job_queue.submit(sleep_spec(30))
        queued = job_queue.submit(sleep_spec(30))

        job_queue.shutdown(timeout=10)

        self.assertEqual(running.status().status, STATUS_CANCELLED)
        self.assertEqual(queued.status().status, STATUS_CANCELLED)
        self.assertEqual(queued.status().reason, 'Queue shut down')
        self.assertEqual(job_queue.running_count(), 0)
        self.assertEqual(
            {job.status for job in job_queue.jobs()}, {STATUS_CANCELLED}
        )

    @unittest.skipUnless(os.name == 'posix', 'signals are POSIX only')
    def test_short_shutdown_wait_still_kills_stubborn_process(self):
        job_queue = self.make_queue(grace_period=2)
        handle = job_queue.submit(python_spec(IGNORE_SIGTERM))
        self.assertTrue(wait_until(lambda: 'ready' in handle.status().output.lines()))
        pid = handle.status().pid

        job_queue.shutdown(timeout=0.5)
        job = handle.wait(timeout=10)

        self.assertEqual(job.status, STATUS_CANCELLED)
        self.assertEqual(job.exit_code, -9)
        self.assertTrue(process_gone(pid))
