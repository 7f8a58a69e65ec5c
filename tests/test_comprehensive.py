"""
Comprehensive test suite for queuectl
Tests locking, concurrent reservation, job execution, workers and the CLI
Run with: pytest tests/test_comprehensive.py -v
"""
import json
import multiprocessing
import os
import threading
import time

import pytest
from click.testing import CliRunner

from queuectl.cli import cli
from queuectl.control import ControlChannel
from queuectl.exceptions import LockAcquisitionError
from queuectl.lock import FileLock
from queuectl.models import JobState
from queuectl.queue import QueueManager
from queuectl.workers import Worker, run_command, start_worker


@pytest.fixture
def home(tmp_path):
    """A fresh queue home directory"""
    return tmp_path / "queue"


@pytest.fixture
def queue_manager(home):
    return QueueManager(home)


@pytest.fixture
def fast_queue(queue_manager):
    """Queue tuned for quick worker loops"""
    queue_manager.config.set("poll_interval_ms", "50")
    queue_manager.config.set("backoff_base", "0.1")
    return queue_manager


@pytest.fixture
def worker(home, fast_queue):
    """A worker bound to the test queue, without signal handlers"""
    return Worker("test-worker", home=home, handle_signals=False)


def wait_for(predicate, timeout=15.0, interval=0.05):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return False


def _reserve_in_process(home, worker_id, start_event, results):
    queue = QueueManager(home)
    start_event.wait()
    job = queue.reserve(worker_id)
    results.put((worker_id, job.id if job else None))


class TestLock:
    """Test the filesystem lock"""

    def test_exclusive(self, tmp_path):
        """Test a held lock blocks a second holder until the retry budget runs out"""
        path = tmp_path / ".queue.lock"
        holder = FileLock(path)
        contender = FileLock(path, retry_interval=0.01, max_retries=3)

        with holder:
            assert path.exists()
            with pytest.raises(LockAcquisitionError):
                contender.acquire()
            assert not contender.is_held

        with contender:
            assert contender.is_held
        assert not path.exists()

    def test_mutual_exclusion_under_contention(self, tmp_path):
        """Test concurrent read-modify-write cycles never interleave"""
        path = tmp_path / ".queue.lock"
        counter = tmp_path / "counter"
        counter.write_text("0")

        def bump():
            lock = FileLock(path, retry_interval=0.001, max_retries=100000)
            for _ in range(25):
                with lock:
                    value = int(counter.read_text())
                    counter.write_text(str(value + 1))

        threads = [threading.Thread(target=bump) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert int(counter.read_text()) == 150

    def test_stale_lock_is_reclaimed(self, tmp_path, caplog):
        """Test a sentinel left behind by a crashed owner is removed"""
        path = tmp_path / ".queue.lock"
        path.write_text("crashed-owner")
        old = time.time() - 60
        os.utime(path, (old, old))

        lock = FileLock(path, stale_after=15, retry_interval=0.01, max_retries=1)
        with lock:
            assert path.read_text() != "crashed-owner"

        assert not path.exists()
        assert "stale lock" in caplog.text

    def test_blocked_acquirer_proceeds_once_lock_goes_stale(self, tmp_path):
        """Test liveness after an owner crashes while holding the lock"""
        path = tmp_path / ".queue.lock"
        FileLock(path).acquire()  # never released

        lock = FileLock(path, stale_after=0.3, retry_interval=0.05, max_retries=100)
        start = time.monotonic()
        with lock:
            waited = time.monotonic() - start
        assert 0.2 < waited < 5

    def test_release_tolerates_missing_sentinel(self, tmp_path, caplog):
        """Test a vanished sentinel is logged, not raised"""
        path = tmp_path / ".queue.lock"
        lock = FileLock(path)
        lock.acquire()
        path.unlink()

        lock.release()

        assert not lock.is_held
        assert "already gone" in caplog.text

    def test_release_keeps_foreign_sentinel(self, tmp_path):
        """Test a holder whose lock was reclaimed does not delete the new owner's"""
        path = tmp_path / ".queue.lock"
        lock = FileLock(path)
        lock.acquire()
        path.write_text("someone-else")

        lock.release()

        assert path.read_text() == "someone-else"


class TestConcurrency:
    """Test concurrent access and race condition prevention"""

    def test_single_job_reserved_by_exactly_one_process(self, home, queue_manager):
        """Test that racing worker processes never share a job"""
        job = queue_manager.enqueue("echo test")

        ctx = multiprocessing.get_context()
        start_event = ctx.Event()
        results = ctx.Queue()
        processes = [
            ctx.Process(target=_reserve_in_process, args=(str(home), f"worker-{i}", start_event, results))
            for i in range(6)
        ]
        for p in processes:
            p.start()
        start_event.set()
        outcomes = [results.get(timeout=30) for _ in processes]
        for p in processes:
            p.join(timeout=30)

        winners = [worker_id for worker_id, job_id in outcomes if job_id is not None]
        assert len(winners) == 1
        assert all(job_id in (None, job.id) for _, job_id in outcomes)

        stored = queue_manager.get_job(job.id)
        assert stored.state == JobState.PROCESSING.value
        assert stored.locked_by == winners[0]

    def test_concurrent_reservation_threads(self, home, queue_manager):
        """Test each job goes to exactly one of many concurrent reservers"""
        ids = {queue_manager.enqueue(f"echo {i}").id for i in range(10)}
        claimed = []

        def claim(worker_id):
            queue = QueueManager(home)
            while True:
                job = queue.reserve(worker_id)
                if job is None:
                    return
                claimed.append(job.id)

        threads = [threading.Thread(target=claim, args=(f"worker-{i}",)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(claimed) == sorted(ids)

    def test_concurrent_enqueue(self, home, queue_manager):
        """Test that concurrent enqueues are all kept"""
        def enqueue_job(i):
            QueueManager(home).enqueue(f"echo {i}")

        threads = [threading.Thread(target=enqueue_job, args=(i,)) for i in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(queue_manager.list_jobs()) == 10


class TestJobExecution:
    """Test running commands"""

    def test_success_captures_output(self, tmp_path):
        """Test stdout and stderr are logged together"""
        log = tmp_path / "logs" / "job.log"
        result = run_command("echo out; echo err 1>&2", 5, log)

        assert result.succeeded
        assert result.returncode == 0
        assert result.stdout == "out\n"
        assert log.read_text() == "out\nerr\n"

    def test_non_zero_exit(self, tmp_path):
        """Test a failing command reports its exit code and stderr"""
        result = run_command("echo boom 1>&2; exit 3", 5, tmp_path / "job.log")

        assert not result.succeeded
        assert result.returncode == 3
        assert result.error_message(5) == "Exit code 3: boom"

    def test_missing_command(self, tmp_path):
        """Test an unknown program is a failure, not an exception"""
        result = run_command("nonexistent_command_xyz", 5, tmp_path / "job.log")

        assert not result.succeeded
        assert result.returncode == 127
        assert "not found" in result.error_message(5).lower()

    def test_timeout_terminates_child(self, tmp_path):
        """Test a long command is stopped at the timeout and its output kept"""
        log = tmp_path / "job.log"
        start = time.monotonic()
        result = run_command("echo started; sleep 10", 0.5, log)
        elapsed = time.monotonic() - start

        assert result.timed_out
        assert not result.succeeded
        assert 0.4 < elapsed < 5
        assert result.error_message(0.5) == "Command timed out after 0.5s"
        assert log.read_text() == "started\n"

    def test_heartbeat_called_while_running(self, tmp_path):
        """Test the lease is refreshed during long executions"""
        beats = []
        result = run_command("sleep 0.6", 5, tmp_path / "job.log",
                             heartbeat=lambda: beats.append(time.monotonic()),
                             heartbeat_interval=0.1)

        assert result.succeeded
        assert len(beats) >= 2


class TestWorker:
    """Test the worker loop"""

    def test_successful_job(self, worker, fast_queue):
        """Test executing a successful job"""
        job = fast_queue.enqueue("echo success")

        assert worker.run_once() is True

        stored = fast_queue.get_job(job.id)
        assert stored.state == JobState.COMPLETED.value
        assert stored.output == "success\n"
        assert stored.elapsed_sec is not None
        assert stored.locked_by is None
        assert fast_queue.read_log(job.id) == "success\n"

    def test_idle_when_queue_empty(self, worker):
        """Test that an empty queue yields no work"""
        assert worker.run_once() is False

    def test_failed_job_is_retried(self, worker, fast_queue):
        """Test a failure schedules a retry"""
        job = fast_queue.enqueue("exit 1", max_retries=1)

        worker.run_once()

        stored = fast_queue.get_job(job.id)
        assert stored.state == JobState.PENDING.value
        assert stored.attempts == 1
        assert stored.last_error == "Exit code 1"

    def test_job_without_retries_goes_to_dlq(self, worker, fast_queue):
        """Test an invalid command with no retries moves to the DLQ"""
        job = fast_queue.enqueue("nonexistent_command_xyz", max_retries=0)

        worker.run_once()

        stored = fast_queue.get_job(job.id)
        assert stored.state == JobState.DEAD.value
        assert [entry.id for entry in fast_queue.list_dlq()] == [job.id]

    def test_timeout_feeds_retry_path(self, worker, fast_queue):
        """Test a timed-out job is treated as a failed attempt"""
        fast_queue.config.set("job_timeout_ms", "500")
        job = fast_queue.enqueue("sleep 10", max_retries=2)

        start = time.monotonic()
        worker.run_once()
        assert time.monotonic() - start < 5

        stored = fast_queue.get_job(job.id)
        assert stored.state == JobState.PENDING.value
        assert stored.attempts == 1
        assert "timed out" in stored.last_error

    def test_stop_flag_prevents_new_work(self, worker, fast_queue):
        """Test a worker exits on the stop flag without taking jobs"""
        job = fast_queue.enqueue("echo never")
        ControlChannel(fast_queue.paths.control_dir).request_stop()

        worker.start()

        assert not worker.running
        assert fast_queue.get_job(job.id).state == JobState.PENDING.value

    def test_worker_stops_on_request(self, worker):
        """Test that worker can be stopped gracefully"""
        thread = threading.Thread(target=worker.start)
        thread.start()

        time.sleep(0.3)
        worker.stop()

        thread.join(timeout=5)
        assert not thread.is_alive(), "Worker didn't stop gracefully"

    def test_retry_until_dead(self, worker, fast_queue):
        """Test complete workflow: enqueue -> retry with backoff -> DLQ"""
        job = fast_queue.enqueue("exit 1", max_retries=2)
        thread = threading.Thread(target=worker.start)
        thread.start()
        try:
            assert wait_for(lambda: fast_queue.get_job(job.id).state == JobState.DEAD.value)
        finally:
            worker.stop()
            thread.join(timeout=5)

        stored = fast_queue.get_job(job.id)
        assert stored.attempts == 3
        assert [entry.id for entry in fast_queue.list_dlq()] == [job.id]


    def test_huge_backoff_base_keeps_workers_alive(self, home, worker, fast_queue):
        """Test backoff_base=1e12 neither kills the worker nor strands jobs"""
        fast_queue.config.set("backoff_base", "1e12")
        fast_queue.config.set("lease_timeout_ms", "100")
        failing = fast_queue.enqueue("exit 1", max_retries=3)

        assert worker.run_once() is True
        stored = fast_queue.get_job(failing.id)
        assert stored.state == JobState.PENDING.value
        assert stored.attempts == 1

        # A job orphaned by a crashed worker goes through lease reclaim
        orphan = fast_queue.enqueue("sleep 60")
        assert fast_queue.reserve("crashed-worker").id == orphan.id
        time.sleep(0.2)

        other = Worker("second-worker", home=home, handle_signals=False)
        assert other.run_once() is False

        stored = fast_queue.get_job(orphan.id)
        assert stored.state == JobState.PENDING.value
        assert "Lease expired" in stored.last_error


class TestEndToEnd:
    """End-to-end test with real worker processes"""

    def test_corrupted_store_ends_worker_process(self, home, fast_queue):
        """Test an unreadable store is fatal and left untouched"""
        garbage = "{not json"
        fast_queue.paths.jobs_file.write_text(garbage)

        ctx = multiprocessing.get_context()
        p = ctx.Process(target=start_worker, args=("worker-corrupt", str(home)), name="worker-corrupt")
        p.start()
        p.join(timeout=30)

        assert p.exitcode is not None
        assert p.exitcode != 0
        assert fast_queue.paths.jobs_file.read_text() == garbage
        assert not fast_queue.paths.lock_file.exists()

    def test_worker_pool_runs_each_job_once(self, home, fast_queue, tmp_path):
        """Test several worker processes drain the queue without duplicates"""
        out = tmp_path / "out.txt"
        ids = [fast_queue.enqueue(f"echo {i} >> '{out}'").id for i in range(12)]

        ctx = multiprocessing.get_context()
        processes = [
            ctx.Process(target=start_worker, args=(f"worker-{i}", str(home)), name=f"worker-{i}")
            for i in range(3)
        ]
        for p in processes:
            p.start()
        try:
            assert wait_for(
                lambda: fast_queue.get_status()["jobs"]["completed"] == len(ids), timeout=30
            )
        finally:
            ControlChannel(fast_queue.paths.control_dir).request_stop()
            for p in processes:
                p.join(timeout=15)

        assert all(p.exitcode == 0 for p in processes)
        assert sorted(int(line) for line in out.read_text().split()) == list(range(12))


class TestCLI:
    """Test the command-line interface"""

    @pytest.fixture
    def runner(self):
        return CliRunner()

    def invoke(self, runner, home, *args):
        return runner.invoke(cli, ["--home", str(home), *args], obj={})

    def test_enqueue_and_list(self, runner, home):
        """Test enqueue prints the job id and list shows it"""
        result = self.invoke(runner, home, "enqueue", "--max-retries", "4", "echo", "hello")
        assert result.exit_code == 0
        job_id = result.output.strip()
        assert job_id.startswith("job-")

        result = self.invoke(runner, home, "list", "--format", "json")
        jobs = json.loads(result.output)
        assert [(j["id"], j["command"], j["max_retries"]) for j in jobs] == [(job_id, "echo hello", 4)]

        result = self.invoke(runner, home, "list", "--state", "pending")
        assert job_id in result.output

    def test_status(self, runner, home):
        """Test status shows counts per state"""
        self.invoke(runner, home, "enqueue", "true")

        result = self.invoke(runner, home, "status")
        assert result.exit_code == 0
        assert "Total Jobs: 1" in result.output
        assert "Pending" in result.output

    def test_config_set_and_get(self, runner, home):
        """Test config updates are persisted and unknown keys rejected"""
        result = self.invoke(runner, home, "config", "set", "max_retries", "5")
        assert result.exit_code == 0
        assert self.invoke(runner, home, "config", "get", "max_retries").output.strip() == "max_retries: 5"

        result = self.invoke(runner, home, "config", "set", "nope", "1")
        assert result.exit_code == 1
        assert "Unknown config key" in result.output

    def test_config_set_non_numeric(self, runner, home):
        """Test a non-numeric value is stored as the literal string"""
        result = self.invoke(runner, home, "config", "set", "backoff_base", "abc")
        assert result.exit_code == 0

        stored = json.loads((home / "config.json").read_text())
        assert stored["backoff_base"] == "abc"

    def test_dlq_commands(self, runner, home):
        """Test listing and retrying DLQ entries"""
        queue = QueueManager(home)
        job = queue.enqueue("exit 1", max_retries=0)
        queue.reserve("worker-1")
        queue.fail_or_retry(job.id, "Exit code 1", "worker-1")

        result = self.invoke(runner, home, "dlq", "list", "--json")
        entries = json.loads(result.output)
        assert [e["id"] for e in entries] == [job.id]
        assert entries[0]["last_error"] == "Exit code 1"

        result = self.invoke(runner, home, "dlq", "retry", job.id)
        assert result.exit_code == 0
        assert queue.get_job(job.id).state == JobState.PENDING.value

        result = self.invoke(runner, home, "dlq", "retry", job.id)
        assert result.exit_code == 1
        assert "not in DLQ" in result.output

    def test_worker_stop_writes_flag(self, runner, home):
        """Test worker stop raises the control flag"""
        result = self.invoke(runner, home, "worker", "stop")

        assert result.exit_code == 0
        assert ControlChannel(home / "control").stop_requested()

    def test_logs(self, runner, home):
        """Test the per-job log is printed"""
        queue = QueueManager(home)
        job = queue.enqueue("echo logged")
        Worker("cli-worker", home=home, handle_signals=False).run_once()

        result = self.invoke(runner, home, "logs", job.id)
        assert result.exit_code == 0
        assert result.output == "logged\n"

        assert self.invoke(runner, home, "logs", "job-missing").exit_code == 1
