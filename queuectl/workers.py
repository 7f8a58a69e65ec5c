"""
Worker process for executing jobs with exponential backoff retry logic
"""
import logging
import os
import signal
import subprocess
import threading
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from .control import ControlChannel
from .exceptions import LockAcquisitionError
from .log import configure_logging
from .models import Job, JobState
from .queue import QueueManager
from .transitions import backoff_delay

logger = logging.getLogger(__name__)

TERMINATE_GRACE_SEC = 5.0


@dataclass
class ExecutionResult:
    """Outcome of one run of a job's command"""
    returncode: Optional[int]
    stdout: str
    stderr: str
    elapsed_sec: float
    timed_out: bool = False
    spawn_error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.spawn_error is None and not self.timed_out and self.returncode == 0

    def error_message(self, timeout_sec: float) -> str:
        if self.spawn_error is not None:
            return self.spawn_error
        if self.timed_out:
            return f"Command timed out after {timeout_sec:g}s"
        message = f"Exit code {self.returncode}"
        if self.stderr.strip():
            message += f": {self.stderr.strip()}"
        return message


def _signal_group(proc: subprocess.Popen, sig: int):
    """Signal the child's whole process group so shell descendants stop too"""
    try:
        if hasattr(os, "killpg"):
            os.killpg(proc.pid, sig)
        else:
            proc.send_signal(sig)
    except ProcessLookupError:
        pass


def _terminate(proc: subprocess.Popen):
    _signal_group(proc, signal.SIGTERM)
    try:
        return proc.communicate(timeout=TERMINATE_GRACE_SEC)
    except subprocess.TimeoutExpired:
        _signal_group(proc, getattr(signal, "SIGKILL", signal.SIGTERM))
        return proc.communicate()


def _write_log(log_path: Path, stdout: str, stderr: str):
    log_path.parent.mkdir(parents=True, exist_ok=True)
    log_path.write_text((stdout or "") + (stderr or ""), encoding="utf-8")


def run_command(
    command: str,
    timeout_sec: float,
    log_path,
    heartbeat: Optional[Callable[[], None]] = None,
    heartbeat_interval: float = 5.0,
) -> ExecutionResult:
    """
    Run a shell command with a wall-clock timeout.

    The child runs in its own session. On timeout its process group gets
    SIGTERM, then SIGKILL after a grace period. Combined stdout and stderr
    are written to `log_path` on every exit path.

    Args:
        command: Shell command line
        timeout_sec: Wall-clock limit
        log_path: Per-job log file, overwritten each attempt
        heartbeat: Called periodically while the command runs
        heartbeat_interval: Seconds between heartbeat calls
    """
    log_path = Path(log_path)
    start = time.monotonic()
    stdout, stderr = "", ""

    try:
        proc = subprocess.Popen(
            command,
            shell=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            errors="replace",
            start_new_session=True,
        )
    except OSError as e:
        stderr = f"Failed to start command: {e}"
        _write_log(log_path, stdout, stderr)
        return ExecutionResult(None, stdout, stderr, round(time.monotonic() - start, 2), spawn_error=stderr)

    timed_out = False
    try:
        deadline = start + timeout_sec
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                timed_out = True
                stdout, stderr = _terminate(proc)
                break
            try:
                stdout, stderr = proc.communicate(timeout=min(remaining, heartbeat_interval))
                break
            except subprocess.TimeoutExpired:
                if heartbeat is not None:
                    heartbeat()
    finally:
        if proc.poll() is None:
            _signal_group(proc, getattr(signal, "SIGKILL", signal.SIGTERM))
            proc.wait()
        _write_log(log_path, stdout, stderr)

    elapsed = round(time.monotonic() - start, 2)
    return ExecutionResult(proc.returncode, stdout or "", stderr or "", elapsed, timed_out=timed_out)


class Worker:
    """
    Worker process that polls for jobs and executes them.
    Failed jobs go back to the queue with exponential backoff; shutdown is
    graceful and only happens between jobs.
    """

    def __init__(self, worker_id: Optional[str] = None, home=None, handle_signals: bool = True):
        """
        Initialize worker.

        Args:
            worker_id: Optional worker ID (generated if not provided)
            home: Queue home directory
            handle_signals: Install SIGINT/SIGTERM handlers (main thread only)
        """
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
        self.queue = QueueManager(home)
        self.control = ControlChannel(self.queue.paths.control_dir)
        self.running = False
        self.current_job: Optional[Job] = None

        if handle_signals and threading.current_thread() is threading.main_thread():
            signal.signal(signal.SIGINT, self._signal_handler)
            signal.signal(signal.SIGTERM, self._signal_handler)

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals gracefully"""
        logger.info("[%s] Received signal %s, stopping after current job", self.worker_id, signum)
        self.running = False

    @property
    def config(self):
        return self.queue.config

    def should_stop(self) -> bool:
        if not self.running:
            return True
        if self.control.stop_requested():
            logger.info("[%s] Stop flag detected", self.worker_id)
            return True
        return False

    def start(self):
        """
        Start the worker main loop.
        Polls for jobs, executes them, and handles retries.
        """
        self.running = True
        logger.info("[%s] Worker started (pid %s)", self.worker_id, os.getpid())

        try:
            while not self.should_stop():
                if not self.run_once():
                    self._idle()
        except Exception:
            logger.exception("[%s] Fatal error, worker exiting", self.worker_id)
            raise
        finally:
            self.running = False
            logger.info("[%s] Worker stopped", self.worker_id)

    def run_once(self) -> bool:
        """
        Reserve and process at most one job.

        Returns:
            True if a job was processed, False if the worker should idle
        """
        self.config.reload()
        try:
            job = self.queue.reserve(self.worker_id)
        except LockAcquisitionError as e:
            logger.warning("[%s] %s", self.worker_id, e)
            return False

        if job is None:
            return False

        self.current_job = job
        try:
            self.process_job(job)
        finally:
            self.current_job = None
        return True

    def process_job(self, job: Job) -> Optional[str]:
        """
        Execute a reserved job and apply the resulting transition.

        Returns:
            The job's new state, or None if the transition could not be stored
        """
        timeout_sec = self.config.job_timeout_ms / 1000
        lease_sec = self.config.lease_timeout_ms / 1000
        logger.info("[%s] Processing %s (attempt %d/%d): %s",
                    self.worker_id, job.id, job.attempts + 1, job.max_retries + 1, job.command)

        result = run_command(
            job.command,
            timeout_sec,
            self.queue.log_path(job.id),
            heartbeat=lambda: self._heartbeat(job),
            heartbeat_interval=max(lease_sec / 3, 0.1),
        )

        try:
            if result.succeeded:
                self.queue.complete(job.id, result.stdout, result.elapsed_sec, worker_id=self.worker_id)
                logger.info("[%s] Job %s completed in %.2fs", self.worker_id, job.id, result.elapsed_sec)
                return JobState.COMPLETED.value

            error = result.error_message(timeout_sec)
            state = self.queue.fail_or_retry(job.id, error, worker_id=self.worker_id)
        except LockAcquisitionError as e:
            logger.error("[%s] Could not record outcome of %s: %s; its lease will expire",
                         self.worker_id, job.id, e)
            return None

        if state == JobState.DEAD.value:
            logger.warning("[%s] Job %s moved to DLQ: %s", self.worker_id, job.id, error)
        elif state == JobState.PENDING.value:
            delay = backoff_delay(self.config.backoff_base, job.attempts + 1)
            logger.warning("[%s] Job %s failed (%s), will retry in %gs",
                           self.worker_id, job.id, error, delay)
        return state

    def _heartbeat(self, job: Job):
        try:
            if not self.queue.heartbeat(job.id, self.worker_id):
                logger.warning("[%s] Lost lease on %s", self.worker_id, job.id)
        except LockAcquisitionError as e:
            logger.warning("[%s] Heartbeat for %s skipped: %s", self.worker_id, job.id, e)

    def _idle(self):
        time.sleep(self.config.poll_interval_ms / 1000)

    def stop(self):
        """Stop the worker gracefully"""
        self.running = False


def start_worker(worker_id: Optional[str] = None, home=None, log_level=logging.INFO):
    """
    Start a single worker process.

    Args:
        worker_id: Optional worker ID
        home: Queue home directory
        log_level: Logging level for this process
    """
    configure_logging(log_level)
    worker = Worker(worker_id, home)
    worker.start()
