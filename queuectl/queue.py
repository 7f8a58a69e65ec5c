"""
High-level queue management API
Runs each state-machine transition as one locked store transaction
"""
import logging
from typing import Dict, List, Optional

from . import transitions
from .config import Config, QueuePaths
from .exceptions import JobNotFoundError
from .lock import FileLock
from .models import DLQEntry, Job, JobState
from .storage import JobStorage

logger = logging.getLogger(__name__)


class QueueManager:
    """
    High-level interface for managing the job queue.
    Provides methods for enqueuing, reserving, finishing and listing jobs.
    """

    def __init__(self, home=None):
        """
        Initialize queue manager.

        Args:
            home: Queue home directory (defaults to $QUEUECTL_HOME or ~/.queuectl)
        """
        self.paths = QueuePaths.from_home(home)
        self.lock = FileLock(self.paths.lock_file)
        self.storage = JobStorage(self.paths.jobs_file, self.lock)
        self.config = Config(self.paths.config_file, lock=self.lock)

    def enqueue(self, command: str, max_retries: Optional[int] = None) -> Job:
        """
        Enqueue a new job.

        Args:
            command: Shell command to execute
            max_retries: Optional per-job override of the configured default

        Returns:
            The created job
        """
        self.config.reload()
        default_retries = self.config.max_retries
        with self.storage.transaction() as snapshot:
            job = transitions.enqueue(snapshot, command, default_retries, max_retries)
        logger.info("Enqueued %s: %s", job.id, job.command)
        return job

    def reserve(self, worker_id: str) -> Optional[Job]:
        """
        Reclaim expired leases, then claim the next due job for a worker.

        Returns:
            The reserved job, or None if nothing is eligible
        """
        lease_timeout = self.config.lease_timeout_ms / 1000
        backoff_base = self.config.backoff_base
        with self.storage.transaction() as snapshot:
            transitions.reclaim_expired_leases(snapshot, lease_timeout, backoff_base)
            return transitions.reserve(snapshot, worker_id)

    def heartbeat(self, job_id: str, worker_id: str) -> bool:
        """Refresh the lease on a job the worker is executing"""
        with self.storage.transaction() as snapshot:
            return transitions.heartbeat(snapshot, job_id, worker_id)

    def complete(
        self,
        job_id: str,
        output: Optional[str] = None,
        elapsed_sec: Optional[float] = None,
        worker_id: Optional[str] = None,
    ) -> Optional[Job]:
        with self.storage.transaction() as snapshot:
            return transitions.complete(snapshot, job_id, output, elapsed_sec, worker_id)

    def fail_or_retry(self, job_id: str, error: str, worker_id: Optional[str] = None) -> Optional[str]:
        """
        Record a failed execution.

        Returns:
            The job's resulting state (pending or dead)
        """
        backoff_base = self.config.backoff_base
        with self.storage.transaction() as snapshot:
            return transitions.fail_or_retry(snapshot, job_id, error, backoff_base, worker_id)

    def retry_dlq_job(self, job_id: str) -> Job:
        """
        Retry a job from the Dead Letter Queue.
        Resets the job to pending state with attempt count reset.

        Raises:
            JobNotFoundError: if the job is absent or not dead
        """
        with self.storage.transaction() as snapshot:
            job = transitions.requeue_from_dead(snapshot, job_id)
        logger.info("Requeued %s from the DLQ", job_id)
        return job

    def list_jobs(self, state: Optional[str] = None) -> List[Job]:
        """
        List all jobs in insertion order, optionally filtered by state.

        Args:
            state: Optional state filter (pending, processing, completed, dead)
        """
        if state:
            valid_states = [s.value for s in JobState]
            if state not in valid_states:
                raise ValueError(f"Invalid state: {state}. Must be one of {valid_states}")

        with self.storage.read() as snapshot:
            return transitions.list_by_state(snapshot, state)

    def get_job(self, job_id: str) -> Optional[Job]:
        with self.storage.read() as snapshot:
            return snapshot.find(job_id)

    def get_status(self) -> Dict[str, object]:
        """
        Get queue status summary.

        Returns:
            Dictionary with job counts per state, total and busy workers
        """
        with self.storage.read() as snapshot:
            counts = transitions.summary_counts(snapshot)
            workers = sorted({
                job.locked_by for job in snapshot.jobs
                if job.state == JobState.PROCESSING.value and job.locked_by
            })
            dlq_size = len(snapshot.dlq)

        return {
            "jobs": counts,
            "total_jobs": sum(counts.values()),
            "active_workers": workers,
            "dlq_size": dlq_size,
        }

    def list_dlq(self) -> List[DLQEntry]:
        """List all entries in the Dead Letter Queue"""
        with self.storage.read() as snapshot:
            return list(snapshot.dlq)

    def log_path(self, job_id: str):
        return self.paths.logs_dir / f"{job_id}.log"

    def read_log(self, job_id: str) -> str:
        """
        Read the output captured from a job's most recent attempt.

        Raises:
            JobNotFoundError: if no log exists for the job
        """
        path = self.log_path(job_id)
        try:
            return path.read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError:
            raise JobNotFoundError(f"No log found for job '{job_id}'") from None
