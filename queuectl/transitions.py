"""
Job state machine

Pure transitions over a loaded Snapshot. Callers must hold the store lock
for the whole load -> transition -> save sequence.

    pending --reserve--> processing --complete--> completed
                              |
                         fail_or_retry
                        /             \\
                pending (backoff)     dead --requeue_from_dead--> pending
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from .exceptions import JobNotFoundError
from .models import DLQEntry, Job, JobState, Snapshot, backoff_delay, parse_iso, to_iso, utcnow

logger = logging.getLogger(__name__)


def new_job_id() -> str:
    return f"job-{uuid.uuid4().hex[:12]}"


def enqueue(
    snapshot: Snapshot,
    command: str,
    default_max_retries: int,
    max_retries: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Job:
    """
    Append a new pending job.

    Args:
        snapshot: Loaded store snapshot
        command: Shell command to execute
        default_max_retries: Retry budget used when no override is given
        max_retries: Optional per-job retry budget
        now: Current time

    Returns:
        The created job
    """
    if not command or not command.strip():
        raise ValueError("command must not be empty")
    budget = default_max_retries if max_retries is None else max_retries
    if isinstance(budget, bool) or not isinstance(budget, int) or budget < 0:
        raise ValueError(f"max_retries must be a non-negative integer, got {budget!r}")

    now = now or utcnow()
    stamp = to_iso(now)
    job_id = new_job_id()
    while snapshot.find(job_id) is not None:
        job_id = new_job_id()

    job = Job(
        id=job_id,
        command=command,
        max_retries=budget,
        next_run_at=stamp,
        created_at=stamp,
        updated_at=stamp,
    )
    snapshot.jobs.append(job)
    return job


def reserve(snapshot: Snapshot, worker_id: str, now: Optional[datetime] = None) -> Optional[Job]:
    """Claim the first due pending job in insertion order for `worker_id`"""
    now = now or utcnow()
    for job in snapshot.jobs:
        if job.is_due(now):
            job.mark_processing(worker_id, now)
            return job
    return None


def _owned(job: Job, worker_id: Optional[str]) -> bool:
    if worker_id is None:
        return True
    return job.state == JobState.PROCESSING.value and job.locked_by == worker_id


def complete(
    snapshot: Snapshot,
    job_id: str,
    output: Optional[str] = None,
    elapsed_sec: Optional[float] = None,
    worker_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Optional[Job]:
    """Mark a processing job completed; a missing id is silently ignored"""
    job = snapshot.find(job_id)
    if job is None:
        return None
    if job.state != JobState.PROCESSING.value or not _owned(job, worker_id):
        logger.warning(
            "Ignoring completion of %s by %s: job is %s under %s",
            job_id, worker_id, job.state, job.locked_by,
        )
        return None
    job.mark_completed(output, elapsed_sec, now or utcnow())
    return job


def fail_or_retry(
    snapshot: Snapshot,
    job_id: str,
    error: str,
    backoff_base: float,
    worker_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Optional[str]:
    """
    Record a failed attempt.

    The job returns to pending with a backoff delay while attempts fit the
    retry budget, otherwise it becomes dead and gets one DLQ entry.

    Returns:
        The resulting state value, or None if the job does not exist
    """
    job = snapshot.find(job_id)
    if job is None:
        return None
    if job.state == JobState.DEAD.value:
        return job.state
    if job.state != JobState.PROCESSING.value or not _owned(job, worker_id):
        logger.warning(
            "Ignoring failure of %s by %s: job is %s under %s",
            job_id, worker_id, job.state, job.locked_by,
        )
        return job.state

    now = now or utcnow()
    job.mark_failed(error, backoff_base, now)
    if job.state == JobState.DEAD.value and snapshot.find_dlq(job.id) is None:
        snapshot.dlq.append(DLQEntry(
            id=job.id,
            moved_at=to_iso(now),
            last_error=job.last_error,
            command=job.command,
        ))
    return job.state


def requeue_from_dead(snapshot: Snapshot, job_id: str, now: Optional[datetime] = None) -> Job:
    """
    Move a dead job back to pending with its attempts reset.

    Raises:
        JobNotFoundError: if the job does not exist or is not dead
    """
    job = snapshot.find(job_id)
    if job is None:
        raise JobNotFoundError(f"Job '{job_id}' not found")
    if job.state != JobState.DEAD.value:
        raise JobNotFoundError(f"Job '{job_id}' is not in DLQ (current state: {job.state})")

    job.reset_for_retry(now or utcnow())
    snapshot.dlq = [entry for entry in snapshot.dlq if entry.id != job_id]
    return job


def heartbeat(snapshot: Snapshot, job_id: str, worker_id: str, now: Optional[datetime] = None) -> bool:
    """Refresh the lease of a job processing under `worker_id`"""
    job = snapshot.find(job_id)
    if job is None or not _owned(job, worker_id):
        return False
    job.heartbeat_at = to_iso(now or utcnow())
    return True


def reclaim_expired_leases(
    snapshot: Snapshot,
    lease_timeout_sec: float,
    backoff_base: float,
    now: Optional[datetime] = None,
) -> List[Job]:
    """
    Fail every processing job whose owner stopped refreshing its lease.

    The orphaned run counts as a failed attempt, so the job follows the
    normal retry/backoff path.
    """
    now = now or utcnow()
    try:
        cutoff = now - timedelta(seconds=lease_timeout_sec)
    except (OverflowError, ValueError):
        # Lease longer than the calendar can express; nothing has expired
        return []
    reclaimed = []
    for job in snapshot.jobs:
        if job.state != JobState.PROCESSING.value:
            continue
        last_seen = parse_iso(job.heartbeat_at or job.locked_at)
        if last_seen is not None and last_seen >= cutoff:
            continue
        owner = job.locked_by
        fail_or_retry(
            snapshot,
            job.id,
            f"Lease expired: worker {owner} stopped heartbeating (presumed crashed)",
            backoff_base,
            now=now,
        )
        logger.warning("Reclaimed %s from %s; job is now %s", job.id, owner, job.state)
        reclaimed.append(job)
    return reclaimed


def list_by_state(snapshot: Snapshot, state: Optional[str] = None) -> List[Job]:
    if state is None:
        return list(snapshot.jobs)
    return [job for job in snapshot.jobs if job.state == state]


def summary_counts(snapshot: Snapshot) -> Dict[str, int]:
    counts = {state.value: 0 for state in JobState}
    for job in snapshot.jobs:
        counts[job.state] = counts.get(job.state, 0) + 1
    return counts
