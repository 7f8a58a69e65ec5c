"""
Job model and state definitions for queuectl
"""
import math
from dataclasses import dataclass, asdict, field, fields
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, List, Optional

from dateutil.parser import isoparse


MAX_ERROR_LENGTH = 4000
MAX_BACKOFF_SEC = 7 * 24 * 3600.0


class JobState(Enum):
    """Valid job states in the system"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    DEAD = "dead"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(moment: datetime) -> str:
    """Format an aware datetime as a UTC ISO timestamp with a Z suffix"""
    return moment.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored timestamp; naive values are taken as UTC"""
    if not value:
        return None
    moment = isoparse(value)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def backoff_delay(base: float, attempts: int) -> float:
    """
    Retry delay in seconds after `attempts` failures: base ** attempts,
    clamped to [0, MAX_BACKOFF_SEC]
    """
    try:
        delay = float(base ** attempts)
    except (OverflowError, TypeError):
        return MAX_BACKOFF_SEC
    if math.isnan(delay) or delay > MAX_BACKOFF_SEC:
        return MAX_BACKOFF_SEC
    return max(delay, 0.0)


def _from_known_fields(cls, data: dict):
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class Job:
    """
    Represents a background job in the queue system.

    Attributes:
        id: Unique identifier for the job
        command: Shell command to execute
        state: Current state of the job
        attempts: Number of failed execution attempts so far
        max_retries: Retries allowed before the job moves to the DLQ
        next_run_at: Earliest time a pending job may be reserved
        locked_by: ID of the worker currently processing this job
        locked_at: When the job was reserved
        heartbeat_at: Last lease refresh by the owning worker
        last_error: Truncated error from the most recent failure
        output: Standard output of the successful run
        elapsed_sec: Wall-clock duration of the successful run
        created_at: ISO timestamp of job creation
        updated_at: ISO timestamp of last update
    """
    id: str
    command: str
    state: str = JobState.PENDING.value
    attempts: int = 0
    max_retries: int = 3
    next_run_at: Optional[str] = None
    locked_by: Optional[str] = None
    locked_at: Optional[str] = None
    heartbeat_at: Optional[str] = None
    last_error: Optional[str] = None
    output: Optional[str] = None
    elapsed_sec: Optional[float] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def __post_init__(self):
        """Set timestamps if not provided"""
        now = to_iso(utcnow())
        if self.created_at is None:
            self.created_at = now
        if self.updated_at is None:
            self.updated_at = now

    def to_dict(self) -> dict:
        """Convert job to dictionary"""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> 'Job':
        """Create job from dictionary"""
        return _from_known_fields(cls, data)

    def is_due(self, now: datetime) -> bool:
        """Check if a pending job may be reserved at `now`"""
        if self.state != JobState.PENDING.value:
            return False
        run_at = parse_iso(self.next_run_at)
        return run_at is None or run_at <= now

    def should_retry(self) -> bool:
        """Check if the failure count still fits the retry budget"""
        return self.attempts <= self.max_retries

    def _release(self):
        self.locked_by = None
        self.locked_at = None
        self.heartbeat_at = None

    def mark_processing(self, worker_id: str, now: datetime):
        """Mark job as being processed"""
        stamp = to_iso(now)
        self.state = JobState.PROCESSING.value
        self.locked_by = worker_id
        self.locked_at = stamp
        self.heartbeat_at = stamp
        self.next_run_at = None
        self.updated_at = stamp

    def mark_completed(self, output: Optional[str], elapsed_sec: Optional[float], now: datetime):
        """Mark job as completed"""
        self.state = JobState.COMPLETED.value
        self.output = output
        self.elapsed_sec = elapsed_sec
        self._release()
        self.updated_at = to_iso(now)

    def mark_failed(self, error_message: str, backoff_base: float, now: datetime):
        """
        Record a failed attempt and schedule a retry or move to the DLQ.

        The retry delay is backoff_base ** attempts seconds, capped at
        MAX_BACKOFF_SEC.
        """
        self.attempts += 1
        self.last_error = str(error_message)[:MAX_ERROR_LENGTH]
        self._release()

        if self.should_retry():
            delay = backoff_delay(backoff_base, self.attempts)
            self.state = JobState.PENDING.value
            self.next_run_at = to_iso(now + timedelta(seconds=delay))
        else:
            self.state = JobState.DEAD.value
            self.next_run_at = None
        self.updated_at = to_iso(now)

    def reset_for_retry(self, now: datetime):
        """Put a dead job back in the queue with a fresh retry budget"""
        self.state = JobState.PENDING.value
        self.attempts = 0
        self.last_error = None
        self._release()
        self.next_run_at = to_iso(now)
        self.updated_at = to_iso(now)


@dataclass
class DLQEntry:
    """Snapshot of a job at the moment it was moved to the Dead Letter Queue"""
    id: str
    moved_at: str
    last_error: Optional[str]
    command: str

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> 'DLQEntry':
        return _from_known_fields(cls, data)


@dataclass
class Snapshot:
    """The full persisted content of the job store"""
    jobs: List[Job] = field(default_factory=list)
    dlq: List[DLQEntry] = field(default_factory=list)

    def find(self, job_id: str) -> Optional[Job]:
        for job in self.jobs:
            if job.id == job_id:
                return job
        return None

    def find_dlq(self, job_id: str) -> Optional[DLQEntry]:
        for entry in self.dlq:
            if entry.id == job_id:
                return entry
        return None

    def to_dict(self) -> Dict[str, list]:
        return {
            "jobs": [job.to_dict() for job in self.jobs],
            "dlq": [entry.to_dict() for entry in self.dlq],
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Snapshot':
        return cls(
            jobs=[Job.from_dict(item) for item in data.get("jobs", [])],
            dlq=[DLQEntry.from_dict(item) for item in data.get("dlq", [])],
        )
