"""
queuectl - A CLI-based background job queue system

A single-machine job queue with:
- Worker processes coordinated through a filesystem lock
- Exponential backoff retries
- Dead Letter Queue
- Persistent JSON storage
"""

__version__ = "1.1.0"

from .queue import QueueManager
from .workers import Worker
from .models import Job, JobState, DLQEntry
from .config import Config
from .exceptions import (
    QueueError,
    LockAcquisitionError,
    JobNotFoundError,
    UnknownConfigKeyError,
    StoreCorruptedError,
)

__all__ = [
    "QueueManager",
    "Worker",
    "Job",
    "JobState",
    "DLQEntry",
    "Config",
    "QueueError",
    "LockAcquisitionError",
    "JobNotFoundError",
    "UnknownConfigKeyError",
    "StoreCorruptedError",
]
