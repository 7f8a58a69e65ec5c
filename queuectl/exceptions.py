"""
Error types raised by queuectl operations
"""


class QueueError(Exception):
    """Base class for errors surfaced to queuectl callers"""


class LockAcquisitionError(QueueError):
    """The store lock could not be obtained within the retry budget"""


class JobNotFoundError(QueueError):
    """The referenced job is absent or in the wrong state for the operation"""


class UnknownConfigKeyError(QueueError):
    """A configuration update named a key that does not exist"""

    def __init__(self, key: str, valid_keys):
        self.key = key
        self.valid_keys = sorted(valid_keys)
        super().__init__(
            f"Unknown config key '{key}'. Available keys: {', '.join(self.valid_keys)}"
        )


class StoreCorruptedError(QueueError):
    """The persisted job store could not be parsed"""
