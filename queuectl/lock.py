"""
Filesystem lock guarding every read and write of the shared job store

Workers are independent processes with no shared memory, so ownership is
expressed by the presence of a sentinel file. Creation uses O_CREAT | O_EXCL,
which makes the create-if-absent check a single atomic filesystem call.
A sentinel older than `stale_after` seconds is presumed to belong to a
crashed process and is reclaimed.
"""
import logging
import os
import time
import uuid
from pathlib import Path
from typing import Optional

from .exceptions import LockAcquisitionError

logger = logging.getLogger(__name__)

DEFAULT_STALE_AFTER = 15.0
DEFAULT_RETRY_INTERVAL = 0.2
DEFAULT_MAX_RETRIES = 25


class FileLock:
    """
    Polling mutual-exclusion lock backed by a sentinel file.

    Usage:
        with FileLock(path):
            ...  # critical section
    """

    def __init__(
        self,
        path,
        stale_after: float = DEFAULT_STALE_AFTER,
        retry_interval: float = DEFAULT_RETRY_INTERVAL,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ):
        self.path = Path(path)
        self.stale_after = stale_after
        self.retry_interval = retry_interval
        self.max_retries = max_retries
        self._token: Optional[str] = None

    @property
    def is_held(self) -> bool:
        return self._token is not None

    def acquire(self):
        """
        Acquire the lock, waiting `retry_interval` between attempts.

        Raises:
            LockAcquisitionError: if the lock is still held by another
                party after `max_retries` waits
        """
        if self._token is not None:
            raise RuntimeError(f"Lock {self.path} is already held by this instance")

        self.path.parent.mkdir(parents=True, exist_ok=True)
        token = f"{os.getpid()}:{time.time():.6f}:{uuid.uuid4().hex}"
        waits = 0

        while True:
            if self._try_create(token):
                self._token = token
                return

            age = self._age()
            if age is None:
                # Released between our create and stat
                continue
            if age > self.stale_after:
                logger.warning(
                    "Removing stale lock %s (%.1fs old, threshold %.1fs)",
                    self.path, age, self.stale_after,
                )
                self._break_stale()
                continue

            waits += 1
            if waits > self.max_retries:
                raise LockAcquisitionError(
                    f"Could not acquire lock {self.path} after {self.max_retries} attempts. "
                    "Try again later."
                )
            time.sleep(self.retry_interval)

    def release(self):
        """Release the lock; a vanished or foreign sentinel is only logged"""
        token, self._token = self._token, None
        if token is None:
            return

        current = self._read_token(self.path)
        if current is None:
            logger.warning("Lock %s was already gone on release", self.path)
            return
        if current != token:
            logger.warning("Lock %s was reclaimed by another process before release", self.path)
            return
        try:
            os.unlink(self.path)
        except FileNotFoundError:
            logger.warning("Lock %s was already gone on release", self.path)
        except OSError as e:
            logger.warning("Failed to delete lock %s: %s", self.path, e)

    def __enter__(self) -> 'FileLock':
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False

    def _try_create(self, token: str) -> bool:
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        try:
            os.write(fd, token.encode("utf-8"))
        finally:
            os.close(fd)
        return True

    def _age(self) -> Optional[float]:
        try:
            return time.time() - os.stat(self.path).st_mtime
        except FileNotFoundError:
            return None

    def _break_stale(self):
        """
        Move the stale sentinel aside and delete it.

        The rename is atomic, so of several processes reclaiming at once only
        one takes the file. If the file it took turns out to be fresh (its
        owner recreated it after our age check), it is linked back.
        """
        graveyard = self.path.with_name(f"{self.path.name}.{uuid.uuid4().hex}.stale")
        try:
            os.rename(self.path, graveyard)
        except FileNotFoundError:
            return

        try:
            age = time.time() - os.stat(graveyard).st_mtime
            if age <= self.stale_after:
                try:
                    os.link(graveyard, self.path)
                except FileExistsError:
                    logger.warning("Fresh lock %s was displaced during stale reclaim", self.path)
        finally:
            try:
                os.unlink(graveyard)
            except FileNotFoundError:
                pass

    @staticmethod
    def _read_token(path: Path) -> Optional[str]:
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
