"""
JSON file storage for the job store
Every access goes through the injected FileLock
"""
import json
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from .exceptions import StoreCorruptedError
from .lock import FileLock
from .models import Snapshot


def atomic_write_json(path: Path, data) -> None:
    """
    Write JSON to a temporary file beside `path`, fsync it and swap it in.

    Readers see either the previous content or the new content, never a
    partial write.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


class JobStorage:
    """
    Whole-snapshot storage for jobs and the Dead Letter Queue.

    The store is opened per operation: a transaction loads the snapshot,
    lets the caller mutate it and saves it back, all under the lock.
    """

    def __init__(self, path, lock: FileLock):
        """
        Initialize storage.

        Args:
            path: Path to the JSON store file
            lock: Lock guarding the store
        """
        self.path = Path(path)
        self.lock = lock

    def load(self) -> Snapshot:
        """
        Load the full snapshot. Call only while holding the lock.

        Raises:
            StoreCorruptedError: if the file is not a valid store
        """
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return Snapshot()
        except json.JSONDecodeError as e:
            raise StoreCorruptedError(f"Job store {self.path} is not valid JSON: {e}") from e

        if not isinstance(data, dict):
            raise StoreCorruptedError(f"Job store {self.path} must contain a JSON object")
        try:
            return Snapshot.from_dict(data)
        except (TypeError, AttributeError) as e:
            raise StoreCorruptedError(f"Job store {self.path} has malformed records: {e}") from e

    def save(self, snapshot: Snapshot):
        """Persist the full snapshot, replacing prior content"""
        atomic_write_json(self.path, snapshot.to_dict())

    @contextmanager
    def transaction(self) -> Iterator[Snapshot]:
        """Context manager for a locked load-modify-save cycle"""
        with self.lock:
            snapshot = self.load()
            yield snapshot
            self.save(snapshot)

    @contextmanager
    def read(self) -> Iterator[Snapshot]:
        """Context manager for a locked, read-only load"""
        with self.lock:
            yield self.load()
