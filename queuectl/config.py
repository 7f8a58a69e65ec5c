"""
Configuration management for queuectl
Stores tunables like max_retries and backoff_base, and resolves the
on-disk layout of a queue home directory
"""
import json
import logging
import math
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from .exceptions import UnknownConfigKeyError
from .lock import FileLock
from .storage import atomic_write_json

logger = logging.getLogger(__name__)

HOME_ENV_VAR = "QUEUECTL_HOME"


@dataclass(frozen=True)
class QueuePaths:
    """File layout of one queue home directory"""
    root: Path

    @classmethod
    def from_home(cls, home=None) -> 'QueuePaths':
        """
        Resolve the queue home.

        Precedence: explicit argument, then $QUEUECTL_HOME, then ~/.queuectl
        """
        if home is None:
            home = os.environ.get(HOME_ENV_VAR) or Path.home() / ".queuectl"
        root = Path(home).expanduser()
        root.mkdir(parents=True, exist_ok=True)
        return cls(root)

    @property
    def jobs_file(self) -> Path:
        return self.root / "jobs.json"

    @property
    def config_file(self) -> Path:
        return self.root / "config.json"

    @property
    def lock_file(self) -> Path:
        return self.root / ".queue.lock"

    @property
    def control_dir(self) -> Path:
        return self.root / "control"

    @property
    def logs_dir(self) -> Path:
        return self.root / "logs"


def coerce_value(value: Any) -> Any:
    """
    Coerce a raw configuration value.

    Integral text becomes an int, other finite numeric text a float, and
    anything else is kept as the literal string.
    """
    if not isinstance(value, str):
        return value
    text = value.strip()
    try:
        return int(text)
    except ValueError:
        pass
    try:
        number = float(text)
    except ValueError:
        return value
    return number if math.isfinite(number) else value


class Config:
    """
    Manages queuectl configuration settings.
    Stores configuration in a JSON file inside the queue home.
    """

    DEFAULT_CONFIG = {
        "max_retries": 3,
        "backoff_base": 2,
        "poll_interval_ms": 1000,
        "job_timeout_ms": 15000,
        "lease_timeout_ms": 30000,
    }

    def __init__(self, config_path, lock: Optional[FileLock] = None):
        """
        Initialize configuration manager.

        Args:
            config_path: Path of the config file
            lock: Lock serializing updates with other processes
        """
        self.config_path = Path(config_path)
        self.lock = lock
        self._config = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from file or create with defaults"""
        if not self.config_path.exists():
            atomic_write_json(self.config_path, self.DEFAULT_CONFIG)
            return self.DEFAULT_CONFIG.copy()
        try:
            with open(self.config_path, "r", encoding="utf-8") as f:
                config = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Could not load config %s: %s; using defaults", self.config_path, e)
            return self.DEFAULT_CONFIG.copy()
        if not isinstance(config, dict):
            logger.warning("Config %s is not a JSON object; using defaults", self.config_path)
            return self.DEFAULT_CONFIG.copy()
        # Merge with defaults to handle new keys
        return {**self.DEFAULT_CONFIG, **config}

    def reload(self):
        """Re-read the config file so live updates take effect"""
        self._config = self._load_config()

    def get(self, key: str, default: Any = None) -> Any:
        return self._config.get(key, default)

    def set(self, key: str, value: Any) -> Any:
        """
        Set a configuration value and persist to disk.

        Args:
            key: Configuration key
            value: Raw value; coerced with coerce_value

        Returns:
            The stored value

        Raises:
            UnknownConfigKeyError: if key is not a known setting
        """
        if key not in self.DEFAULT_CONFIG:
            raise UnknownConfigKeyError(key, self.DEFAULT_CONFIG)
        value = coerce_value(value)

        if self.lock is None:
            self._config[key] = value
            atomic_write_json(self.config_path, self._config)
            return value

        with self.lock:
            self._config = self._load_config()
            self._config[key] = value
            atomic_write_json(self.config_path, self._config)
        return value

    def get_all(self) -> Dict[str, Any]:
        """Get all configuration values"""
        return self._config.copy()

    def number(self, key: str):
        """
        Get a numeric setting.

        A non-numeric stored value falls back to the default.
        """
        value = self._config.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return value
        default = self.DEFAULT_CONFIG[key]
        logger.warning(
            "Config key %s has non-numeric value %r; using default %r", key, value, default
        )
        return default

    @property
    def max_retries(self) -> int:
        value = self.number("max_retries")
        if isinstance(value, float) or value < 0:
            logger.warning("max_retries must be a non-negative integer; using default")
            return self.DEFAULT_CONFIG["max_retries"]
        return value

    @property
    def backoff_base(self) -> float:
        value = self.number("backoff_base")
        if value <= 0:
            logger.warning("backoff_base must be positive; using default")
            return self.DEFAULT_CONFIG["backoff_base"]
        return value

    @property
    def poll_interval_ms(self) -> float:
        return self.number("poll_interval_ms")

    @property
    def job_timeout_ms(self) -> float:
        return self.number("job_timeout_ms")

    @property
    def lease_timeout_ms(self) -> float:
        return self.number("lease_timeout_ms")
