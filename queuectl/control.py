"""
Control channel: a stop flag file that workers poll between jobs
"""
from pathlib import Path

from .models import to_iso, utcnow


class ControlChannel:
    """Shared out-of-band stop signal for all workers of a queue home"""

    def __init__(self, control_dir):
        self.control_dir = Path(control_dir)
        self.stop_flag = self.control_dir / "stop.flag"

    def request_stop(self):
        """Ask every worker to exit after its current job"""
        self.control_dir.mkdir(parents=True, exist_ok=True)
        self.stop_flag.write_text(to_iso(utcnow()), encoding="utf-8")

    def clear(self):
        self.stop_flag.unlink(missing_ok=True)

    def stop_requested(self) -> bool:
        return self.stop_flag.exists()
