"""
Logging setup shared by the CLI and worker processes
"""
import logging

LOG_FORMAT = "%(asctime)s %(levelname)s [%(processName)s] %(name)s: %(message)s"


def configure_logging(level=logging.INFO):
    """Install a single stream handler on the queuectl logger"""
    root = logging.getLogger("queuectl")
    root.setLevel(level)
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
    return root
