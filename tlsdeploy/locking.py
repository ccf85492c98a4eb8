"""Advisory lock keeping one run at a time per certificate directory."""

import fcntl
import logging
import os
from pathlib import Path

from .errors import LockError

logger = logging.getLogger(__name__)

LOCK_NAME = ".tlsdeploy.lock"


class DeploymentLock:
    """Non-blocking flock on <cert_dir>/.tlsdeploy.lock.

    Usage:
        with DeploymentLock(cert_dir):
            ...
    """

    def __init__(self, cert_dir: str):
        self.path = Path(cert_dir) / LOCK_NAME
        self._fd = None

    def acquire(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(self.path), os.O_RDWR | os.O_CREAT, 0o600)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            raise LockError(f"Another run holds {self.path}")

        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        self._fd = fd
        logger.debug(f"Acquired {self.path}")

    def release(self):
        if self._fd is None:
            return
        fcntl.flock(self._fd, fcntl.LOCK_UN)
        os.close(self._fd)
        self._fd = None
        logger.debug(f"Released {self.path}")

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
