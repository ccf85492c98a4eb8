"""
Thin wrappers over external commands and file writes.

Components take a ``runner`` callable with the signature of ``run_command``
so tests can record and script the commands instead of executing them.
"""

import logging
import os
import subprocess
import tempfile
from pathlib import Path

logger = logging.getLogger(__name__)


def run_command(
    argv: list[str],
    timeout: int = 30,
    sudo: bool = False,
) -> subprocess.CompletedProcess:
    """Run a command and capture its output.

    Raises FileNotFoundError when the executable is missing and
    subprocess.TimeoutExpired when it runs past ``timeout``.
    """
    if sudo:
        argv = ["sudo", "-n", *argv]
    logger.debug(f"Running: {' '.join(argv)}")
    return subprocess.run(
        argv,
        capture_output=True,
        text=True,
        timeout=timeout,
    )


def output_of(result: subprocess.CompletedProcess) -> str:
    """Combined stdout/stderr of a finished command, stripped."""
    parts = [result.stdout or "", result.stderr or ""]
    return "\n".join(p.strip() for p in parts if p and p.strip())


def write_atomic(path: Path, content: str | bytes, mode: int = 0o644) -> None:
    """Write a file so readers see either the old or the new content."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = content.encode("utf-8") if isinstance(content, str) else content
    fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp, mode)
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except FileNotFoundError:
            pass
        raise


def read_if_exists(path: Path) -> bytes | None:
    try:
        return Path(path).read_bytes()
    except FileNotFoundError:
        return None
