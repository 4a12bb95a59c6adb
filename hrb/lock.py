"""Single-instance guard using an advisory file lock."""

import fcntl
import logging
import sys
from pathlib import Path
from typing import TextIO

logger = logging.getLogger(__name__)


def acquire_lock(lock_path: Path) -> TextIO:
    """Take an exclusive, non-blocking lock on lock_path.

    The lock lives on the open file descriptor and is released when the
    process exits. Nothing is written to the file.

    Args:
        lock_path: Lock file location

    Returns:
        Open lock file; caller keeps a reference for the process lifetime

    Raises:
        SystemExit: If the lock file cannot be opened or another run holds it
    """
    try:
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        lock_file = open(lock_path, 'a')
    except OSError as exc:
        logger.error(f"Cannot open lock file: {lock_path} ({exc})")
        sys.exit(1)

    try:
        fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        lock_file.close()
        logger.error("Another backup is running. Exiting.")
        sys.exit(1)

    logger.debug(f"Acquired lock: {lock_path}")
    return lock_file
