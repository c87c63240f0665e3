"""Single-instance PID marker for one output target."""

import logging
import os
from pathlib import Path
from typing import Optional

import psutil

logger = logging.getLogger(__name__)


class AlreadyRunningError(Exception):
    """Raised when a live process already owns the lock marker."""

    def __init__(self, lock_path: Path, pid: int):
        super().__init__(f"Another monitor (PID {pid}) holds {lock_path}")
        self.lock_path = lock_path
        self.pid = pid


def is_process_alive(pid: int) -> bool:
    """Check whether a process with this id exists."""
    if pid <= 0:
        return False
    return psutil.pid_exists(pid)


class ProcessLock:
    """
    PID file guarding an output target.

    A marker naming a live process blocks acquisition. A marker naming a dead
    process, or one that cannot be parsed, is stale and is replaced.
    """

    def __init__(self, lock_path: Path, pid: Optional[int] = None):
        self.lock_path = lock_path
        self.pid = pid if pid is not None else os.getpid()
        self.acquired = False

    def read_owner(self) -> Optional[int]:
        """PID recorded in the marker, or None if absent or unreadable."""
        try:
            content = self.lock_path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning("Cannot read lock marker %s: %s", self.lock_path, e)
            return None
        try:
            return int(content.splitlines()[0])
        except (ValueError, IndexError):
            return None

    def is_stale(self) -> bool:
        """True if a marker exists but does not name a live process."""
        if not self.lock_path.exists():
            return False
        owner = self.read_owner()
        return owner is None or not is_process_alive(owner)

    def _create(self) -> bool:
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(f"{self.pid}\n")
        return True

    def try_acquire(self) -> None:
        """
        Take the lock or raise AlreadyRunningError.

        Stale markers are removed once; if another process wins the race to
        recreate the marker, that process owns the target.
        """
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(2):
            if self._create():
                self.acquired = True
                logger.debug("Acquired lock %s (PID %d)", self.lock_path, self.pid)
                return
            owner = self.read_owner()
            if owner is not None and owner == self.pid:
                self.acquired = True
                return
            if owner is not None and is_process_alive(owner):
                raise AlreadyRunningError(self.lock_path, owner)
            logger.warning("Removing stale lock marker %s (PID %s)", self.lock_path, owner)
            try:
                self.lock_path.unlink()
            except FileNotFoundError:
                pass
        owner = self.read_owner()
        raise AlreadyRunningError(self.lock_path, owner if owner is not None else -1)

    def release(self) -> None:
        """Remove the marker if this process still owns it."""
        if not self.acquired:
            return
        if self.read_owner() == self.pid:
            try:
                self.lock_path.unlink()
            except FileNotFoundError:
                pass
            logger.debug("Released lock %s", self.lock_path)
        self.acquired = False

    def __enter__(self) -> "ProcessLock":
        self.try_acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
