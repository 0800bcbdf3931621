"""Atomic cross-process locking using mkdir."""

import logging
import os
import shutil
import time
from pathlib import Path

logger = logging.getLogger(__name__)


class LockTimeoutError(RuntimeError):
    """Lock could not be acquired within the timeout."""


class FileLock:
    """
    Atomic file lock using mkdir.

    - mkdir is atomic on local filesystems
    - Stores the owner PID for stale lock detection
    - Checks if the owner is still alive before claiming a stale lock
    """

    def __init__(self, lock_dir: Path, key: str, timeout: float = 10.0, poll_interval: float = 0.01):
        self.lock_dir = lock_dir
        self.key = key
        self.lock_path = lock_dir / f"{key}.lock"
        self.pid_file = self.lock_path / "pid"
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._acquired = False

    def acquire(self) -> bool:
        """
        Attempt to acquire the lock once.

        Returns True if lock acquired, False otherwise.
        """
        if self.lock_path.exists():
            if self._is_stale_lock():
                logger.info(f"Removing stale lock for {self.key}")
                self._remove_lock()
            else:
                return False

        try:
            self.lock_path.mkdir(parents=True, exist_ok=False)
        except FileExistsError:
            logger.debug(f"Lock for {self.key} already exists (race condition)")
            return False
        self.pid_file.write_text(str(os.getpid()))
        self._acquired = True
        return True

    def release(self) -> None:
        """Release the lock."""
        if self._acquired and self.lock_path.exists():
            self._remove_lock()
        self._acquired = False

    def _is_stale_lock(self) -> bool:
        """Check if lock is stale (owning process no longer exists)."""
        try:
            content = self.pid_file.read_text().strip()
        except FileNotFoundError:
            content = ""
        if not content:
            # Owner may be between mkdir and writing its PID
            try:
                age = time.time() - self.lock_path.stat().st_mtime
            except FileNotFoundError:
                return False
            return age > self.timeout

        try:
            pid = int(content)
            os.kill(pid, 0)
            return False
        except ValueError:
            logger.warning(f"Lock for {self.key} has invalid PID (stale)")
            return True
        except ProcessLookupError:
            logger.warning(f"Lock for {self.key} held by dead PID {pid} (stale)")
            return True
        except PermissionError:
            # Can't signal the process but it may still be alive
            return False
        except FileNotFoundError:
            return False

    def _remove_lock(self) -> None:
        if self.lock_path.exists():
            try:
                shutil.rmtree(self.lock_path)
            except OSError as e:
                logger.warning(f"Failed to remove lock directory {self.lock_path}: {e}")

    def __enter__(self):
        deadline = time.monotonic() + self.timeout
        while not self.acquire():
            if time.monotonic() >= deadline:
                raise LockTimeoutError(f"Could not acquire lock for {self.key}")
            time.sleep(self.poll_interval)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False
