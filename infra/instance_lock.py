"""
Single Instance Lock

PID-file lock so only one agent process drives a venue account at a time.
Two processes would each own a session with its own cooldown and dedup
state, and together could place twice the orders the gates allow.

The lock is released on clean exit; a lock left by a dead process is
treated as stale and replaced.
"""

import atexit
import logging
import os
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


class SingleInstanceLock:
    """
    File-based single instance lock using PID files.

    Usage:
        lock = SingleInstanceLock("perp-agent")
        if not lock.acquire():
            sys.exit(1)
    """

    def __init__(self, name: str, lock_dir: str = "data"):
        self.name = name
        self.lock_dir = Path(lock_dir)
        self.lock_file = self.lock_dir / f"{name}.pid"
        self.acquired = False
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        atexit.register(self.release)

    @staticmethod
    def _is_process_running(pid: int) -> bool:
        try:
            # Signal 0 only checks existence
            os.kill(pid, 0)
            return True
        except OSError:
            return False

    def acquire(self) -> bool:
        """True if the lock is now held by this process."""
        if self.acquired:
            return True

        if self.lock_file.exists():
            try:
                existing_pid = int(self.lock_file.read_text().strip())
            except (ValueError, OSError) as e:
                logger.warning(f"Invalid lock file, removing: {e}")
                existing_pid = None

            if existing_pid is not None and existing_pid != os.getpid() and self._is_process_running(existing_pid):
                logger.error(
                    f"Another instance is running (PID={existing_pid}). "
                    f"Cannot start. Lock file: {self.lock_file}"
                )
                return False

            logger.warning(f"Removing stale lock file {self.lock_file} (PID={existing_pid})")
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

        try:
            self.lock_file.write_text(str(os.getpid()))
        except OSError as e:
            logger.error(f"Failed to create lock file: {e}")
            return False
        self.acquired = True
        logger.info(f"Lock acquired (PID={os.getpid()}, file={self.lock_file})")
        return True

    def release(self) -> None:
        if not self.acquired:
            return
        try:
            self.lock_file.unlink()
            logger.info(f"Lock released (file={self.lock_file})")
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to release lock: {e}")
        self.acquired = False

    def __enter__(self):
        if not self.acquire():
            raise RuntimeError(f"Failed to acquire lock for {self.name}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False


def check_single_instance(name: str = "perp-agent", lock_dir: str = "data") -> Optional[SingleInstanceLock]:
    """Acquire the lock, or return None if another instance holds it."""
    lock = SingleInstanceLock(name, lock_dir)
    if lock.acquire():
        return lock
    return None
