"""
Single Instance Lock - Prevent Multiple Investor Daemons

Uses a PID file so only one daemon writes a given portfolio snapshot.
Two daemons sharing a snapshot would each overwrite the other's view of
the portfolio and could both submit withdrawals for the same loan.

The lock is released on clean exit; a lock left by a dead process is
detected and replaced.
"""

import atexit
import os
from pathlib import Path
from typing import Optional
import logging

logger = logging.getLogger(__name__)


class SingleInstanceLock:
    """
    PID-file lock scoped to one snapshot-writing daemon.

    Usage:
        lock = SingleInstanceLock("auction-investor")
        if not lock.acquire():
            sys.exit(1)

        # Run daemon...

        lock.release()  # Optional - released at exit
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
        """True if ``pid`` names a live process"""
        try:
            # Signal 0 checks existence without delivering anything
            os.kill(pid, 0)
            return True
        except ProcessLookupError:
            return False
        except PermissionError:
            # Exists but owned by someone else
            return True

    def holder_pid(self) -> Optional[int]:
        """PID recorded in the lock file, if any."""
        try:
            return int(self.lock_file.read_text().strip())
        except (FileNotFoundError, ValueError):
            return None

    def acquire(self) -> bool:
        """
        Acquire the lock.

        Returns:
            True if lock acquired, False if another live instance holds it
        """
        if self.acquired:
            logger.debug(f"Lock {self.lock_file} already held by this process")
            return True

        if self.lock_file.exists():
            existing_pid = self.holder_pid()
            if existing_pid is not None and existing_pid != os.getpid() and self._is_process_running(existing_pid):
                logger.error(
                    f"Another instance is running (PID={existing_pid}). "
                    f"Cannot start. Lock file: {self.lock_file}"
                )
                return False

            logger.warning(f"Removing stale lock file {self.lock_file} (PID={existing_pid})")
            self.lock_file.unlink(missing_ok=True)

        try:
            current_pid = os.getpid()
            self.lock_file.write_text(str(current_pid))
        except OSError as e:
            logger.error(f"Cannot write lock file {self.lock_file}: {e}")
            return False

        self.acquired = True
        logger.info(f"Lock acquired (PID={current_pid}, file={self.lock_file})")
        return True

    def release(self) -> None:
        """Remove the PID file if this process holds it"""
        if not self.acquired:
            return

        try:
            self.lock_file.unlink(missing_ok=True)
            logger.info(f"Lock released (file={self.lock_file})")
        except OSError as e:
            logger.warning(f"Cannot remove lock file {self.lock_file}: {e}")
        self.acquired = False

    def __enter__(self):
        if not self.acquire():
            raise RuntimeError(f"Failed to acquire lock for {self.name} ({self.lock_file})")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False
