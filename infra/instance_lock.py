"""
Single Instance Lock - one liquidator per signing key

The persisted circuit breakers (daily stats, emergency stop flag) have no
cross-process locking; they assume exactly one writer. This PID file is what
makes that assumption true:
- a second process on the same key would race nonces
- both would write data/daily_stats.json and undercount losses

Signal handling stays with the runner (asyncio loop); the lock is released
on clean exit via atexit or explicitly.
"""

import atexit
import logging
import os
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


class SingleInstanceLock:
    """
    PID-file lock.

    Usage:
        lock = SingleInstanceLock("liquidation-sentinel")
        if not lock.acquire():
            raise FatalStartupError("another instance is running")
        ...
        lock.release()
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
            os.kill(pid, 0)
            return True
        except OSError:
            return False

    def holder_pid(self) -> Optional[int]:
        try:
            return int(self.lock_file.read_text().strip())
        except (OSError, ValueError):
            return None

    def acquire(self) -> bool:
        """
        Returns:
            True if the lock is ours, False if a live process holds it
        """
        if self.acquired:
            return True

        if self.lock_file.exists():
            existing_pid = self.holder_pid()
            if existing_pid is not None and existing_pid != os.getpid() and self._is_process_running(existing_pid):
                logger.error(f"Another instance is running (PID={existing_pid}), lock file {self.lock_file}")
                return False
            logger.warning(f"Removing stale lock file {self.lock_file} (PID={existing_pid})")
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

        try:
            # O_EXCL: two processes racing past the stale check cannot both win.
            fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            logger.error(f"Lost lock race for {self.lock_file}")
            return False
        with os.fdopen(fd, "w") as f:
            f.write(str(os.getpid()))

        self.acquired = True
        logger.info(f"Lock acquired (PID={os.getpid()}, file={self.lock_file})")
        return True

    def release(self) -> None:
        if not self.acquired:
            return
        try:
            if self.holder_pid() == os.getpid():
                self.lock_file.unlink()
            logger.info(f"Lock released (file={self.lock_file})")
        except OSError as e:
            logger.warning(f"Failed to release lock: {e}")
        finally:
            self.acquired = False

    def __enter__(self):
        if not self.acquire():
            raise RuntimeError(f"Failed to acquire lock for {self.name}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False


__all__ = ["SingleInstanceLock"]
