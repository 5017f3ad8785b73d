"""File-based locking per identity key.

Enrollment is check-then-insert. This module provides the single-writer
arbitration point that makes it safe: a lock file per identity key, created
atomically, so only one process or thread enrolls a given key at a time.

A lock file records the holder's PID. A file left behind by a process that
no longer exists is reclaimed, so a crash mid-enrollment doesn't block the
key forever.
"""

import hashlib
import os
import time
import logging
from pathlib import Path
from contextlib import contextmanager
from typing import Optional, Union

from ..errors import LockTimeout

logger = logging.getLogger(__name__)


def lock_path_for_key(locks_dir: Union[str, Path], identity_key: str) -> Path:
    """Return the lock file path for an identity key.

    Keys are hashed so that any key (slashes included, e.g. 'TEST/2026/9999')
    maps to a safe file name.
    """
    digest = hashlib.sha1(identity_key.strip().encode('utf-8')).hexdigest()
    return Path(locks_dir) / f"{digest}.lock"


def _holder_pid(lock_path: Path) -> Optional[int]:
    try:
        return int(lock_path.read_text(encoding='utf-8').split()[0])
    except (OSError, ValueError, IndexError):
        return None


def _process_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class IdentityKeyLock:
    """Exclusive hold on one identity key.

    Attributes:
        identity_key: Key being locked
        lock_path: Path to the lock file
        timeout: Maximum time to wait for the key (seconds)
        poll_interval: Time between attempts (seconds)
    """

    def __init__(
        self,
        locks_dir: Union[str, Path],
        identity_key: str,
        timeout: float = 10.0,
        poll_interval: float = 0.05
    ):
        self.identity_key = identity_key.strip()
        self.lock_path = lock_path_for_key(locks_dir, self.identity_key)
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._fd: Optional[int] = None

    @property
    def held(self) -> bool:
        """Whether this instance currently holds the key."""
        return self._fd is not None

    def acquire(self) -> bool:
        """Wait for the key and take it.

        Returns:
            True once the key is held

        Raises:
            LockTimeout: If another holder keeps the key past the timeout
        """
        deadline = time.monotonic() + self.timeout
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)

        while True:
            try:
                self._fd = os.open(str(self.lock_path), os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                if self._reclaim_stale():
                    continue
                if time.monotonic() >= deadline:
                    raise LockTimeout(
                        f"Identity key {self.identity_key!r} still locked after {self.timeout}s "
                        f"({self.lock_path})"
                    )
                time.sleep(self.poll_interval)
                continue

            os.write(self._fd, f"{os.getpid()} {self.identity_key}".encode('utf-8'))
            logger.debug(f"Locked identity key {self.identity_key}")
            return True

    def release(self):
        """Give the key back. Safe to call when not held."""
        if self._fd is None:
            return

        os.close(self._fd)
        self._fd = None
        try:
            self.lock_path.unlink()
        except FileNotFoundError:
            logger.warning(f"Lock file for {self.identity_key} already gone: {self.lock_path}")
        else:
            logger.debug(f"Unlocked identity key {self.identity_key}")

    def _reclaim_stale(self) -> bool:
        """Remove the lock file if its holder process has exited."""
        pid = _holder_pid(self.lock_path)
        if pid is None or pid == os.getpid() or _process_alive(pid):
            return False

        try:
            self.lock_path.unlink()
        except FileNotFoundError:
            pass
        logger.warning(f"Reclaimed lock on {self.identity_key} left by exited process {pid}")
        return True

    def __repr__(self) -> str:
        """String representation."""
        return f"IdentityKeyLock({self.identity_key!r}, held={self.held})"


@contextmanager
def identity_key_lock(
    locks_dir: Union[str, Path],
    identity_key: str,
    timeout: float = 10.0
):
    """Context manager serialising work on one identity key.

    Usage:
        with identity_key_lock(locks_dir, 'ABU24001'):
            # Safe to check and insert the key
            pass

    Raises:
        LockTimeout: If the key can't be taken within timeout
    """
    lock = IdentityKeyLock(locks_dir, identity_key, timeout=timeout)
    lock.acquire()
    try:
        yield lock
    finally:
        lock.release()
