"""Unit tests for per-identity-key locks."""

import os
import subprocess
import sys
import threading
import time

import pytest

from face_attendance.errors import LockTimeout
from face_attendance.storage import IdentityKeyLock, identity_key_lock, lock_path_for_key


class TestLockPath:
    """Tests for lock file naming."""

    def test_same_key_same_path(self, tmp_path):
        assert lock_path_for_key(tmp_path, "ABU24001") == lock_path_for_key(tmp_path, " ABU24001 ")

    def test_slashes_are_safe(self, tmp_path):
        """Test keys with path separators stay inside the locks dir."""
        path = lock_path_for_key(tmp_path, "TEST/2026/9999")
        assert path.parent == tmp_path
        assert path.suffix == ".lock"


class TestIdentityKeyLock:
    """Tests for IdentityKeyLock."""

    def test_acquire_release(self, tmp_path):
        lock = IdentityKeyLock(tmp_path, "ABU24001")
        assert lock.acquire()
        assert lock.held
        assert lock.lock_path.exists()

        lock.release()
        assert not lock.held
        assert not lock.lock_path.exists()

    def test_lock_file_records_holder(self, tmp_path):
        with identity_key_lock(tmp_path, "ABU24001") as lock:
            assert lock.lock_path.read_text() == f"{os.getpid()} ABU24001"

    def test_timeout(self, tmp_path):
        """Test a second holder times out."""
        with identity_key_lock(tmp_path, "ABU24001"):
            other = IdentityKeyLock(tmp_path, "ABU24001", timeout=0.1, poll_interval=0.01)
            with pytest.raises(LockTimeout):
                other.acquire()
            assert not other.held

    def test_stale_lock_reclaimed(self, tmp_path):
        """Test a lock left by an exited process doesn't block the key."""
        child = subprocess.Popen([sys.executable, "-c", "pass"])
        child.wait()

        path = lock_path_for_key(tmp_path, "ABU24001")
        path.write_text(f"{child.pid} ABU24001")

        with identity_key_lock(tmp_path, "ABU24001", timeout=0.5) as lock:
            assert lock.held

    def test_unreadable_lock_file_not_reclaimed(self, tmp_path):
        lock_path_for_key(tmp_path, "ABU24001").write_text("")

        with pytest.raises(LockTimeout):
            IdentityKeyLock(tmp_path, "ABU24001", timeout=0.1, poll_interval=0.01).acquire()

    def test_context_manager_releases_on_error(self, tmp_path):
        with pytest.raises(RuntimeError):
            with identity_key_lock(tmp_path, "ABU24001"):
                raise RuntimeError("boom")
        assert not lock_path_for_key(tmp_path, "ABU24001").exists()

    def test_serialises_threads(self, tmp_path):
        """Test two threads never hold the same key at once."""
        active = []
        overlaps = []

        def worker():
            with identity_key_lock(tmp_path, "ABU24001", timeout=5.0):
                active.append(1)
                if len(active) > 1:
                    overlaps.append(True)
                time.sleep(0.05)
                active.pop()

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert overlaps == []

    def test_different_keys_independent(self, tmp_path):
        with identity_key_lock(tmp_path, "A"):
            with identity_key_lock(tmp_path, "B", timeout=0.1):
                pass
