"""Tests for the profile file lock."""

from __future__ import annotations

from pathlib import Path

import pytest
from filelock import FileLock, Timeout

from relaydoc.core.errors import RelayDocError
from relaydoc.storage.locks import LockTimeout, profile_lock


class TestProfileLock:
    def test_acquire_and_release(self, tmp_path: Path) -> None:
        lock_file = tmp_path / "locks" / "profile.lock"
        with profile_lock(tmp_path):
            assert lock_file.exists()
            other = FileLock(lock_file)
            with pytest.raises(Timeout):
                other.acquire(timeout=0)
        other = FileLock(lock_file)
        other.acquire(timeout=0)
        other.release()

    def test_named_lock(self, tmp_path: Path) -> None:
        with profile_lock(tmp_path, "recent"):
            assert (tmp_path / "locks" / "recent.lock").exists()

    def test_timeout(self, tmp_path: Path) -> None:
        (tmp_path / "locks").mkdir()
        holder = FileLock(tmp_path / "locks" / "profile.lock")
        holder.acquire()
        try:
            with pytest.raises(LockTimeout, match="locked by another process"):
                with profile_lock(tmp_path, timeout=0.05):
                    pass
        finally:
            holder.release()

    def test_timeout_is_a_relaydoc_error(self) -> None:
        assert issubclass(LockTimeout, RelayDocError)
