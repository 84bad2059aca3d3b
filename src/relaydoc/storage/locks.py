"""Serialize profile updates across concurrently running relaydoc commands."""

from __future__ import annotations

import contextlib
from collections.abc import Iterator
from pathlib import Path

from filelock import FileLock, Timeout

from relaydoc.core.errors import RelayDocError

LOCKS_DIR = "locks"


class LockTimeout(RelayDocError):
    """Another process kept the profile locked past the timeout."""


@contextlib.contextmanager
def profile_lock(home: Path, name: str = "profile", timeout: float = 10) -> Iterator[None]:
    """Hold ``<home>/locks/<name>.lock`` for the duration of the block.

    ``join`` records recent documents while another shell may be running
    ``relays add`` against the same profile.
    """
    lock_dir = home / LOCKS_DIR
    lock_dir.mkdir(parents=True, exist_ok=True)
    lock = FileLock(lock_dir / f"{name}.lock")
    try:
        lock.acquire(timeout=timeout)
    except Timeout:
        raise LockTimeout(f"Profile {home} is locked by another process (waited {timeout}s)") from None
    try:
        yield
    finally:
        lock.release()
