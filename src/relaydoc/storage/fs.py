"""Profile directory discovery and crash-safe replacement of profile files."""

from __future__ import annotations

import contextlib
import os
import tempfile
from pathlib import Path

RELAYDOC_HOME_ENV = "RELAYDOC_HOME"
DEFAULT_HOME = Path("~/.relaydoc")

# The profile stores the signing key.
PRIVATE_FILE_MODE = 0o600


def profile_home(home: Path | None = None) -> Path:
    """Return the profile directory: *home*, ``$RELAYDOC_HOME`` or ``~/.relaydoc``."""
    if home is not None:
        return home
    env = os.environ.get(RELAYDOC_HOME_ENV)
    if env:
        return Path(env)
    return DEFAULT_HOME.expanduser()


def atomic_write(path: Path, content: str | bytes, mode: int = PRIVATE_FILE_MODE) -> None:
    """Replace *path* with *content*, readable only by its owner by default.

    A reader sees either the previous file or the complete new one.

    Raises:
        FileNotFoundError: If the parent directory does not exist.
    """
    directory = path.parent
    if not directory.is_dir():
        raise FileNotFoundError(f"Profile directory does not exist: {directory}")

    data = content.encode("utf-8") if isinstance(content, str) else bytes(content)
    tmp = tempfile.NamedTemporaryFile(dir=directory, prefix=f".{path.name}.", delete=False)
    tmp_path = Path(tmp.name)
    try:
        with tmp:
            tmp.write(data)
            tmp.flush()
            os.fsync(tmp.fileno())
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
    _sync_directory(directory)


def _sync_directory(directory: Path) -> None:
    # Not every filesystem accepts fsync on a directory handle.
    with contextlib.suppress(OSError):
        fd = os.open(directory, os.O_RDONLY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)
