"""Atomic file writes and advisory locking.

Every file envsync rewrites (env files, `.hx`, `.hxkey`) goes through
atomic_write_bytes so an interrupted run never leaves a half-written file.
"""

from __future__ import annotations

import errno
import fcntl
import logging
import os
import tempfile
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

logger = logging.getLogger(__name__)

LOCK_SUFFIX = ".lock"
# Interval between non-blocking lock attempts (seconds)
LOCK_POLL_INTERVAL = 0.05
DEFAULT_FILE_MODE = 0o644


def atomic_write_bytes(path: Path, content: bytes, *, mode: int = DEFAULT_FILE_MODE) -> None:
    """Write *content* to *path* atomically.

    Writes to a temporary file in the same directory, then renames
    (``os.replace``) into place. Readers see either the old file or the
    new one, never a partial write.

    Args:
        path: Destination file.
        content: Exact bytes to store.
        mode: Permission bits applied before the rename.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "wb") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        # mkstemp creates 0600
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def atomic_write_text(path: Path, content: str, *, mode: int = DEFAULT_FILE_MODE) -> None:
    """UTF-8 variant of atomic_write_bytes."""
    atomic_write_bytes(path, content.encode("utf-8"), mode=mode)


@contextmanager
def locked_file(path: Path, *, timeout: float) -> Iterator[None]:
    """Hold an exclusive advisory lock on *path* for the duration of the context.

    The lock lives on a ``.lock`` sidecar so the data file itself can be
    replaced with ``os.replace`` while the lock is held.

    Args:
        path: File being protected.
        timeout: Seconds to keep retrying before giving up.

    Raises:
        TimeoutError: If another process holds the lock past the timeout.
    """
    lock_path = path.with_name(path.name + LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    deadline = time.monotonic() + timeout
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        while True:
            try:
                fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except OSError as e:
                if e.errno not in (errno.EAGAIN, errno.EACCES):
                    raise
                if time.monotonic() >= deadline:
                    msg = f"could not lock {path} within {timeout:.1f}s"
                    raise TimeoutError(msg) from e
                time.sleep(LOCK_POLL_INTERVAL)
        logger.debug("Acquired lock on %s", lock_path)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)
