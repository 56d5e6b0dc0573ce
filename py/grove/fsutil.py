"""Atomic file replacement for grove's mutable state.

Every mutable file (refs, HEAD, index, stash, config, merge state) is
rewritten through ``<path>.lock``: the lock is created exclusively, the
new content is written and fsynced, and the lock is renamed over the
target. Readers therefore see either the old or the new file, never a
partial one, and two writers cannot interleave.
"""

import logging
import os
from typing import Optional

from grove.errors import GroveError, LockError, StoreIOError


logger = logging.getLogger(__name__)

LOCK_SUFFIX = ".lock"


class LockedFile:
    """Exclusive lock on ``path`` that becomes the new content on commit.

    Usage:
        with LockedFile(path) as lock:
            current = lock.read_current()
            lock.write(b"...")
        # renamed into place on clean exit, discarded on exception
    """

    def __init__(self, path: str):
        self.path = path
        self.lock_path = path + LOCK_SUFFIX
        self._fd: Optional[int] = None
        self._done = False

    def __enter__(self) -> "LockedFile":
        parent = os.path.dirname(self.path)
        try:
            if parent:
                os.makedirs(parent, exist_ok=True)
            self._fd = os.open(self.lock_path,
                               os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        except FileExistsError:
            raise LockError(self.lock_path)
        except OSError as e:
            raise StoreIOError(self.lock_path, e)
        return self

    def read_current(self) -> Optional[bytes]:
        """Content of the locked target, None if it does not exist."""
        return read_bytes(self.path)

    def write(self, data: bytes) -> None:
        if self._fd is None:
            raise GroveError(f"lock on {self.path} is not held")
        try:
            view = memoryview(data)
            while view:
                written = os.write(self._fd, view)
                view = view[written:]
        except OSError as e:
            raise StoreIOError(self.lock_path, e)

    def commit(self) -> None:
        if self._fd is None:
            raise GroveError(f"lock on {self.path} is not held")
        try:
            os.fsync(self._fd)
            os.close(self._fd)
            self._fd = None
            os.replace(self.lock_path, self.path)
        except OSError as e:
            self.abort()
            raise StoreIOError(self.path, e)
        self._done = True

    def abort(self) -> None:
        if self._fd is not None:
            os.close(self._fd)
            self._fd = None
        if not self._done:
            try:
                os.unlink(self.lock_path)
            except FileNotFoundError:
                pass
        self._done = True

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None and not self._done:
            self.commit()
        else:
            self.abort()


def atomic_write(path: str, data: bytes) -> None:
    """Replace ``path`` with ``data`` atomically."""
    with LockedFile(path) as lock:
        lock.write(data)
    logger.debug("wrote %s (%d bytes)", path, len(data))


def read_bytes(path: str) -> Optional[bytes]:
    """Whole file content, or None if it does not exist."""
    try:
        with open(path, "rb") as f:
            return f.read()
    except FileNotFoundError:
        return None
    except OSError as e:
        raise StoreIOError(path, e)


def remove_file(path: str) -> bool:
    """Unlink ``path``; return False if it was already gone."""
    try:
        os.unlink(path)
        return True
    except FileNotFoundError:
        return False
    except OSError as e:
        raise StoreIOError(path, e)
