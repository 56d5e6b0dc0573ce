"""Working tree access: walking, reading and materializing files.

Paths handed around the engine are repository-relative and use ``/`` as
separator regardless of platform.
"""

import fnmatch
import logging
import os
import stat
from typing import List, Optional

from grove.errors import PathNotFound, StoreIOError
from grove.types import MODE_EXECUTABLE, MODE_FILE


logger = logging.getLogger(__name__)

REPO_DIR_NAME = ".grove"
IGNORE_FILE = ".groveignore"


def load_ignore_patterns(root: str) -> List[str]:
    path = os.path.join(root, IGNORE_FILE)
    try:
        with open(path, "r", encoding="utf-8") as f:
            lines = f.read().splitlines()
    except FileNotFoundError:
        return []
    except OSError as e:
        raise StoreIOError(path, e)
    return [line.strip() for line in lines
            if line.strip() and not line.strip().startswith("#")]


def mode_from_stat(st: os.stat_result) -> int:
    if st.st_mode & stat.S_IXUSR:
        return MODE_EXECUTABLE
    return MODE_FILE


class WorkTree:
    """Files under ``root``, excluding the repository directory and ignored paths."""

    def __init__(self, root: str, ignore: Optional[List[str]] = None):
        self.root = os.path.abspath(root)
        self._ignore = ignore

    def ignore_patterns(self) -> List[str]:
        """Fixed patterns if given, else the current ``.groveignore``."""
        if self._ignore is not None:
            return self._ignore
        return load_ignore_patterns(self.root)

    def abspath(self, rel: str) -> str:
        return os.path.join(self.root, *rel.split("/"))

    def relpath(self, path: str, cwd: Optional[str] = None) -> str:
        """Normalize a user-supplied path to a repository-relative one."""
        base = cwd or os.getcwd()
        full = os.path.abspath(os.path.join(base, path))
        rel = os.path.relpath(full, self.root)
        if rel == os.curdir:
            return ""
        if rel.startswith(os.pardir + os.sep) or rel == os.pardir:
            raise PathNotFound(path)
        return rel.replace(os.sep, "/")

    def is_ignored(self, rel: str, is_dir: bool = False,
                   patterns: Optional[List[str]] = None) -> bool:
        name = rel.rsplit("/", 1)[-1]
        if name == REPO_DIR_NAME:
            return True
        if patterns is None:
            patterns = self.ignore_patterns()
        for pattern in patterns:
            if pattern.endswith("/"):
                if is_dir and (fnmatch.fnmatch(rel, pattern[:-1])
                               or fnmatch.fnmatch(name, pattern[:-1])):
                    return True
                continue
            if fnmatch.fnmatch(rel, pattern) or fnmatch.fnmatch(name, pattern):
                return True
        return False

    def walk(self, start: str = "") -> List[str]:
        """All non-ignored files at or below ``start``, sorted."""
        top = self.abspath(start) if start else self.root
        patterns = self.ignore_patterns()
        if os.path.isfile(top):
            return [] if self.is_ignored(start, patterns=patterns) else [start]
        found: List[str] = []
        for dirpath, dirnames, filenames in os.walk(top):
            rel_dir = os.path.relpath(dirpath, self.root)
            rel_dir = "" if rel_dir == os.curdir else rel_dir.replace(os.sep, "/")
            kept = []
            for d in dirnames:
                rel = f"{rel_dir}/{d}" if rel_dir else d
                if not self.is_ignored(rel, is_dir=True, patterns=patterns):
                    kept.append(d)
            dirnames[:] = kept
            for name in filenames:
                rel = f"{rel_dir}/{name}" if rel_dir else name
                if not self.is_ignored(rel, patterns=patterns):
                    found.append(rel)
        return sorted(found)

    def stat(self, rel: str) -> Optional[os.stat_result]:
        try:
            st = os.stat(self.abspath(rel))
        except (FileNotFoundError, NotADirectoryError):
            return None
        except OSError as e:
            raise StoreIOError(self.abspath(rel), e)
        return st if stat.S_ISREG(st.st_mode) else None

    def exists(self, rel: str) -> bool:
        return self.stat(rel) is not None

    def is_dir(self, rel: str) -> bool:
        return os.path.isdir(self.abspath(rel)) if rel else True

    def read(self, rel: str) -> bytes:
        path = self.abspath(rel)
        try:
            with open(path, "rb") as f:
                return f.read()
        except FileNotFoundError:
            raise PathNotFound(rel)
        except OSError as e:
            raise StoreIOError(path, e)

    def write(self, rel: str, data: bytes, mode: int = MODE_FILE) -> None:
        path = self.abspath(rel)
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            if os.path.isdir(path):
                raise IsADirectoryError(path)
            with open(path, "wb") as f:
                f.write(data)
            current = os.stat(path).st_mode
            if mode == MODE_EXECUTABLE:
                os.chmod(path, current | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
            else:
                os.chmod(path, current & ~(stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH))
        except OSError as e:
            raise StoreIOError(path, e)
        logger.debug("checked out %s", rel)

    def remove(self, rel: str) -> None:
        """Delete a file and any directories it leaves empty."""
        path = self.abspath(rel)
        try:
            os.unlink(path)
        except FileNotFoundError:
            return
        except OSError as e:
            raise StoreIOError(path, e)
        parent = os.path.dirname(path)
        while parent != self.root and os.path.isdir(parent) and not os.listdir(parent):
            os.rmdir(parent)
            parent = os.path.dirname(parent)
        logger.debug("removed %s", rel)
