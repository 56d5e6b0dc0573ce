"""Reference manager: branches, remote-tracking refs and HEAD.

Refs live under ``refs/heads/<branch>`` and ``refs/remotes/<remote>/<branch>``,
one file per ref holding a commit hash. HEAD holds either
``ref: refs/heads/<branch>`` (attached) or a bare commit hash (detached).
Every write goes through a lock file so concurrent writers are serialized
and readers never see a half-written ref.
"""

import logging
import os
import re
from typing import Dict, List, Optional

from grove.errors import (
    BranchError, BranchExists, InvalidRefName, ObjectNotFound, RefConflict,
    RefNotFound,
)
from grove.fsutil import LOCK_SUFFIX, LockedFile, atomic_write, read_bytes, remove_file
from grove.objects import HASH_HEX_LEN, ObjectStore
from grove.types import Head


logger = logging.getLogger(__name__)

HEAD = "HEAD"
HEADS_PREFIX = "refs/heads/"
REMOTES_PREFIX = "refs/remotes/"
SYMREF_PREFIX = "ref: "

_UNSET = object()
_BAD_CHARS = re.compile(r"[\x00-\x20\x7f~^:?*\[\\]")
_HEX = re.compile(r"^[0-9a-f]+$")


def validate_ref_name(name: str) -> str:
    """Reject names that cannot be stored as a path of ref files."""
    if (not name or name.startswith("-") or name.startswith("/")
            or name.endswith("/") or name.endswith(".") or ".." in name
            or "//" in name or "@{" in name or _BAD_CHARS.search(name)):
        raise InvalidRefName(name)
    for part in name.split("/"):
        if part.startswith(".") or part.endswith(LOCK_SUFFIX):
            raise InvalidRefName(name)
    return name


def branch_ref(branch: str) -> str:
    return HEADS_PREFIX + branch


def remote_ref(remote: str, branch: str) -> str:
    return f"{REMOTES_PREFIX}{remote}/{branch}"


class RefManager:
    """Named, mutable pointers into an object store."""

    def __init__(self, git_dir: str, store: ObjectStore):
        self.git_dir = git_dir
        self.store = store

    def _path(self, full_name: str) -> str:
        return os.path.join(self.git_dir, *full_name.split("/"))

    # -- raw access --

    def read_ref(self, full_name: str) -> Optional[str]:
        """Hash stored in a ref file, None if the ref does not exist."""
        data = read_bytes(self._path(full_name))
        if data is None:
            return None
        return data.decode("ascii").strip() or None

    def list_refs(self, prefix: str = "refs/") -> Dict[str, str]:
        """All refs under ``prefix`` as {full name: hash}."""
        result: Dict[str, str] = {}
        root = self._path(prefix.rstrip("/"))
        if not os.path.isdir(root):
            return result
        for dirpath, _dirnames, filenames in os.walk(root):
            for filename in filenames:
                if filename.endswith(LOCK_SUFFIX):
                    continue
                full_path = os.path.join(dirpath, filename)
                rel = os.path.relpath(full_path, self.git_dir).replace(os.sep, "/")
                value = self.read_ref(rel)
                if value:
                    result[rel] = value
        return dict(sorted(result.items()))

    # -- HEAD --

    def read_head(self) -> Head:
        data = read_bytes(self._path(HEAD))
        if data is None:
            raise RefNotFound(HEAD)
        text = data.decode("utf-8").strip()
        if text.startswith(SYMREF_PREFIX):
            target = text[len(SYMREF_PREFIX):]
            branch = target[len(HEADS_PREFIX):] if target.startswith(HEADS_PREFIX) else target
            return Head(branch=branch, commit=self.read_ref(target))
        return Head(branch=None, commit=text)

    def current_branch(self) -> Optional[str]:
        return self.read_head().branch

    def set_head_branch(self, branch: str) -> None:
        validate_ref_name(branch)
        atomic_write(self._path(HEAD),
                     f"{SYMREF_PREFIX}{branch_ref(branch)}\n".encode("utf-8"))
        logger.debug("HEAD -> %s", branch)

    def set_head_detached(self, commit: str) -> None:
        self._require_commit(commit)
        atomic_write(self._path(HEAD), f"{commit}\n".encode("ascii"))
        logger.debug("HEAD detached at %s", commit[:12])

    # -- resolution --

    def expand(self, name: str) -> str:
        """Full ref name for HEAD, a branch, ``remote/branch`` or a full name."""
        if name == HEAD or name.startswith("refs/"):
            return name
        if self.read_ref(branch_ref(name)) is not None:
            return branch_ref(name)
        if self.read_ref(REMOTES_PREFIX + name) is not None:
            return REMOTES_PREFIX + name
        return branch_ref(name)

    def resolve(self, name: str) -> str:
        """Commit hash named by ``name``. Raises RefNotFound."""
        if name == HEAD:
            head = self.read_head()
            if head.commit is None:
                raise RefNotFound(branch_ref(head.branch) if head.branch else HEAD)
            return head.commit
        full = self.expand(name)
        value = self.read_ref(full)
        if value is not None:
            return value
        if _HEX.match(name):
            try:
                obj_hash = self.store.resolve_prefix(name)
            except ObjectNotFound:
                raise RefNotFound(name)
            if self.store.is_commit(obj_hash):
                return obj_hash
        raise RefNotFound(name)

    def try_resolve(self, name: str) -> Optional[str]:
        try:
            return self.resolve(name)
        except RefNotFound:
            return None

    # -- mutation --

    def _require_commit(self, obj_hash: str) -> None:
        if len(obj_hash) != HASH_HEX_LEN or not self.store.is_commit(obj_hash):
            raise ObjectNotFound(obj_hash)

    def update(self, name: str, new_hash: str, expected_old=_UNSET) -> None:
        """Point ``name`` at ``new_hash``, compare-and-swap style.

        ``expected_old`` omitted: unconditional write. ``None``: the ref must
        not exist yet. A hash: the ref must currently hold exactly that.
        HEAD updates the branch it is attached to, or itself when detached.
        """
        self._require_commit(new_hash)
        if name == HEAD:
            head = self.read_head()
            if head.branch is None:
                self._swap(HEAD, new_hash, expected_old)
                return
            name = branch_ref(head.branch)
        full = self.expand(name)
        validate_ref_name(full)
        self._swap(full, new_hash, expected_old)

    def _swap(self, full_name: str, new_hash: str, expected_old) -> None:
        with LockedFile(self._path(full_name)) as lock:
            raw = lock.read_current()
            current = raw.decode("ascii").strip() if raw else None
            if expected_old is not _UNSET and current != expected_old:
                raise RefConflict(full_name, expected_old, current)
            lock.write(f"{new_hash}\n".encode("ascii"))
        logger.info("%s: %s -> %s", full_name,
                    current[:12] if current else "(none)", new_hash[:12])

    def delete_ref(self, full_name: str, expected_old=_UNSET) -> None:
        path = self._path(full_name)
        with LockedFile(path) as lock:
            raw = lock.read_current()
            current = raw.decode("ascii").strip() if raw else None
            if current is None:
                raise RefNotFound(full_name)
            if expected_old is not _UNSET and current != expected_old:
                raise RefConflict(full_name, expected_old, current)
            remove_file(path)
            lock.abort()
        self._prune_empty_dirs(os.path.dirname(path))
        logger.info("deleted %s (was %s)", full_name, current[:12])

    def _prune_empty_dirs(self, directory: str) -> None:
        refs_root = self._path("refs")
        while (os.path.abspath(directory) != os.path.abspath(refs_root)
               and os.path.isdir(directory) and not os.listdir(directory)):
            os.rmdir(directory)
            directory = os.path.dirname(directory)

    # -- branches --

    def branches(self) -> List[str]:
        return [name[len(HEADS_PREFIX):] for name in self.list_refs(HEADS_PREFIX)]

    def remote_branches(self, remote: Optional[str] = None) -> List[str]:
        """Tracking refs as ``remote/branch`` strings."""
        prefix = REMOTES_PREFIX + (f"{remote}/" if remote else "")
        return [name[len(REMOTES_PREFIX):] for name in self.list_refs(prefix)]

    def create_branch(self, name: str, at_commit: str) -> None:
        validate_ref_name(name)
        if self.read_ref(branch_ref(name)) is not None:
            raise BranchExists(name)
        self.update(branch_ref(name), at_commit, expected_old=None)

    def delete_branch(self, name: str) -> str:
        """Remove a branch, returning the commit it pointed at."""
        if self.current_branch() == name:
            raise BranchError(f"cannot delete branch '{name}': it is checked out")
        full = branch_ref(name)
        tip = self.read_ref(full)
        if tip is None:
            raise RefNotFound(name)
        self.delete_ref(full, expected_old=tip)
        return tip

    def delete_remote_refs(self, remote: str) -> None:
        for name in self.list_refs(f"{REMOTES_PREFIX}{remote}/"):
            self.delete_ref(name)
