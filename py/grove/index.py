"""Staging area: the durable map of tracked paths to blobs.

The index is a versioned JSON document rewritten atomically on every
mutation::

    {"version": 1, "entries": {"<path>": {"hash": ..., "mode": ...,
                                          "size": ..., "mtime-ns": ...,
                                          "conflict": {...}?}}}

Cached size/mtime never decide that a file is unchanged: a size mismatch
proves a change, anything else is settled by hashing the content.
"""

import json
import logging
from typing import Dict, Iterable, List, Optional

from grove.errors import PathNotFound, SchemaVersionError
from grove.fsutil import atomic_write, read_bytes
from grove.objects import ObjectStore, hash_object
from grove.types import (
    BLOB, Conflict, FileStatus, FlatTree, IndexEntry, StatusEntry,
)
from grove.worktree import WorkTree, mode_from_stat


logger = logging.getLogger(__name__)

INDEX_VERSION = 1


class Index:
    """Tracked paths and their staged blobs."""

    def __init__(self, path: str, store: ObjectStore, worktree: WorkTree):
        self.path = path
        self.store = store
        self.worktree = worktree
        self.entries: Dict[str, IndexEntry] = {}
        self.load()

    # -- persistence --

    def load(self) -> None:
        raw = read_bytes(self.path)
        if raw is None:
            self.entries = {}
            return
        try:
            doc = json.loads(raw.decode("utf-8"))
        except ValueError:
            raise SchemaVersionError("index", "unreadable")
        if not isinstance(doc, dict) or doc.get("version") != INDEX_VERSION:
            raise SchemaVersionError(
                "index", doc.get("version") if isinstance(doc, dict) else None)
        self.entries = {path: IndexEntry.from_json(data)
                        for path, data in doc.get("entries", {}).items()}

    def save(self) -> None:
        doc = {
            "version": INDEX_VERSION,
            "entries": {path: self.entries[path].to_json()
                        for path in sorted(self.entries)},
        }
        atomic_write(self.path, json.dumps(doc, indent=1).encode("utf-8"))
        logger.debug("index saved (%d entries)", len(self.entries))

    # -- queries --

    def __contains__(self, path: str) -> bool:
        return path in self.entries

    def __len__(self) -> int:
        return len(self.entries)

    def get(self, path: str) -> Optional[IndexEntry]:
        return self.entries.get(path)

    def paths(self) -> List[str]:
        return sorted(self.entries)

    def as_flat(self) -> FlatTree:
        return {path: (e.mode, e.obj_hash) for path, e in self.entries.items()}

    def conflicts(self) -> List[Conflict]:
        return [e.conflict for _, e in sorted(self.entries.items())
                if e.conflict is not None]

    def _tracked_under(self, directory: str) -> List[str]:
        if not directory:
            return list(self.entries)
        prefix = directory + "/"
        return [p for p in self.entries if p.startswith(prefix)]

    # -- mutation --

    def stage_file(self, rel: str) -> IndexEntry:
        """Hash a working file into the store and record it (unsaved)."""
        st = self.worktree.stat(rel)
        if st is None:
            raise PathNotFound(rel)
        data = self.worktree.read(rel)
        entry = IndexEntry(obj_hash=self.store.write_blob(data),
                           mode=mode_from_stat(st), size=len(data),
                           mtime_ns=st.st_mtime_ns)
        self.entries[rel] = entry
        return entry

    def add(self, paths: Iterable[str]) -> List[str]:
        """Stage working-tree state of ``paths``; returns paths touched.

        Directories expand to the files below them. A tracked path that is
        gone from the working tree has its removal staged, including a file
        entry replaced by a directory of the same name and vice versa.
        """
        touched: List[str] = []
        for rel in paths:
            rel = rel.strip("/")
            if rel and self.worktree.exists(rel):
                # a file at rel means nothing tracked can live below it
                for tracked in self._tracked_under(rel):
                    del self.entries[tracked]
                    touched.append(tracked)
                self.stage_file(rel)
                touched.append(rel)
                continue
            if self.worktree.is_dir(rel):
                if rel in self.entries:
                    del self.entries[rel]
                    touched.append(rel)
                files = self.worktree.walk(rel)
                for f in files:
                    self.stage_file(f)
                present = set(files)
                for tracked in self._tracked_under(rel):
                    if tracked not in present and not self.worktree.exists(tracked):
                        del self.entries[tracked]
                        touched.append(tracked)
                touched.extend(files)
                continue
            gone = [rel] if rel in self.entries else self._tracked_under(rel)
            if not gone:
                raise PathNotFound(rel)
            for tracked in gone:
                del self.entries[tracked]
                touched.append(tracked)
        self.save()
        return sorted(set(touched))

    def set_entry(self, path: str, mode: int, obj_hash: str,
                  size: int = -1, mtime_ns: int = 0) -> None:
        self.entries[path] = IndexEntry(obj_hash=obj_hash, mode=mode,
                                        size=size, mtime_ns=mtime_ns)

    def remove(self, path: str) -> None:
        self.entries.pop(path, None)

    def mark_conflict(self, conflict: Conflict, mode: int) -> None:
        """Record an unresolved path, keeping every contributing blob."""
        obj_hash = conflict.ours or conflict.theirs or conflict.base
        self.entries[conflict.path] = IndexEntry(
            obj_hash=obj_hash, mode=mode, conflict=conflict)

    def reset_to(self, flat: FlatTree) -> None:
        """Replace all entries with a flattened tree (unsaved, stat unknown)."""
        self.entries = {path: IndexEntry(obj_hash=obj_hash, mode=mode)
                        for path, (mode, obj_hash) in flat.items()}

    def refresh_stat(self, path: str) -> None:
        """Cache the working file's stat if its content matches the entry."""
        entry = self.entries.get(path)
        st = self.worktree.stat(path)
        if entry is None or st is None:
            return
        data = self.worktree.read(path)
        if hash_object(BLOB, data) == entry.obj_hash:
            self.entries[path] = IndexEntry(
                obj_hash=entry.obj_hash, mode=entry.mode, size=len(data),
                mtime_ns=st.st_mtime_ns, conflict=entry.conflict)

    # -- change detection --

    def working_hash(self, path: str) -> Optional[str]:
        """Blob hash of the working file, None if it is absent."""
        if not self.worktree.exists(path):
            return None
        return hash_object(BLOB, self.worktree.read(path))

    def is_modified(self, path: str) -> bool:
        """Working file differs from the staged entry (content or mode)."""
        entry = self.entries[path]
        st = self.worktree.stat(path)
        if st is None:
            return True
        if mode_from_stat(st) != entry.mode:
            return True
        if entry.size >= 0 and st.st_size != entry.size:
            return True
        return self.working_hash(path) != entry.obj_hash

    def status(self, head: FlatTree) -> List[StatusEntry]:
        """Classify every path known to HEAD, the index or the working tree.

        Ignore rules only hide untracked files; tracked paths are always
        looked up directly.
        """
        working = set(self.worktree.walk())
        result: List[StatusEntry] = []
        for path in sorted(set(head) | set(self.entries) | working):
            entry = self.entries.get(path)
            if entry is not None and entry.conflict is not None:
                result.append(StatusEntry(path, FileStatus.CONFLICTED,
                                          FileStatus.CONFLICTED))
                continue
            in_head = path in head
            if entry is None:
                staged = FileStatus.DELETED if in_head else FileStatus.UNTRACKED
                unstaged = (FileStatus.UNTRACKED if path in working
                            else FileStatus.UNMODIFIED)
                result.append(StatusEntry(path, staged, unstaged))
                continue
            if not in_head:
                staged = FileStatus.ADDED
            elif head[path] != (entry.mode, entry.obj_hash):
                staged = FileStatus.MODIFIED
            else:
                staged = FileStatus.UNMODIFIED
            if not self.worktree.exists(path):
                unstaged = FileStatus.DELETED
            elif self.is_modified(path):
                unstaged = FileStatus.MODIFIED
            else:
                unstaged = FileStatus.UNMODIFIED
            result.append(StatusEntry(path, staged, unstaged))
        return result

    def dirty_paths(self, head: FlatTree) -> List[str]:
        """Tracked paths whose staged or working state differs from HEAD."""
        return [s.path for s in self.status(head)
                if s.staged not in (FileStatus.UNMODIFIED, FileStatus.UNTRACKED)
                or s.unstaged not in (FileStatus.UNMODIFIED, FileStatus.UNTRACKED)]

    def working_snapshot(self) -> FlatTree:
        """Index overlaid with working-tree content of tracked files.

        Modified files are hashed into the store; tracked files missing from
        the working tree are left out.
        """
        flat: FlatTree = {}
        for path, entry in sorted(self.entries.items()):
            st = self.worktree.stat(path)
            if st is None:
                continue
            if self.is_modified(path):
                data = self.worktree.read(path)
                flat[path] = (mode_from_stat(st), self.store.write_blob(data))
            else:
                flat[path] = (entry.mode, entry.obj_hash)
        return flat
