"""Stash store: shelve uncommitted work as unreachable commits.

The stash sequence is a versioned JSON document at ``.grove/stash``,
most recent entry first::

    {"version": 1, "entries": [{"commit": ..., "base": ...,
                                "index-tree": ..., "message": ...,
                                "timestamp": ...}, ...]}
"""

import json
import logging
import os
import time
from typing import List, Optional, Tuple

from grove.errors import (
    MergeConflict, MergeInProgress, RefNotFound, SchemaVersionError,
    StashEmpty, UncommittedChanges, UnmergedPaths,
)
from grove.fsutil import atomic_write, read_bytes
from grove.merge import materialize, merge_trees
from grove.repository import Repository
from grove.snapshot import build_tree, commit_flat, commit_tree, diff_flat, flatten_tree
from grove.types import StashEntry


logger = logging.getLogger(__name__)

STASH_VERSION = 1


class StashStore:
    """Ordered stash entries of one repository."""

    def __init__(self, repo: Repository):
        self.repo = repo
        self.path = os.path.join(repo.git_dir, "stash")

    # -- persistence --

    def load(self) -> List[StashEntry]:
        raw = read_bytes(self.path)
        if raw is None:
            return []
        try:
            doc = json.loads(raw.decode("utf-8"))
        except ValueError:
            raise SchemaVersionError("stash", "unreadable")
        if not isinstance(doc, dict) or doc.get("version") != STASH_VERSION:
            raise SchemaVersionError(
                "stash", doc.get("version") if isinstance(doc, dict) else None)
        return [StashEntry.from_json(e) for e in doc.get("entries", [])]

    def _save(self, entries: List[StashEntry]) -> None:
        doc = {"version": STASH_VERSION, "entries": [e.to_json() for e in entries]}
        atomic_write(self.path, json.dumps(doc, indent=1).encode("utf-8"))

    def _entry(self, position: int) -> StashEntry:
        entries = self.load()
        if position < 0 or position >= len(entries):
            raise StashEmpty(position)
        return entries[position]

    # -- operations --

    def push(self, message: Optional[str] = None) -> Optional[StashEntry]:
        """Shelve index + working-tree changes and reset to HEAD.

        Returns None when there is nothing to stash.
        """
        repo = self.repo
        unresolved = repo.index.conflicts()
        if unresolved:
            raise UnmergedPaths([c.path for c in unresolved])
        head = repo.head()
        if head.commit is None:
            raise RefNotFound("HEAD")
        head_flat = commit_flat(repo.store, head.commit)
        index_flat = repo.index.as_flat()
        snapshot = repo.index.working_snapshot()
        if snapshot == head_flat and index_flat == head_flat:
            logger.info("no local changes to save")
            return None

        summary = repo.store.read_commit(head.commit).summary()
        if not message:
            message = f"WIP on {head.branch or '(no branch)'}: {head.commit[:7]} {summary}"
        timestamp = int(time.time())
        commit = commit_tree(repo.store, build_tree(repo.store, snapshot),
                             [head.commit], repo.config.author(), message, timestamp)
        entry = StashEntry(commit=commit, base=head.commit,
                           index_tree=build_tree(repo.store, index_flat),
                           message=message, timestamp=timestamp)
        self._save([entry] + self.load())
        repo.reset_hard(head_flat)
        logger.info("saved working directory and index state: %s", message)
        return entry

    def apply(self, position: int = 0, drop: bool = False) -> StashEntry:
        """Reapply a stash entry on top of the current HEAD.

        On conflict the entry is kept and MergeConflict is raised after the
        conflict state has been written.
        """
        repo = self.repo
        entry = self._entry(position)
        if repo.merge_head():
            raise MergeInProgress()
        current = repo.head_flat()
        dirty = repo.index.dirty_paths(current)
        if dirty:
            raise UncommittedChanges(dirty, "apply stash")

        base_flat = commit_flat(repo.store, entry.base)
        stashed = commit_flat(repo.store, entry.commit)
        outcome = merge_trees(base_flat, current, stashed)
        repo.check_untracked(current, {p: v for p, v in outcome.merged.items()
                                       if current.get(p) != v})
        materialize(repo.store, repo.index, repo.worktree, current, outcome,
                    "Updated upstream", "Stashed changes")
        if outcome.conflicts:
            raise MergeConflict(outcome.conflicts, "stash apply")

        if current == base_flat:
            # HEAD has not moved: the staged state can be restored exactly
            repo.index.reset_to(flatten_tree(repo.store, entry.index_tree))
            for path in repo.index.paths():
                repo.index.refresh_stat(path)
            repo.index.save()
        if drop:
            self._save([e for e in self.load() if e.commit != entry.commit])
            logger.info("dropped stash@{%d} (%s)", position, entry.commit[:10])
        return entry

    def pop(self, position: int = 0) -> StashEntry:
        return self.apply(position, drop=True)

    def list(self) -> List[StashEntry]:
        return self.load()

    def show(self, position: int = 0) -> Tuple[StashEntry, List[Tuple[str, str]]]:
        """Entry plus its path-level changes relative to its base."""
        entry = self._entry(position)
        changes = diff_flat(commit_flat(self.repo.store, entry.base),
                            commit_flat(self.repo.store, entry.commit))
        return entry, changes

    def drop(self, position: int = 0) -> StashEntry:
        entries = self.load()
        if position < 0 or position >= len(entries):
            raise StashEmpty(position)
        entry = entries.pop(position)
        self._save(entries)
        return entry

    def clear(self) -> int:
        count = len(self.load())
        self._save([])
        return count
