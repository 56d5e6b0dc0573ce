"""Three-way merge engine.

A merge compares each path across the common ancestor (A), our side (O)
and their side (T), identifying a path's state by ``(mode, blob hash)``
or absence:

    O == T          -> take it (unchanged, identical change, or both deleted)
    O == A          -> take T (only they changed it)
    T == A          -> take O (only we changed it)
    otherwise       -> conflict ("content", "modify/delete" or "add/add")

A file left at a path that another result needs as a directory is a
"file/directory" conflict: the directory keeps the path.
"""

import logging
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Set

from grove.index import Index
from grove.objects import ObjectStore
from grove.types import MODE_FILE, Conflict, FlatTree
from grove.worktree import WorkTree


logger = logging.getLogger(__name__)

MARKER_OURS = b"<<<<<<<"
MARKER_BASE = b"|||||||"
MARKER_SEP = b"======="
MARKER_THEIRS = b">>>>>>>"

FILE_DIRECTORY = "file/directory"


# ============================================================
# History
# ============================================================

def ancestors(store: ObjectStore, commit: str) -> List[str]:
    """``commit`` and everything it descends from, nearest first."""
    seen = {commit}
    order = []
    queue = deque([commit])
    while queue:
        current = queue.popleft()
        order.append(current)
        for parent in store.read_commit(current).parents:
            if parent not in seen:
                seen.add(parent)
                queue.append(parent)
    return order


def common_ancestor(store: ObjectStore, a: str, b: str) -> Optional[str]:
    """Nearest commit (breadth-first from ``a``) that ``b`` also descends from."""
    b_ancestors: Set[str] = set(ancestors(store, b))
    for candidate in ancestors(store, a):
        if candidate in b_ancestors:
            return candidate
    return None


def is_ancestor(store: ObjectStore, a: str, b: str) -> bool:
    """True if ``a`` is ``b`` or one of its ancestors."""
    return a in ancestors(store, b)


# ============================================================
# Tree reconciliation
# ============================================================

@dataclass
class MergeOutcome:
    """Reconciled paths plus the conflict set."""
    merged: FlatTree = field(default_factory=dict)
    conflicts: List[Conflict] = field(default_factory=list)
    conflict_modes: Dict[str, int] = field(default_factory=dict)


def _conflict_kind(a, o, t) -> str:
    if a is None:
        return "add/add"
    if o is None or t is None:
        return "modify/delete"
    return "content"


def _parent_dirs(path: str) -> List[str]:
    parts = path.split("/")[:-1]
    return ["/".join(parts[:i]) for i in range(1, len(parts) + 1)]


def _file_directory_conflicts(outcome: MergeOutcome, base: FlatTree,
                              ours: FlatTree, theirs: FlatTree) -> None:
    """Turn every result file that another result path needs as a directory
    into a "file/directory" conflict."""
    paths = set(outcome.merged) | {c.path for c in outcome.conflicts}
    colliding = paths & {d for p in paths for d in _parent_dirs(p)}
    if not colliding:
        return
    conflicts = [replace(c, kind=FILE_DIRECTORY) if c.path in colliding else c
                 for c in outcome.conflicts]
    for path in sorted(colliding & set(outcome.merged)):
        a, o, t = base.get(path), ours.get(path), theirs.get(path)
        outcome.conflict_modes[path] = outcome.merged.pop(path)[0]
        conflicts.append(Conflict(
            path=path,
            base=a[1] if a else None,
            ours=o[1] if o else None,
            theirs=t[1] if t else None,
            kind=FILE_DIRECTORY,
        ))
    outcome.conflicts = sorted(conflicts, key=lambda c: c.path)


def merge_trees(base: FlatTree, ours: FlatTree, theirs: FlatTree) -> MergeOutcome:
    """Per-path three-way classification. Pure: touches no storage."""
    outcome = MergeOutcome()
    for path in sorted(set(base) | set(ours) | set(theirs)):
        a, o, t = base.get(path), ours.get(path), theirs.get(path)
        if o == t:
            result = o
        elif o == a:
            result = t
        elif t == a:
            result = o
        else:
            conflict = Conflict(
                path=path,
                base=a[1] if a else None,
                ours=o[1] if o else None,
                theirs=t[1] if t else None,
                kind=_conflict_kind(a, o, t),
            )
            outcome.conflicts.append(conflict)
            outcome.conflict_modes[path] = (o or t or a)[0]
            continue
        if result is not None:
            outcome.merged[path] = result
    _file_directory_conflicts(outcome, base, ours, theirs)
    return outcome


# ============================================================
# Conflict materialization
# ============================================================

def _section(store: ObjectStore, obj_hash: Optional[str]) -> bytes:
    if obj_hash is None:
        return b""
    data = store.read_blob(obj_hash)
    if data and not data.endswith(b"\n"):
        data += b"\n"
    return data


def conflict_markers(store: ObjectStore, conflict: Conflict,
                     ours_label: str = "ours", theirs_label: str = "theirs",
                     base_label: str = "base") -> bytes:
    """diff3-style file body delimiting the ours/base/theirs content."""
    return b"".join([
        MARKER_OURS + b" " + ours_label.encode("utf-8") + b"\n",
        _section(store, conflict.ours),
        MARKER_BASE + b" " + base_label.encode("utf-8") + b"\n",
        _section(store, conflict.base),
        MARKER_SEP + b"\n",
        _section(store, conflict.theirs),
        MARKER_THEIRS + b" " + theirs_label.encode("utf-8") + b"\n",
    ])


def checkout_flat(store: ObjectStore, index: Index, worktree: WorkTree,
                  current: FlatTree, target: FlatTree) -> List[str]:
    """Move index and working tree from ``current`` to ``target`` (index unsaved).

    Only paths that differ are touched; returns them. Removals run first,
    deepest paths first, so a directory emptied by the move is gone before
    a file of the same name is written.
    """
    changed = [path for path in sorted(set(current) | set(target))
               if current.get(path) != target.get(path) or path not in index]
    removed = [path for path in changed if path not in target]
    for path in sorted(removed, key=lambda p: p.count("/"), reverse=True):
        worktree.remove(path)
        index.remove(path)
    for path in changed:
        if path not in target:
            continue
        mode, obj_hash = target[path]
        data = store.read_blob(obj_hash)
        worktree.write(path, data, mode)
        st = worktree.stat(path)
        index.set_entry(path, mode, obj_hash, size=len(data),
                        mtime_ns=st.st_mtime_ns if st else 0)
    return changed


def set_aside_path(conflict: Conflict, ours_label: str, theirs_label: str) -> str:
    """Where the file side of a file/directory conflict is written."""
    label = ours_label if conflict.ours is not None else theirs_label
    return f"{conflict.path}~{label.replace('/', '_')}"


def materialize(store: ObjectStore, index: Index, worktree: WorkTree,
                current: FlatTree, outcome: MergeOutcome,
                ours_label: str, theirs_label: str) -> None:
    """Write a merge outcome into index and working tree, then save the index.

    Clean paths become the reconciled content; each conflicting path gets a
    marker file and an unresolved index entry. For a file/directory
    conflict the directory keeps the path and the file goes to
    ``set_aside_path``.
    """
    for conflict in outcome.conflicts:
        if conflict.kind == FILE_DIRECTORY and worktree.exists(conflict.path):
            worktree.remove(conflict.path)
    without_conflicts = {p: v for p, v in current.items()
                         if p not in outcome.conflict_modes}
    checkout_flat(store, index, worktree, without_conflicts, outcome.merged)
    for conflict in outcome.conflicts:
        mode = outcome.conflict_modes.get(conflict.path, MODE_FILE)
        if conflict.kind == FILE_DIRECTORY:
            side = conflict.ours if conflict.ours is not None else conflict.theirs
            worktree.write(set_aside_path(conflict, ours_label, theirs_label),
                           store.read_blob(side), mode)
        else:
            body = conflict_markers(store, conflict, ours_label, theirs_label)
            worktree.write(conflict.path, body, mode)
        index.mark_conflict(conflict, mode)
        logger.info("CONFLICT (%s): %s", conflict.kind, conflict.path)
    index.save()
