"""Unified diffs between snapshots, the index and the working tree."""

import difflib
from dataclasses import dataclass
from typing import Iterable, List, Optional

from grove.index import Index
from grove.objects import ObjectStore
from grove.snapshot import diff_flat
from grove.types import FlatTree


@dataclass(frozen=True)
class FileDiff:
    path: str
    change: str  # "A", "M" or "D"
    old_hash: Optional[str]
    new_hash: Optional[str]
    patch: str


def _is_binary(data: bytes) -> bool:
    return b"\0" in data[:8000]


def unified_patch(path: str, old: Optional[bytes], new: Optional[bytes]) -> str:
    old_data, new_data = old or b"", new or b""
    if _is_binary(old_data) or _is_binary(new_data):
        return f"Binary files a/{path} and b/{path} differ\n"
    lines = difflib.unified_diff(
        old_data.decode("utf-8", "replace").splitlines(keepends=True),
        new_data.decode("utf-8", "replace").splitlines(keepends=True),
        fromfile=f"a/{path}" if old is not None else "/dev/null",
        tofile=f"b/{path}" if new is not None else "/dev/null",
    )
    out = []
    for line in lines:
        out.append(line if line.endswith("\n") else line + "\n\\ No newline at end of file\n")
    return "".join(out)


def _selected(path: str, paths: Optional[Iterable[str]]) -> bool:
    if not paths:
        return True
    return any(p in ("", path) or path.startswith(p.rstrip("/") + "/") for p in paths)


def diff_flats(store: ObjectStore, old: FlatTree, new: FlatTree,
               paths: Optional[List[str]] = None) -> List[FileDiff]:
    """Diff two flattened trees (commits or the index)."""
    result = []
    for path, change in diff_flat(old, new):
        if not _selected(path, paths):
            continue
        old_hash = old[path][1] if path in old else None
        new_hash = new[path][1] if path in new else None
        old_data = store.read_blob(old_hash) if old_hash else None
        new_data = store.read_blob(new_hash) if new_hash else None
        result.append(FileDiff(path, change, old_hash, new_hash,
                               unified_patch(path, old_data, new_data)))
    return result


def diff_worktree(index: Index, paths: Optional[List[str]] = None) -> List[FileDiff]:
    """Unstaged changes: index entries against the working tree."""
    result = []
    for path in index.paths():
        if not _selected(path, paths):
            continue
        entry = index.entries[path]
        if entry.conflict is not None or not index.is_modified(path):
            continue
        old_data = index.store.read_blob(entry.obj_hash)
        if index.worktree.exists(path):
            new_data = index.worktree.read(path)
            new_hash = index.working_hash(path)
            change = "M"
        else:
            new_data, new_hash, change = None, None, "D"
        result.append(FileDiff(path, change, entry.obj_hash, new_hash,
                               unified_patch(path, old_data, new_data)))
    return result
