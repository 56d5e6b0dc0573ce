"""Snapshot builder: flat path maps <-> Tree hierarchies, and commits.

Trees are built bottom-up from an explicit worklist ordered by directory
depth, so deep hierarchies never recurse on the Python stack. Because a
tree's hash depends only on its sorted entries, identical subtrees
collapse to a single stored object.
"""

import logging
import time
from collections import defaultdict
from typing import Dict, List, Optional, Sequence, Tuple

from grove.objects import ObjectStore
from grove.types import MODE_DIR, Commit, FlatTree, TreeEntry


logger = logging.getLogger(__name__)


def _split(path: str) -> Tuple[str, str]:
    head, _, tail = path.rpartition("/")
    return head, tail


def _depth(directory: str) -> int:
    return directory.count("/") + 1 if directory else 0


def build_tree(store: ObjectStore, flat: FlatTree) -> str:
    """Store the tree hierarchy for ``flat`` and return the root tree hash."""
    children: Dict[str, List[TreeEntry]] = defaultdict(list)
    directories = {""}
    for path, (mode, obj_hash) in flat.items():
        directory, name = _split(path)
        children[directory].append(TreeEntry(name=name, mode=mode, obj_hash=obj_hash))
        # register every ancestor directory so empty intermediates get a tree
        while directory and directory not in directories:
            directories.add(directory)
            directory, _ = _split(directory)

    # deepest directories first: a parent is only hashed once all its
    # subdirectories have been stored
    for directory in sorted(directories, key=_depth, reverse=True):
        tree_hash = store.write_tree(children[directory])
        if directory:
            parent, name = _split(directory)
            children[parent].append(TreeEntry(name=name, mode=MODE_DIR,
                                              obj_hash=tree_hash))
        else:
            logger.debug("built tree %s from %d paths", tree_hash[:12], len(flat))
            return tree_hash
    raise AssertionError("root directory was not built")


def flatten_tree(store: ObjectStore, tree_hash: Optional[str]) -> FlatTree:
    """All file paths below ``tree_hash`` as {path: (mode, blob hash)}."""
    flat: FlatTree = {}
    if tree_hash is None:
        return flat
    pending = [("", tree_hash)]
    while pending:
        prefix, current = pending.pop()
        for entry in store.read_tree(current):
            path = f"{prefix}{entry.name}"
            if entry.is_file:
                flat[path] = (entry.mode, entry.obj_hash)
            else:
                pending.append((path + "/", entry.obj_hash))
    return flat


def commit_tree(store: ObjectStore, tree: str, parents: Sequence[str],
                author: str, message: str, timestamp: Optional[int] = None,
                tz_offset: Optional[int] = None) -> str:
    """Store a Commit object; advancing a branch is the caller's job."""
    if timestamp is None:
        timestamp = int(time.time())
    if tz_offset is None:
        tz_offset = -(time.altzone if time.daylight and time.localtime().tm_isdst
                      else time.timezone) // 60
    commit = Commit(tree=tree, parents=tuple(parents), author=author,
                    message=message, timestamp=timestamp, tz_offset=tz_offset)
    commit_hash = store.write_commit(commit)
    logger.debug("commit %s (tree %s, %d parents)", commit_hash[:12],
                 tree[:12], len(parents))
    return commit_hash


def commit_flat(store: ObjectStore, commit_hash: Optional[str]) -> FlatTree:
    """Flattened tree of a commit; empty for None (unborn branch)."""
    if commit_hash is None:
        return {}
    return flatten_tree(store, store.read_commit(commit_hash).tree)


def diff_flat(old: FlatTree, new: FlatTree) -> List[Tuple[str, str]]:
    """Path-level changes from ``old`` to ``new`` as (path, "A"|"M"|"D")."""
    changes = []
    for path in sorted(set(old) | set(new)):
        if path not in old:
            changes.append((path, "A"))
        elif path not in new:
            changes.append((path, "D"))
        elif old[path] != new[path]:
            changes.append((path, "M"))
    return changes
