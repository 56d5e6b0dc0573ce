"""Core data types for the grove engine.

All value types are immutable dataclasses for safety and hashability.
Types that are persisted outside the object store (index entries, stash
entries, conflicts) carry ``to_json``/``from_json`` pairs.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple


MODE_FILE = 0o100644
MODE_EXECUTABLE = 0o100755
MODE_DIR = 0o40000

BLOB = "blob"
TREE = "tree"
COMMIT = "commit"
OBJECT_KINDS = (BLOB, TREE, COMMIT)

# path -> (mode, blob hash); the flattened form of a tree or of the index
FlatTree = Dict[str, Tuple[int, str]]


# ============================================================
# Stored objects
# ============================================================

@dataclass(frozen=True, order=True)
class TreeEntry:
    """One named slot of a Tree. Ordering is by name, which is what gets hashed."""
    name: str
    mode: int
    obj_hash: str

    @property
    def is_file(self) -> bool:
        return self.mode != MODE_DIR


@dataclass(frozen=True)
class Commit:
    """A parented snapshot. ``obj_hash`` is filled in once the commit is read or written."""
    tree: str
    parents: Tuple[str, ...] = ()
    author: str = ""
    message: str = ""
    timestamp: int = 0  # seconds since epoch
    tz_offset: int = 0  # minutes east of UTC
    obj_hash: Optional[str] = None

    @property
    def is_merge(self) -> bool:
        return len(self.parents) > 1

    def summary(self) -> str:
        """First line of the message."""
        return self.message.split("\n", 1)[0]


# ============================================================
# References
# ============================================================

@dataclass(frozen=True)
class Head:
    """Where HEAD points.

    Attached: ``branch`` is set and ``commit`` is that branch's tip (None
    while the branch is unborn). Detached: ``branch`` is None.
    """
    branch: Optional[str]
    commit: Optional[str]

    @property
    def detached(self) -> bool:
        return self.branch is None

    @property
    def unborn(self) -> bool:
        return self.commit is None


# ============================================================
# Conflict descriptor
# ============================================================

@dataclass(frozen=True)
class Conflict:
    """A path reconciled differently on both sides of a merge.

    base/ours/theirs are blob hashes, None where the path is absent.
    kind is one of "content", "modify/delete", "add/add", "file/directory".
    """
    path: str
    base: Optional[str] = None
    ours: Optional[str] = None
    theirs: Optional[str] = None
    kind: str = "content"

    def to_json(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "base": self.base,
            "ours": self.ours,
            "theirs": self.theirs,
            "kind": self.kind,
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "Conflict":
        return cls(
            path=data["path"],
            base=data.get("base"),
            ours=data.get("ours"),
            theirs=data.get("theirs"),
            kind=data.get("kind", "content"),
        )


@dataclass(frozen=True)
class MergeResult:
    """Outcome of a merge that did not stop on conflicts."""
    commit: Optional[str]  # new tip of the current branch
    fast_forward: bool = False
    up_to_date: bool = False
    base: Optional[str] = None
    conflicts: Tuple[Conflict, ...] = ()


# ============================================================
# Index
# ============================================================

@dataclass(frozen=True)
class IndexEntry:
    """Staged state of one path.

    size/mtime_ns mirror the working file at staging time and only ever
    speed up change detection. ``conflict`` is set while the path is
    unresolved after a merge.
    """
    obj_hash: str
    mode: int = MODE_FILE
    size: int = -1
    mtime_ns: int = 0
    conflict: Optional[Conflict] = None

    def to_json(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "hash": self.obj_hash,
            "mode": self.mode,
            "size": self.size,
            "mtime-ns": self.mtime_ns,
        }
        if self.conflict is not None:
            data["conflict"] = self.conflict.to_json()
        return data

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "IndexEntry":
        conflict = data.get("conflict")
        return cls(
            obj_hash=data["hash"],
            mode=data.get("mode", MODE_FILE),
            size=data.get("size", -1),
            mtime_ns=data.get("mtime-ns", 0),
            conflict=Conflict.from_json(conflict) if conflict else None,
        )


class FileStatus(str, Enum):
    UNTRACKED = "untracked"
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"
    UNMODIFIED = "unmodified"
    CONFLICTED = "conflicted"


@dataclass(frozen=True)
class StatusEntry:
    """Classification of one path.

    staged compares HEAD with the index, unstaged compares the index with
    the working tree.
    """
    path: str
    staged: FileStatus
    unstaged: FileStatus

    @property
    def clean(self) -> bool:
        return (self.staged == FileStatus.UNMODIFIED
                and self.unstaged == FileStatus.UNMODIFIED)


# ============================================================
# Stash
# ============================================================

@dataclass(frozen=True)
class StashEntry:
    commit: str  # snapshot commit, never reachable from a branch
    base: str  # HEAD commit at stash time
    index_tree: str  # tree of the index at stash time
    message: str = ""
    timestamp: int = 0

    def to_json(self) -> Dict[str, Any]:
        return {
            "commit": self.commit,
            "base": self.base,
            "index-tree": self.index_tree,
            "message": self.message,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "StashEntry":
        return cls(
            commit=data["commit"],
            base=data["base"],
            index_tree=data["index-tree"],
            message=data.get("message", ""),
            timestamp=data.get("timestamp", 0),
        )


# ============================================================
# Capabilities
# ============================================================

@dataclass(frozen=True)
class Capabilities:
    """Advertises which protocol layers a system supports."""
    snapshotable: bool = False
    branchable: bool = False
    graphable: bool = False
    mergeable: bool = False

    def to_json(self) -> Dict[str, bool]:
        return {
            "snapshotable": self.snapshotable,
            "branchable": self.branchable,
            "graphable": self.graphable,
            "mergeable": self.mergeable,
        }

    @classmethod
    def from_json(cls, data: Dict[str, bool]) -> "Capabilities":
        return cls(**data)
