"""Grove protocol definitions as Python Abstract Base Classes.

Four layers, each optional:
    1. Snapshotable - point-in-time immutable snapshots (commits)
    2. Branchable   - named mutable references
    3. Graphable    - history/DAG traversal
    4. Mergeable    - combine lineages

All methods are synchronous; they block on filesystem I/O only.
"""

from abc import ABC, abstractmethod
from typing import Set, Optional, List, Dict, Any
from grove.types import Capabilities, Conflict, MergeResult


# ============================================================
# System Identity
# ============================================================

class SystemIdentity(ABC):
    """System identification and capability advertisement."""

    @abstractmethod
    def system_id(self) -> str:
        """Unique identifier for this system instance."""
        ...

    @abstractmethod
    def system_type(self) -> str:
        """Type string, e.g. 'grove'."""
        ...

    @abstractmethod
    def capabilities(self) -> Capabilities:
        """Map of supported protocols."""
        ...


# ============================================================
# Layer 1: Snapshotable (fundamental)
# ============================================================

class Snapshotable(ABC):
    """Point-in-time immutable snapshots."""

    @abstractmethod
    def snapshot_id(self) -> str:
        """Current snapshot ID (the commit HEAD resolves to)."""
        ...

    @abstractmethod
    def parent_ids(self, snap_id: Optional[str] = None) -> Set[str]:
        """Parent snapshot IDs. If snap_id is None, uses current state."""
        ...

    @abstractmethod
    def as_of(self, snap_id: str) -> Dict[str, bytes]:
        """Read-only view at given snapshot: {path: content}."""
        ...

    @abstractmethod
    def snapshot_meta(self, snap_id: str) -> Dict[str, Any]:
        """Metadata for snapshot: snapshot-id, parent-ids, author, timestamp, message."""
        ...


# ============================================================
# Layer 2: Branchable (named references)
# ============================================================

class Branchable(ABC):
    """Named references to snapshots.
    Mutating operations return self for method chaining."""

    @abstractmethod
    def branches(self) -> Set[str]:
        """List all branch names."""
        ...

    @abstractmethod
    def current_branch(self) -> Optional[str]:
        """Current branch name, None when HEAD is detached."""
        ...

    @abstractmethod
    def branch(self, name: str, from_ref: Optional[str] = None) -> "Branchable":
        """Create branch at HEAD (or at from_ref). Current branch unchanged."""
        ...

    @abstractmethod
    def delete_branch(self, name: str) -> "Branchable":
        """Remove branch. Fails for the checked-out branch."""
        ...

    @abstractmethod
    def checkout(self, name: str) -> "Branchable":
        """Switch to branch (or detach at a commit)."""
        ...


# ============================================================
# Layer 3: Graphable (history/DAG traversal)
# ============================================================

class Graphable(ABC):
    """DAG traversal and history."""

    @abstractmethod
    def history(self, limit: Optional[int] = None,
                since: Optional[str] = None) -> List[str]:
        """Commit history as list of snapshot-ids, newest first."""
        ...

    @abstractmethod
    def ancestors(self, snap_id: str) -> List[str]:
        """All ancestor snapshot-ids of given snapshot, nearest first."""
        ...

    @abstractmethod
    def is_ancestor(self, a: str, b: str) -> bool:
        """True if snapshot a is an ancestor of snapshot b."""
        ...

    @abstractmethod
    def common_ancestor(self, a: str, b: str) -> Optional[str]:
        """Most recent common ancestor. Returns snapshot-id or None."""
        ...

    def commit_info(self, snap_id: str) -> Dict[str, Any]:
        """Metadata for specific commit. Falls back to snapshot_meta."""
        if isinstance(self, Snapshotable):
            return self.snapshot_meta(snap_id)
        raise NotImplementedError("commit_info not supported by this system")


# ============================================================
# Layer 4: Mergeable (combine lineages)
# ============================================================

class Mergeable(ABC):
    """Merge support."""

    @abstractmethod
    def merge(self, source: str, message: Optional[str] = None) -> MergeResult:
        """Merge source branch/snapshot into current.
        Raises MergeConflict after writing the conflict state to disk."""
        ...

    @abstractmethod
    def conflicts(self, a: str, b: str) -> List[Conflict]:
        """Detect conflicts between two snapshots without merging."""
        ...

    @abstractmethod
    def diff(self, a: str, b: str) -> Any:
        """Compute delta between two snapshots."""
        ...
